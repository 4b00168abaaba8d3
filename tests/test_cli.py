"""
Tests for CLI commands: catalog, install, state, sync, fallback and health.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from nodestack.core.config.loader import Settings
from nodestack.core.engine.task_monitor import NODE_SYNC
from nodestack.core.models.task import TaskCheck
from nodestack.core.services.event_bus import EventBus
from nodestack.core.use_cases.runtime import build_runtime
from nodestack.main import cli


@pytest.fixture
def runtime(tmp_path):
    rt = build_runtime(Settings(state_dir=tmp_path / "state"), mock=True, event_bus=EventBus())
    yield rt
    rt.close()


@pytest.fixture
def invoke(runtime):
    runner = CliRunner()

    def run(*args: str):
        return runner.invoke(cli, list(args), obj={"runtime": runtime})

    return run


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "profile-based node stack" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_bad_config_exits_2(self, tmp_path):
        bad = tmp_path / "nodestack.yml"
        bad.write_text("max_snapshots: lots\n", encoding="utf-8")
        result = CliRunner().invoke(cli, ["--config", str(bad), "profiles"])
        assert result.exit_code == 2


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalogCommands:
    def test_profiles(self, invoke):
        result = invoke("profiles")
        assert result.exit_code == 0
        assert "core" in result.output
        assert "Requires one of" in result.output

    def test_profiles_json(self, invoke):
        result = invoke("profiles", "--json")
        ids = [p["id"] for p in json.loads(result.output)]
        assert "core" in ids

    def test_resolve_valid(self, invoke):
        result = invoke("resolve", "core", "indexer-services")
        assert result.exit_code == 0
        assert "Selection resolves" in result.output
        assert "Startup plan" in result.output

    def test_resolve_invalid(self, invoke):
        result = invoke("resolve", "mining")
        assert result.exit_code == 1
        assert "missing_prerequisite" in result.output
        assert "Add one of" in result.output

    def test_resolve_json(self, invoke):
        result = invoke("resolve", "core", "--json")
        data = json.loads(result.output)
        assert data["valid"] is True
        assert "kaspa-node" in data["resolved"]

    def test_templates(self, invoke):
        result = invoke("templates")
        assert result.exit_code == 0
        assert "beginner-setup" in result.output

    def test_templates_ranked(self, invoke):
        result = invoke("templates", "--ram", "64", "--cpu", "16", "--disk", "4000", "--json")
        ranked = json.loads(result.output)
        assert ranked
        scores = [r["score"] for r in ranked]
        assert scores == sorted(scores, reverse=True)


# ── Install ──────────────────────────────────────────────────────────


class TestInstallCommand:
    def test_install_profiles(self, invoke, runtime):
        result = invoke("install", "kaspa-user-applications")
        assert result.exit_code == 0
        assert "complete" in result.output
        assert "kasia-app: running" in result.output
        assert runtime.store.current() is not None

    def test_install_template_json(self, invoke):
        result = invoke("install", "--template", "beginner-setup", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["profiles"] == ["kaspa-user-applications"]

    def test_install_needs_selection(self, invoke):
        result = invoke("install")
        assert result.exit_code == 2

    def test_install_bad_setting(self, invoke):
        result = invoke("install", "core", "--set", "NOEQUALS")
        assert result.exit_code == 2

    def test_install_invalid_selection(self, invoke, runtime):
        result = invoke("install", "mining")
        assert result.exit_code == 1
        assert runtime.store.current() is None

    def test_install_failure_suggests_resume(self, invoke, runtime):
        runtime.driver.set_failure("start", "kasia-app", "port is already allocated")
        result = invoke("install", "kaspa-user-applications")
        assert result.exit_code == 1
        assert "halted at starting" in result.output
        assert "nodestack resume" in result.output

    def test_resume_without_state(self, invoke):
        result = invoke("resume")
        assert result.exit_code == 1


# ── State ────────────────────────────────────────────────────────────


class TestStateCommands:
    def test_show_without_state(self, invoke):
        result = invoke("state", "show")
        assert result.exit_code == 0
        assert "No installation in progress" in result.output

    def test_show_after_install(self, invoke, runtime):
        invoke("install", "kaspa-user-applications")
        result = invoke("state", "show")
        assert runtime.store.current().installation_id in result.output
        assert "kasia-app: running" in result.output

    def test_show_json(self, invoke):
        invoke("install", "kaspa-user-applications")
        data = json.loads(invoke("state", "show", "--json").output)
        assert data["phase"] == "complete"
        assert "installationId" in data

    def test_can_resume_without_state(self, invoke):
        result = invoke("state", "can-resume", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["reason"] == "no_state"

    def test_can_resume_after_failure(self, invoke, runtime):
        runtime.driver.set_failure("start", "kasia-app", "boom")
        invoke("install", "kaspa-user-applications")
        result = invoke("state", "can-resume")
        assert result.exit_code == 0

    def test_history(self, invoke):
        assert "No snapshots" in invoke("state", "history").output
        invoke("install", "kaspa-user-applications")
        entries = json.loads(invoke("state", "history", "--json").output)
        assert entries
        assert entries[0]["profiles"] == ["kaspa-user-applications"]

    def test_clear(self, invoke, runtime):
        invoke("install", "kaspa-user-applications")
        result = invoke("state", "clear", "--yes")
        assert result.exit_code == 0
        assert runtime.store.current() is None


# ── Sync, fallback, health ───────────────────────────────────────────


class TestSyncStatus:
    def test_synced_node(self, invoke):
        result = invoke("sync", "status", "--samples", "1")
        assert result.exit_code == 0
        assert "Synced at height 1000" in result.output

    def test_json(self, invoke):
        data = json.loads(invoke("sync", "status", "--samples", "1", "--json").output)
        assert data["is_synced"] is True


class TestFallbackCommands:
    def test_detect_missing_container(self, invoke):
        result = invoke("fallback", "detect", "kaspa-node")
        assert result.exit_code == 1
        assert "container_missing" in result.output
        assert "continue_public (recommended)" in result.output

    def test_detect_healthy(self, invoke, runtime):
        runtime.driver.start("kaspa-node")
        result = invoke("fallback", "detect", "kaspa-node", "--json")
        assert result.exit_code == 0
        assert json.loads(result.output)["failed"] is False

    def test_apply_public(self, invoke):
        result = invoke("fallback", "apply", "kaspa-node", "continue_public")
        assert result.exit_code == 0
        assert "public endpoint" in result.output

    def test_apply_public_without_endpoint(self, invoke):
        result = invoke("fallback", "apply", "timescaledb", "continue_public")
        assert result.exit_code == 1

    def test_apply_unknown_strategy(self, invoke):
        result = invoke("fallback", "apply", "kaspa-node", "pray")
        assert result.exit_code == 2


class TestHealthCommand:
    def test_health_json(self, invoke):
        result = invoke("health", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        names = [c["name"] for c in data["components"]]
        assert names == ["container_runtime", "node_rpc", "state_store", "task_monitor"]
        assert data["status"] == "healthy"

    def test_health_text(self, invoke):
        result = invoke("health")
        assert "System Health: HEALTHY" in result.output


# ── Runtime wiring ───────────────────────────────────────────────────


class TestRuntimeRestart:
    def test_dead_task_ids_pruned_on_build(self, tmp_path):
        settings = Settings(state_dir=tmp_path / "state")
        first = build_runtime(settings, mock=True, event_bus=EventBus())
        first.store.start_new(["core"])
        task = first.monitor.register(NODE_SYNC, "kaspa-node", lambda t: TaskCheck(percentage=1.0))
        assert first.store.current().background_tasks == [task.id]
        first.close()

        second = build_runtime(settings, mock=True, event_bus=EventBus())
        try:
            assert second.monitor.live_ids() == set()
            assert second.store.current().background_tasks == []
            assert second.store.load().background_tasks == []
        finally:
            second.close()
