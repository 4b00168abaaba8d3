"""
Tests for observability: health checks and logging setup.
"""

from __future__ import annotations

import logging

from nodestack.adapters.mock import MockContainerDriver, ScriptedNodeRpc
from nodestack.core.engine.task_monitor import NODE_SYNC
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.task import TaskCheck, TaskStatus
from nodestack.core.observability.health import (
    ComponentHealth,
    SystemHealth,
    check_container_runtime,
    check_node_rpc,
    check_state_store,
    check_system_health,
    check_task_monitor,
)
from nodestack.core.observability.logging_config import (
    ENV_LEVEL,
    resolve_level,
    setup_from_env,
    setup_logging,
)

# ── Aggregation ──────────────────────────────────────────────────────


class TestSystemHealth:
    def test_component_defaults(self):
        assert ComponentHealth(name="x").status == "unknown"

    def test_all_healthy(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        h.add(ComponentHealth(name="b", status="healthy"))
        assert h.status == "healthy"

    def test_worst_status_wins(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="degraded"))
        assert h.status == "degraded"
        h.add(ComponentHealth(name="b", status="unhealthy"))
        assert h.status == "unhealthy"

    def test_to_dict(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy", message="ok"))
        d = h.to_dict()
        assert d["status"] == "healthy"
        assert d["components"][0]["message"] == "ok"
        assert d["timestamp"]


# ── Component checks ─────────────────────────────────────────────────


class TestComponentChecks:
    def test_runtime_missing_is_unhealthy(self):
        assert check_container_runtime(MockContainerDriver(available=False)).status == "unhealthy"
        assert check_container_runtime(MockContainerDriver()).status == "healthy"

    def test_node_syncing(self):
        result = check_node_rpc(ScriptedNodeRpc([(10, 100, False)]))
        assert result.status == "healthy"
        assert result.message == "syncing 10/100"
        assert result.details["endpoint"] == "mock://node"

    def test_node_unreachable_is_degraded(self):
        result = check_node_rpc(ScriptedNodeRpc([ConnectivityError("x", timed_out=True)]))
        assert result.status == "degraded"
        assert result.message == "timed out"

    def test_state_store_without_state(self, store):
        result = check_state_store(store)
        assert result.status == "healthy"
        assert result.message == "No installation in progress"

    def test_state_store_with_state(self, store):
        store.start_new(["core"])
        result = check_state_store(store)
        assert result.message == "Phase preparing"
        assert result.details["profiles"] == ["core"]

    def test_state_store_corrupt(self, store):
        store.state_dir.mkdir(parents=True, exist_ok=True)
        store.state_file.write_text("garbage", encoding="utf-8")
        assert check_state_store(store).status == "degraded"

    def test_task_monitor_with_errored_task(self, monitor):
        task = monitor.register(NODE_SYNC, "kaspa-node", lambda t: TaskCheck(fatal=True, error="pruned"))
        monitor.check_now(task.id)
        assert monitor.get(task.id).status == TaskStatus.ERROR
        result = check_task_monitor(monitor)
        assert result.status == "degraded"
        assert result.details["errored"] == [task.id]

    def test_full_check(self, store, monitor):
        health = check_system_health(
            MockContainerDriver(), ScriptedNodeRpc([(1, 1, True)]), store, monitor,
        )
        assert health.status == "healthy"
        assert [c.name for c in health.components] == [
            "container_runtime", "node_rpc", "state_store", "task_monitor",
        ]

    def test_check_with_none_components(self):
        health = check_system_health()
        assert health.components == []


# ── Logging ──────────────────────────────────────────────────────────


class TestLogging:
    def test_flag_beats_env(self, monkeypatch):
        monkeypatch.setenv(ENV_LEVEL, "DEBUG")
        assert resolve_level("ERROR") == "ERROR"
        assert resolve_level(None) == "DEBUG"

    def test_default_warning(self, monkeypatch):
        monkeypatch.delenv(ENV_LEVEL, raising=False)
        assert resolve_level(None) == "WARNING"

    def test_unknown_level_falls_back(self):
        setup_logging("chatty")
        assert logging.getLogger().level == logging.WARNING

    def test_file_handler(self, tmp_path, monkeypatch):
        log_file = tmp_path / "nodestack.log"
        monkeypatch.setenv("NODESTACK_LOG_FILE", str(log_file))
        monkeypatch.setenv("NODESTACK_LOG_FILE_LEVEL", "DEBUG")
        assert setup_from_env("ERROR") == "ERROR"
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        logging.getLogger("nodestack.test").debug("written to file")
        for handler in root.handlers:
            handler.flush()
        assert "written to file" in log_file.read_text(encoding="utf-8")
        setup_logging("WARNING")
