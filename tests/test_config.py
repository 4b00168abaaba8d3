"""
Tests for settings and catalog loading.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from nodestack.core.config.catalog_loader import load_catalog, parse_catalog
from nodestack.core.config.loader import (
    BUNDLED_CATALOG,
    ConfigError,
    Settings,
    find_settings_file,
    load_settings,
)

# ── Settings ─────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NODESTACK_STATE_DIR", raising=False)
        monkeypatch.chdir(tmp_path)
        settings = load_settings()
        assert settings.source is None
        assert settings.catalog_path == BUNDLED_CATALOG
        assert settings.resume_max_age_hours == 24.0
        assert settings.max_snapshots == 10

    def test_loads_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NODESTACK_STATE_DIR", raising=False)
        path = tmp_path / "nodestack.yml"
        path.write_text(
            "state_dir: state\n"
            "check_interval_s: 2\n"
            "rpc:\n  host: node.local\n  port: 17110\n"
            "resource_limits:\n  ram_gb: 8\n",
            encoding="utf-8",
        )
        settings = load_settings(path)
        assert settings.state_dir == (tmp_path / "state").resolve()
        assert settings.check_interval_s == 2
        assert settings.rpc.url == "http://node.local:17110"
        assert settings.resource_limits.ram_gb == 8
        assert settings.source == path

    def test_env_overrides_state_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NODESTACK_STATE_DIR", str(tmp_path / "elsewhere"))
        settings = load_settings(search=False)
        assert settings.state_dir == tmp_path / "elsewhere"

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "nodestack.yml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path).check_interval_s == Settings().check_interval_s

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "nodestack.yml"
        path.write_text("rpc: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "nodestack.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "nodestack.yml"
        path.write_text("max_snapshots: lots\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(path)


class TestFindSettingsFile:
    def test_walks_up(self, tmp_path):
        (tmp_path / "nodestack.yml").write_text("{}", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_settings_file(nested) == (tmp_path / "nodestack.yml").resolve()

    def test_not_found(self, tmp_path):
        found = find_settings_file(tmp_path)
        assert found is None or found.parent != tmp_path.resolve()


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalog:
    def test_bundled_catalog_loads(self, catalog):
        assert set(catalog.profiles) >= {"core", "archive-node", "indexer-services", "mining"}
        assert catalog.is_shared("timescaledb")
        assert catalog.public_endpoints["kaspa-node"].startswith("https://")

    def test_find_service(self, catalog):
        profile, service = catalog.find_service("kaspa-node")
        assert profile.id == "core"
        assert service.sync
        assert catalog.find_service("nope") is None

    def test_dependents_of(self, catalog):
        dependents = catalog.dependents_of("kaspa-node", ["core", "indexer-services"])
        assert dependents == ["wallet", "kasia-indexer", "k-indexer", "simply-kaspa-indexer"]

    def test_load_from_path(self, tmp_path):
        path = tmp_path / "catalog.yml"
        path.write_text(
            "profiles:\n"
            "  solo:\n"
            "    name: Solo\n"
            "    services:\n"
            "      - name: thing\n",
            encoding="utf-8",
        )
        catalog = load_catalog(path)
        assert catalog.profiles["solo"].service_names == ["thing"]

    def test_missing_catalog(self, tmp_path):
        with pytest.raises(ConfigError):
            load_catalog(tmp_path / "nope.yml")

    def test_parse_rejects_bad_shape(self):
        with pytest.raises(ConfigError):
            parse_catalog({"profiles": {"x": {"startup_rank": "first"}}}, Path("inline"))
