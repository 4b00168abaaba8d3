"""
Tests for the web API: app factory, catalog, state and task routes.
"""

from __future__ import annotations

import pytest
from flask.testing import FlaskClient

from nodestack.core.config.loader import Settings
from nodestack.core.engine.task_monitor import NODE_SYNC
from nodestack.core.models.task import TaskCheck
from nodestack.core.services.event_bus import EventBus
from nodestack.core.use_cases.runtime import build_runtime
from nodestack.ui.web.server import create_app


@pytest.fixture()
def runtime(tmp_path):
    rt = build_runtime(Settings(state_dir=tmp_path / "state"), mock=True, event_bus=EventBus())
    yield rt
    rt.close()


@pytest.fixture()
def client(runtime) -> FlaskClient:
    app = create_app(runtime)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture()
def sync_task(runtime):
    """A live sync task for the local node."""
    return runtime.monitor.register(
        NODE_SYNC, "kaspa-node", lambda task: TaskCheck(percentage=10.0), interval_s=60,
    )


class TestAppFactory:
    def test_runtime_attached(self, runtime):
        app = create_app(runtime)
        assert app.config["MOCK_MODE"] is True
        with app.app_context():
            from nodestack.ui.web.server import get_runtime
            assert get_runtime() is runtime


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalogRoutes:
    def test_profiles(self, client: FlaskClient):
        resp = client.get("/api/profiles")
        assert resp.status_code == 200
        data = resp.get_json()
        assert "core" in [p["id"] for p in data["profiles"]]
        assert "beginner-setup" in [t["id"] for t in data["templates"]]

    def test_resolve(self, client: FlaskClient):
        resp = client.post("/api/resolve", json={"profiles": ["core", "indexer-services"]})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["valid"] is True
        assert data["startup_plan"][0]["services"]

    def test_resolve_problems_are_data(self, client: FlaskClient):
        resp = client.post("/api/resolve", json={"profiles": ["mining"]})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["valid"] is False
        assert data["errors"][0]["type"] == "missing_prerequisite"

    def test_resolve_bad_body(self, client: FlaskClient):
        assert client.post("/api/resolve", json={"profiles": "core"}).status_code == 400
        assert client.post("/api/resolve", data="nope").status_code == 400


# ── State ────────────────────────────────────────────────────────────


class TestStateRoutes:
    def test_no_state(self, client: FlaskClient):
        assert client.get("/api/state").status_code == 404
        check = client.get("/api/state/can-resume").get_json()
        assert check["can_resume"] is False
        assert check["reason"] == "no_state"

    def test_state_after_install(self, client: FlaskClient, runtime):
        runtime.engine.install(["kaspa-user-applications"])
        resp = client.get("/api/state")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["phase"] == "complete"
        assert data["selection"]["profiles"] == ["kaspa-user-applications"]

    def test_history(self, client: FlaskClient, runtime):
        assert client.get("/api/state/history").get_json() == {"snapshots": []}
        runtime.engine.install(["kaspa-user-applications"])
        snapshots = client.get("/api/state/history").get_json()["snapshots"]
        assert snapshots[0]["phase"] == "complete"

    def test_clear(self, client: FlaskClient, runtime):
        runtime.engine.install(["kaspa-user-applications"])
        resp = client.post("/api/state/clear")
        assert resp.get_json() == {"cleared": True}
        assert client.get("/api/state").status_code == 404


# ── Tasks ────────────────────────────────────────────────────────────


class TestTaskRoutes:
    def test_empty(self, client: FlaskClient):
        assert client.get("/api/tasks").get_json() == {"tasks": []}

    def test_list(self, client: FlaskClient, sync_task):
        tasks = client.get("/api/tasks").get_json()["tasks"]
        assert [t["id"] for t in tasks] == [sync_task.id]

    def test_pause_and_resume(self, client: FlaskClient, sync_task):
        resp = client.post(f"/api/tasks/{sync_task.id}/pause")
        assert resp.status_code == 200
        assert resp.get_json()["task"]["status"] == "paused"

        resp = client.post(f"/api/tasks/{sync_task.id}/resume")
        assert resp.get_json()["task"]["status"] == "active"

    def test_check(self, client: FlaskClient, sync_task):
        resp = client.post(f"/api/tasks/{sync_task.id}/check")
        assert resp.status_code == 200
        assert resp.get_json()["task_id"] == sync_task.id

    def test_cancel_then_list_all(self, client: FlaskClient, sync_task):
        assert client.post(f"/api/tasks/{sync_task.id}/cancel").status_code == 200
        assert client.get("/api/tasks").get_json() == {"tasks": []}
        finished = client.get("/api/tasks?all=1").get_json()["tasks"]
        assert finished[0]["status"] == "cancelled"

    def test_invalid_transition(self, client: FlaskClient, sync_task):
        client.post(f"/api/tasks/{sync_task.id}/cancel")
        assert client.post(f"/api/tasks/{sync_task.id}/pause").status_code == 409

    def test_unknown_task(self, client: FlaskClient):
        assert client.post("/api/tasks/task-nope/pause").status_code == 404

    def test_unknown_action(self, client: FlaskClient, sync_task):
        resp = client.post(f"/api/tasks/{sync_task.id}/explode")
        assert resp.status_code == 400
        assert "pause" in resp.get_json()["actions"]


# ── Events ───────────────────────────────────────────────────────────


class TestEventStream:
    def test_stream_starts_with_ready(self, client: FlaskClient):
        resp = client.get("/api/events?heartbeat=0.05")
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        first = next(iter(resp.response))
        chunk = first.decode() if isinstance(first, bytes) else first
        assert chunk.startswith("event: sys:ready\n")
        resp.close()
