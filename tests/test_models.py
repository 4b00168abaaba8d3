"""
Tests for the installation state, task and sync models.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from nodestack.core.errors import InvalidTransitionError
from nodestack.core.models.state import (
    InstallationState,
    InstallPhase,
    ServiceState,
    check_service_transition,
)
from nodestack.core.models.sync import SyncSample
from nodestack.core.models.task import Task, TaskStatus


# ── Service transitions ──────────────────────────────────────────────


class TestServiceTransitions:
    def test_forward_moves_allowed(self):
        check_service_transition(ServiceState.PENDING, ServiceState.BUILDING)
        check_service_transition(ServiceState.BUILDING, ServiceState.SYNCING)
        check_service_transition(ServiceState.SYNCING, ServiceState.RUNNING)

    def test_steps_may_be_skipped(self):
        check_service_transition(ServiceState.PENDING, ServiceState.RUNNING)

    def test_backwards_rejected(self):
        with pytest.raises(InvalidTransitionError, match="back to"):
            check_service_transition(ServiceState.SYNCING, ServiceState.STARTING)

    def test_any_live_status_may_error(self):
        for status in (ServiceState.PENDING, ServiceState.STARTING, ServiceState.SYNCING):
            check_service_transition(status, ServiceState.ERROR)

    def test_terminal_requires_reset(self):
        with pytest.raises(InvalidTransitionError, match="reset required"):
            check_service_transition(ServiceState.RUNNING, ServiceState.ERROR)
        with pytest.raises(InvalidTransitionError):
            check_service_transition(ServiceState.ERROR, ServiceState.STARTING)

    def test_repeat_is_noop(self):
        check_service_transition(ServiceState.RUNNING, ServiceState.RUNNING)


# ── InstallationState ────────────────────────────────────────────────


class TestInstallationState:
    def test_set_service_status_creates_entry(self):
        state = InstallationState()
        svc = state.set_service_status("kaspa-node", ServiceState.STARTING)
        assert state.get_service("kaspa-node") is svc
        assert svc.status == ServiceState.STARTING

    def test_error_message_kept(self):
        state = InstallationState()
        state.set_service_status("kaspa-node", ServiceState.ERROR, error="boom")
        assert state.get_service("kaspa-node").error == "boom"

    def test_complete_is_not_resumable(self):
        state = InstallationState()
        state.mark_complete()
        assert state.phase == InstallPhase.COMPLETE
        assert state.resumable is False
        assert state.completed_at is not None

    def test_complete_cannot_move_back(self):
        state = InstallationState()
        state.set_phase(InstallPhase.COMPLETE)
        with pytest.raises(InvalidTransitionError):
            state.set_phase(InstallPhase.STARTING)

    def test_json_uses_camel_case(self):
        state = InstallationState()
        data = state.to_json_dict()
        assert "installationId" in data
        assert "lastActivity" in data
        assert "resumePoint" in data
        assert data["phase"] == "preparing"

    def test_roundtrip_from_camel_case(self):
        state = InstallationState()
        state.set_service_status("wallet", ServiceState.RUNNING)
        loaded = InstallationState.model_validate(state.to_json_dict())
        assert loaded.installation_id == state.installation_id
        assert loaded.get_service("wallet").status == ServiceState.RUNNING


# ── Tasks & sync samples ─────────────────────────────────────────────


class TestTaskModels:
    def test_terminal_statuses(self):
        assert TaskStatus.COMPLETE.terminal
        assert TaskStatus.CANCELLED.terminal
        assert TaskStatus.ERROR.terminal
        assert not TaskStatus.PAUSED.terminal

    def test_task_to_dict_hides_generation(self):
        task = Task(service="kaspa-node")
        data = task.to_dict()
        assert data["service"] == "kaspa-node"
        assert data["status"] == "active"
        assert "generation" not in data

    def test_sync_sample_accepts_camel_case(self):
        sample = SyncSample.model_validate({"currentHeight": 5, "targetHeight": 10, "isSynced": False})
        assert sample.current_height == 5

    def test_sync_sample_rejects_negative(self):
        with pytest.raises(PydanticValidationError):
            SyncSample(current_height=-1, target_height=10)
