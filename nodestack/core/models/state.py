"""
InstallationState: the durable aggregate.

This is the single document that records where an installation attempt
currently is. It's serialized to <state_dir>/wizard-state.json with
camelCase keys (the wizard UI reads the same file) and snapshotted on
every save.

Transition rules live here so every writer enforces them the same way:
service statuses only move forward (or to error), and a complete
installation is never resumable.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nodestack.core.errors import InvalidTransitionError

STATE_SCHEMA_VERSION = "1.0.0"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InstallPhase(StrEnum):
    """Where the orchestration is, in order."""

    PREPARING = "preparing"
    BUILDING = "building"
    STARTING = "starting"
    SYNCING = "syncing"
    VALIDATING = "validating"
    COMPLETE = "complete"


class ServiceState(StrEnum):
    """Per-service lifecycle status."""

    PENDING = "pending"
    BUILDING = "building"
    STARTING = "starting"
    SYNCING = "syncing"
    RUNNING = "running"
    ERROR = "error"


_SERVICE_ORDER = {
    ServiceState.PENDING: 0,
    ServiceState.BUILDING: 1,
    ServiceState.STARTING: 2,
    ServiceState.SYNCING: 3,
    ServiceState.RUNNING: 4,
}

_TERMINAL = frozenset({ServiceState.RUNNING, ServiceState.ERROR})


def check_service_transition(current: ServiceState, new: ServiceState) -> None:
    """Raise InvalidTransitionError unless ``current → new`` moves forward.

    Steps may be skipped (pending → starting is fine); repeating the
    current status is a no-op and allowed.
    """
    if current == new:
        return
    if current in _TERMINAL:
        raise InvalidTransitionError(f"service is {current.value}; reset required")
    if new == ServiceState.ERROR:
        return
    if _SERVICE_ORDER[new] < _SERVICE_ORDER[current]:
        raise InvalidTransitionError(f"cannot move service from {current.value} back to {new.value}")


class ServiceStatus(_CamelModel):
    """Status of one container service."""

    name: str
    status: ServiceState = ServiceState.PENDING
    last_updated: str = Field(default_factory=_now_iso)
    error: str | None = None


class SyncOperation(_CamelModel):
    """A tracked long-running catch-up, mirrored from the task monitor."""

    id: str
    service: str
    type: str = "node-sync"
    status: str = "pending"              # pending, active, paused, complete, error, cancelled
    progress_pct: float = 0.0
    started_at: str = Field(default_factory=_now_iso)
    estimated_completion: str | None = None
    can_continue_in_background: bool = True
    last_updated: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class UserDecision(_CamelModel):
    """Audit trail entry for fallback / strategy choices. Append-only."""

    timestamp: str = Field(default_factory=_now_iso)
    decision: str
    context: str = ""


class Selection(_CamelModel):
    """Chosen profiles plus free-form configuration."""

    profiles: list[str] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=dict)


class InstallationState(_CamelModel):
    """Root state model: serialized to wizard-state.json."""

    # ── Identity ─────────────────────────────────────────────────
    installation_id: str = Field(default_factory=lambda: f"install-{uuid.uuid4().hex[:12]}")
    version: str = STATE_SCHEMA_VERSION
    started_at: str = Field(default_factory=_now_iso)
    last_activity: str = Field(default_factory=_now_iso)
    completed_at: str | None = None

    # ── Position ─────────────────────────────────────────────────
    current_step: str = "welcome"
    completed_steps: list[str] = Field(default_factory=list)
    phase: InstallPhase = InstallPhase.PREPARING

    # ── Selection & progress ─────────────────────────────────────
    selection: Selection = Field(default_factory=Selection)
    services: list[ServiceStatus] = Field(default_factory=list)
    background_tasks: list[str] = Field(default_factory=list)
    sync_operations: list[SyncOperation] = Field(default_factory=list)
    user_decisions: list[UserDecision] = Field(default_factory=list)

    # ── Resumability ─────────────────────────────────────────────
    resumable: bool = True
    resume_point: str = "welcome"

    def touch(self) -> None:
        """Update the lastActivity timestamp."""
        self.last_activity = _now_iso()

    def get_service(self, name: str) -> ServiceStatus | None:
        for svc in self.services:
            if svc.name == name:
                return svc
        return None

    def set_service_status(
        self,
        name: str,
        status: ServiceState,
        error: str | None = None,
    ) -> ServiceStatus:
        """Move a service forward, creating its entry on first sight."""
        svc = self.get_service(name)
        if svc is None:
            svc = ServiceStatus(name=name)
            self.services.append(svc)
        check_service_transition(svc.status, status)
        svc.status = status
        svc.last_updated = _now_iso()
        if error is not None:
            svc.error = error
        return svc

    def get_sync_operation(self, op_id: str) -> SyncOperation | None:
        for op in self.sync_operations:
            if op.id == op_id:
                return op
        return None

    def set_phase(self, phase: InstallPhase) -> None:
        if self.phase == InstallPhase.COMPLETE and phase != InstallPhase.COMPLETE:
            raise InvalidTransitionError("installation is complete; clear state to start over")
        self.phase = phase
        if phase == InstallPhase.COMPLETE:
            self.resumable = False

    def mark_complete(self) -> None:
        self.phase = InstallPhase.COMPLETE
        self.resumable = False
        self.completed_at = _now_iso()

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
