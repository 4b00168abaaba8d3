"""
Installation state store: the single owner of wizard-state.json.

Every component holds a handle to one InstallationStateStore and never
its own copy of the truth. Layout under the state directory::

    <state_dir>/
        wizard-state.json           current state (atomic replace)
        state-snapshots/
            state-<ns>.json         one per save, newest 10 kept

Writes go through a single-writer lane: a daemon thread drains a queue
of mutation closures, applies each to a private copy of the committed
state, saves it, then publishes it as the new committed state. A sync
tick and an operator clicking "next" therefore never lose each other's
update. Reads never wait on the lane; they see the last committed value.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import shutil
import tempfile
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from nodestack.core.errors import NoStateError, StateCorruptionError
from nodestack.core.models.state import (
    InstallationState,
    InstallPhase,
    Selection,
    ServiceState,
    SyncOperation,
    UserDecision,
)

logger = logging.getLogger(__name__)

STATE_FILE = "wizard-state.json"
SNAPSHOT_DIR = "state-snapshots"

# Configuration every fresh installation starts from
DEFAULT_CONFIGURATION: dict[str, Any] = {
    "KASPA_NODE_RPC_PORT": 16110,
    "KASPA_NODE_P2P_PORT": 16111,
    "KASPA_NETWORK": "mainnet",
    "PUBLIC_NODE": False,
    "POSTGRES_USER": "kaspa",
    "POSTGRES_PORT": 5432,
}

T = TypeVar("T")


class ResumeCheck(BaseModel):
    """Answer to "may the previous attempt continue?"."""

    can_resume: bool
    reason: str | None = None        # no_state, complete, not_resumable, too_old
    message: str = ""
    hours_since_activity: float | None = None
    resume_point: str | None = None
    phase: str | None = None


# ── Single-writer lane ──────────────────────────────────────────────


class _WriteLane:
    """A dedicated thread that runs mutation jobs one at a time."""

    def __init__(self, name: str = "nodestack-state") -> None:
        self._name = name
        self._queue: queue.Queue[tuple[Callable[[], Any], Future] | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def run(self, job: Callable[[], T]) -> T:
        """Run ``job`` on the lane and wait for its result.

        Jobs submitted from inside the lane run inline, so a mutation
        helper may call another without deadlocking.
        """
        if threading.current_thread() is self._thread:
            return job()
        future: Future = Future()
        self._ensure_started()
        self._queue.put((job, future))
        return future.result()

    def close(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._thread = None
        self._queue.put(None)
        thread.join(timeout=5)

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._drain, name=self._name, daemon=True)
            self._thread.start()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            job, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(job())
            except BaseException as e:  # handed back to the waiting caller
                future.set_exception(e)


# ── Store ───────────────────────────────────────────────────────────


class InstallationStateStore:
    """Durable, serialized access to the installation state.

    Args:
        state_dir: Directory holding the state file and snapshots.
        max_snapshots: Snapshot retention (oldest deleted first).
        max_age_hours: Older attempts are no longer resumable.
        clock: Epoch-seconds source; injectable for tests.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        max_snapshots: int = 10,
        max_age_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / STATE_FILE
        self.snapshot_dir = self.state_dir / SNAPSHOT_DIR
        self.max_snapshots = max_snapshots
        self.max_age_hours = max_age_hours
        self._clock = clock
        self._lane = _WriteLane()
        self._committed: InstallationState | None = None
        self._loaded = False
        self._last_snapshot_ns = 0

    # ── Reads ───────────────────────────────────────────────────

    def load(self) -> InstallationState | None:
        """Read the state from disk.

        Returns None when there is no state file or it cannot be parsed;
        a corrupt file is treated as "nothing to resume", never a crash.
        """
        try:
            return self._read()
        except StateCorruptionError as e:
            logger.warning("%s: treating as no saved state", e)
            return None

    def current(self) -> InstallationState | None:
        """Last committed state (a copy), loading from disk on first use."""
        if not self._loaded:
            self._lane.run(self._ensure_loaded)
        committed = self._committed
        return committed.model_copy(deep=True) if committed else None

    def can_resume(self) -> ResumeCheck:
        state = self.load()
        if state is None:
            return ResumeCheck(can_resume=False, reason="no_state", message="No saved state found")

        if state.phase == InstallPhase.COMPLETE:
            return ResumeCheck(
                can_resume=False, reason="complete",
                message="Installation already complete", phase=state.phase.value,
            )
        if not state.resumable:
            return ResumeCheck(
                can_resume=False, reason="not_resumable",
                message="Installation marked as non-resumable", phase=state.phase.value,
            )

        hours = self._hours_since(state.last_activity)
        if hours is None or hours > self.max_age_hours:
            return ResumeCheck(
                can_resume=False, reason="too_old",
                message=f"State is too old (>{self.max_age_hours:g} hours)",
                hours_since_activity=hours, phase=state.phase.value,
            )

        return ResumeCheck(
            can_resume=True,
            message=f"Resume from '{state.resume_point}'",
            hours_since_activity=hours,
            resume_point=state.resume_point,
            phase=state.phase.value,
        )

    def history(self) -> list[dict[str, Any]]:
        """Snapshots newest-first, with enough detail to tell them apart."""
        entries = []
        for ns, path in reversed(self._snapshots()):
            entry: dict[str, Any] = {
                "file": path.name,
                "timestamp": datetime.fromtimestamp(ns / 1e9, UTC).isoformat(),
            }
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                entry.update(
                    phase=data.get("phase"),
                    current_step=data.get("currentStep"),
                    profiles=(data.get("selection") or {}).get("profiles", []),
                )
            except (OSError, json.JSONDecodeError) as e:
                entry["error"] = f"Failed to read snapshot: {e}"
            entries.append(entry)
        return entries

    def summary(self) -> dict[str, Any] | None:
        state = self.current()
        if state is None:
            return None
        return {
            "installation_id": state.installation_id,
            "started_at": state.started_at,
            "last_activity": state.last_activity,
            "current_step": state.current_step,
            "phase": state.phase.value,
            "profiles": list(state.selection.profiles),
            "services": {s.name: s.status.value for s in state.services},
            "sync_operations": len(state.sync_operations),
            "background_tasks": len(state.background_tasks),
            "resumable": state.resumable,
            "completed_steps": list(state.completed_steps),
        }

    # ── Whole-state writes ──────────────────────────────────────

    def save(self, state: InstallationState) -> InstallationState:
        """Persist ``state`` as the new committed state.

        Stamps ``lastActivity`` on the given object, writes atomically,
        then appends a snapshot.
        """
        def job() -> InstallationState:
            self._stamp(state)
            saved = state.model_copy(deep=True)
            self._write(saved)
            self._commit(saved)
            return state

        return self._lane.run(job)

    def clear(self) -> None:
        """Delete the state file and every snapshot ("start over")."""
        def job() -> None:
            self.state_file.unlink(missing_ok=True)
            shutil.rmtree(self.snapshot_dir, ignore_errors=True)
            self._commit(None)
            logger.info("Installation state cleared (%s)", self.state_dir)

        self._lane.run(job)

    def start_new(
        self,
        profiles: list[str],
        configuration: dict[str, Any] | None = None,
    ) -> InstallationState:
        """Create, save and return a fresh installation attempt."""
        state = InstallationState(
            selection=Selection(
                profiles=list(profiles),
                configuration={**DEFAULT_CONFIGURATION, **(configuration or {})},
            ),
        )
        saved = self.save(state)
        logger.info("Started installation %s with profiles %s", saved.installation_id, profiles)
        return saved.model_copy(deep=True)

    def close(self) -> None:
        self._lane.close()

    # ── Mutation helpers ────────────────────────────────────────

    def mutate(
        self,
        fn: Callable[[InstallationState], Any],
        *,
        create: bool = True,
    ) -> InstallationState:
        """Apply ``fn`` to a copy of the committed state, save, publish.

        If ``fn`` raises, nothing is saved and the error propagates.
        """
        def job() -> InstallationState:
            self._ensure_loaded()
            base = self._committed
            if base is None:
                if not create:
                    raise NoStateError("No installation in progress")
                working = InstallationState()
            else:
                working = base.model_copy(deep=True)
            fn(working)
            self._stamp(working)
            self._write(working)
            self._commit(working)
            return working.model_copy(deep=True)

        return self._lane.run(job)

    def update_step(self, step: str, *, completed: bool = True) -> InstallationState:
        def apply(state: InstallationState) -> None:
            state.current_step = step
            state.resume_point = step
            if completed and step not in state.completed_steps:
                state.completed_steps.append(step)

        return self.mutate(apply)

    def update_selection(
        self,
        profiles: list[str],
        configuration: dict[str, Any] | None = None,
    ) -> InstallationState:
        def apply(state: InstallationState) -> None:
            state.selection.profiles = list(profiles)
            if configuration is not None:
                state.selection.configuration.update(configuration)

        return self.mutate(apply)

    def update_configuration(self, updates: dict[str, Any]) -> InstallationState:
        return self.mutate(lambda state: state.selection.configuration.update(updates))

    def update_service_status(
        self,
        name: str,
        status: ServiceState,
        error: str | None = None,
    ) -> InstallationState:
        """Move a service forward. Raises InvalidTransitionError on regressions."""
        return self.mutate(lambda state: state.set_service_status(name, ServiceState(status), error))

    def reset_service(self, name: str) -> InstallationState:
        """Explicitly put one service back to pending (retry from scratch)."""
        def apply(state: InstallationState) -> None:
            svc = state.get_service(name)
            if svc is None:
                state.set_service_status(name, ServiceState.PENDING)
                return
            svc.status = ServiceState.PENDING
            svc.error = None
            svc.last_updated = datetime.now(UTC).isoformat()

        return self.mutate(apply)

    def add_sync_operation(self, operation: SyncOperation) -> InstallationState:
        def apply(state: InstallationState) -> None:
            state.sync_operations = [op for op in state.sync_operations if op.id != operation.id]
            state.sync_operations.append(operation.model_copy(deep=True))

        return self.mutate(apply)

    def update_sync_operation(self, op_id: str, **updates: Any) -> InstallationState:
        unknown = set(updates) - set(SyncOperation.model_fields)
        if unknown:
            raise ValueError(f"Unknown sync operation fields: {sorted(unknown)}")

        def apply(state: InstallationState) -> None:
            op = state.get_sync_operation(op_id)
            if op is None:
                raise NoStateError(f"No sync operation '{op_id}'")
            for key, value in updates.items():
                setattr(op, key, value)
            op.last_updated = datetime.now(UTC).isoformat()

        return self.mutate(apply, create=False)

    def record_decision(self, decision: str, context: str = "") -> InstallationState:
        entry = UserDecision(decision=decision, context=context)
        return self.mutate(lambda state: state.user_decisions.append(entry))

    def add_background_task(
        self,
        task_id: str,
        operation: SyncOperation | None = None,
    ) -> InstallationState:
        def apply(state: InstallationState) -> None:
            if task_id not in state.background_tasks:
                state.background_tasks.append(task_id)
            if operation is not None:
                state.sync_operations = [op for op in state.sync_operations if op.id != operation.id]
                state.sync_operations.append(operation.model_copy(deep=True))

        return self.mutate(apply)

    def remove_background_task(self, task_id: str) -> InstallationState:
        def apply(state: InstallationState) -> None:
            state.background_tasks = [t for t in state.background_tasks if t != task_id]

        return self.mutate(apply, create=False)

    def prune_background_tasks(self, live_ids: set[str]) -> list[str]:
        """Drop task ids the monitor no longer knows about. Returns the dropped ids."""
        dropped: list[str] = []

        def apply(state: InstallationState) -> None:
            dropped.extend(t for t in state.background_tasks if t not in live_ids)
            state.background_tasks = [t for t in state.background_tasks if t in live_ids]

        state = self.current()
        if state is None or all(t in live_ids for t in state.background_tasks):
            # nothing stale; leave the file and lastActivity alone
            return []
        self.mutate(apply, create=False)
        if dropped:
            logger.info("Pruned %d stale background task(s): %s", len(dropped), dropped)
        return dropped

    def update_phase(self, phase: InstallPhase) -> InstallationState:
        return self.mutate(lambda state: state.set_phase(InstallPhase(phase)))

    def mark_complete(self) -> InstallationState:
        """Terminal: phase complete, never resumable. Only clear() undoes it."""
        return self.mutate(lambda state: state.mark_complete(), create=False)

    # ── Internal ────────────────────────────────────────────────

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._committed = self.load()
            self._loaded = True

    def _commit(self, state: InstallationState | None) -> None:
        self._committed = state
        self._loaded = True

    def _stamp(self, state: InstallationState) -> None:
        state.last_activity = datetime.fromtimestamp(self._clock(), UTC).isoformat()

    def _hours_since(self, iso: str) -> float | None:
        try:
            then = datetime.fromisoformat(iso)
        except (TypeError, ValueError):
            return None
        if then.tzinfo is None:
            then = then.replace(tzinfo=UTC)
        return (self._clock() - then.timestamp()) / 3600

    def _read(self) -> InstallationState | None:
        if not self.state_file.is_file():
            return None
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            return InstallationState.model_validate(data)
        except (OSError, ValueError) as e:
            # json.JSONDecodeError and pydantic.ValidationError are ValueErrors
            raise StateCorruptionError(f"Cannot load state from {self.state_file}: {e}") from e

    def _write(self, state: InstallationState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        content = json.dumps(state.to_json_dict(), indent=2, ensure_ascii=False) + "\n"

        # Atomic write: temp file in same directory, then rename
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".state_", suffix=".tmp")
        os.close(fd)
        tmp = Path(tmp_path)
        try:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(self.state_file)
        except Exception:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save state to %s", self.state_file)
            raise
        logger.debug("State saved to %s (phase=%s)", self.state_file, state.phase.value)

        self._snapshot(content)

    def _snapshot(self, content: str) -> None:
        """Best-effort history copy; failures are logged, never raised."""
        ns = max(time.time_ns(), self._last_snapshot_ns + 1)
        self._last_snapshot_ns = ns
        try:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)
            (self.snapshot_dir / f"state-{ns}.json").write_text(content, encoding="utf-8")
            for _, old in self._snapshots()[:-self.max_snapshots or None]:
                old.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not write state snapshot: %s", e)

    def _snapshots(self) -> list[tuple[int, Path]]:
        """Snapshot files oldest-first."""
        if not self.snapshot_dir.is_dir():
            return []
        found = []
        for path in self.snapshot_dir.glob("state-*.json"):
            stem = path.stem.removeprefix("state-")
            if stem.isdigit():
                found.append((int(stem), path))
        return sorted(found)
