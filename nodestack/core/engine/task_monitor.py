"""
Background task monitor: polls long-running operations on their own timers.

Tasks live in a dict keyed by id, each with an explicit status. Each
monitored task gets a daemon thread that runs its status function, then
waits on a per-task stop Event for the task's interval. Pausing or
cancelling sets the Event and bumps the task's ``generation``: a check
already in flight finishes, but its result is discarded because the
generation it started under is gone.

Per tick:
    - the status function raised      → "still trying" progress, keep polling
    - completed                        → stop, persist, on_complete, one task:complete
    - fatal error reported             → stop, persist "error", one task:error
    - progress moved meaningfully      → task:progress + SyncOperation update
      (>1 point, connectivity flipped, or every N quiet ticks)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from nodestack.adapters.base import NodeRpc
from nodestack.core.errors import (
    ConnectivityError,
    InvalidTransitionError,
    NodestackError,
    TaskNotFoundError,
)
from nodestack.core.models.state import SyncOperation
from nodestack.core.models.task import Task, TaskCheck, TaskStatus
from nodestack.core.persistence.state_store import InstallationStateStore
from nodestack.core.services.event_bus import EventBus
from nodestack.core.services.event_bus import bus as default_bus
from nodestack.core.sync.tracker import SyncTracker

logger = logging.getLogger(__name__)

StatusFn = Callable[[Task], TaskCheck]
CompleteFn = Callable[[Task, TaskCheck], None]

NODE_SYNC = "node-sync"
MEANINGFUL_DELTA = 1.0


class BackgroundTaskMonitor:
    """Owns every background task and its timer.

    Args:
        store: Where SyncOperation records and task ids are persisted.
            None runs the monitor without persistence.
        event_bus: Where task events are published.
        default_interval_s: Poll interval for tasks that don't set one.
        heartbeat_ticks: Emit progress at least this often, even if unchanged.
    """

    def __init__(
        self,
        store: InstallationStateStore | None = None,
        event_bus: EventBus | None = None,
        *,
        default_interval_s: float = 10.0,
        heartbeat_ticks: int = 6,
    ) -> None:
        self._store = store
        self._bus = event_bus or default_bus
        self.default_interval_s = default_interval_s
        self.heartbeat_ticks = heartbeat_ticks

        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._checkers: dict[str, StatusFn] = {}
        self._on_complete: dict[str, CompleteFn] = {}
        self._timers: dict[str, tuple[threading.Thread, threading.Event]] = {}
        self._quiet_ticks: dict[str, int] = {}

    # ── Registration ────────────────────────────────────────────

    def register(
        self,
        task_type: str,
        service: str,
        status_fn: StatusFn,
        *,
        config: dict[str, Any] | None = None,
        interval_s: float | None = None,
        on_complete: CompleteFn | None = None,
    ) -> Task:
        """Register a task, or return the live one for ``(type, service)``."""
        with self._lock:
            for existing in self._tasks.values():
                if existing.key == (task_type, service) and not existing.status.terminal:
                    logger.debug("Task for %s/%s already registered: %s", task_type, service, existing.id)
                    return existing.model_copy(deep=True)

            interval = self.default_interval_s if interval_s is None else interval_s
            task = Task(
                type=task_type,
                service=service,
                config=dict(config or {}),
                check_interval_ms=int(interval * 1000),
            )
            self._tasks[task.id] = task
            self._checkers[task.id] = status_fn
            if on_complete is not None:
                self._on_complete[task.id] = on_complete
            snapshot = task.model_copy(deep=True)

        logger.info("Background task registered: %s (%s for %s)", task.id, task_type, service)
        self._persist(lambda store: store.add_background_task(
            snapshot.id,
            SyncOperation(id=snapshot.id, service=service, type=task_type, status="pending"),
        ))
        self._emit("task:registered", snapshot)
        return snapshot

    def register_node_sync(
        self,
        service: str,
        rpc: NodeRpc,
        tracker: SyncTracker,
        *,
        node_key: str | None = None,
        auto_switch: bool = True,
        on_complete: CompleteFn | None = None,
        interval_s: float | None = None,
    ) -> Task:
        """Convenience: a node-sync task driven by a SyncTracker."""
        key = node_key or service
        return self.register(
            NODE_SYNC,
            service,
            tracker.status_checker(key, rpc),
            config={"node_key": key, "endpoint": rpc.endpoint, "auto_switch": auto_switch},
            interval_s=interval_s,
            on_complete=on_complete,
        )

    # ── Control ─────────────────────────────────────────────────

    def start_monitoring(self, task_id: str) -> Task:
        """Start the task's timer. No-op if it is already running."""
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.ACTIVE:
                raise InvalidTransitionError(f"Task {task_id} is {task.status.value}")
            if task_id in self._timers:
                return task.model_copy(deep=True)
            task.started_at = time.time()
            self._start_timer(task)
            snapshot = task.model_copy(deep=True)

        logger.info("Started monitoring %s (interval %dms)", task_id, snapshot.check_interval_ms)
        self._persist(lambda store: store.update_sync_operation(task_id, status="active"))
        self._emit("task:start", snapshot)
        return snapshot

    def check_now(self, task_id: str) -> TaskCheck | None:
        """Run one check immediately on the caller's thread.

        Returns the applied result, or the last known one when the task
        is not active (nothing is polled then).
        """
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.ACTIVE:
                return task.last_progress
            generation = task.generation
        return self._tick(task_id, generation)

    def pause(self, task_id: str) -> Task:
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.ACTIVE:
                raise InvalidTransitionError(f"Cannot pause task {task_id}: it is {task.status.value}")
            task.status = TaskStatus.PAUSED
            task.generation += 1
            self._stop_timer(task_id)
            snapshot = task.model_copy(deep=True)

        logger.info("Paused task %s", task_id)
        self._persist(lambda store: store.update_sync_operation(task_id, status="paused"))
        self._emit("task:paused", snapshot)
        return snapshot

    def resume(self, task_id: str) -> Task:
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.PAUSED:
                raise InvalidTransitionError(f"Cannot resume task {task_id}: it is {task.status.value}")
            task.status = TaskStatus.ACTIVE
            task.generation += 1
            self._start_timer(task)
            snapshot = task.model_copy(deep=True)

        logger.info("Resumed task %s", task_id)
        self._persist(lambda store: store.update_sync_operation(task_id, status="active"))
        self._emit("task:resumed", snapshot)
        return snapshot

    def cancel(self, task_id: str) -> Task:
        """Stop and mark cancelled. The record stays; List() no longer shows it."""
        with self._lock:
            task = self._require(task_id)
            if task.status.terminal:
                raise InvalidTransitionError(f"Cannot cancel task {task_id}: it is {task.status.value}")
            task.status = TaskStatus.CANCELLED
            task.generation += 1
            task.finished_at = time.time()
            self._stop_timer(task_id)
            snapshot = task.model_copy(deep=True)

        logger.info("Cancelled task %s (%s)", task_id, snapshot.service)
        self._persist(lambda store: store.update_sync_operation(task_id, status="cancelled"))
        self._persist(lambda store: store.remove_background_task(task_id))
        self._emit("task:cancelled", snapshot)
        return snapshot

    # ── Queries ─────────────────────────────────────────────────

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list(self, *, include_finished: bool = False) -> list[Task]:
        """Active and paused tasks (plus terminal records if asked)."""
        with self._lock:
            tasks = [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if include_finished or not t.status.terminal
            ]
        return sorted(tasks, key=lambda t: t.created_at)

    def live_ids(self) -> set[str]:
        with self._lock:
            return {tid for tid, t in self._tasks.items() if not t.status.terminal}

    def is_monitoring(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._timers

    # ── Housekeeping ────────────────────────────────────────────

    def cleanup(self, max_age_s: float = 60.0) -> list[str]:
        """Forget terminal tasks that finished more than ``max_age_s`` ago."""
        cutoff = time.time() - max_age_s
        with self._lock:
            stale = [
                tid for tid, t in self._tasks.items()
                if t.status.terminal and (t.finished_at or 0) <= cutoff
            ]
            for tid in stale:
                self._tasks.pop(tid, None)
                self._checkers.pop(tid, None)
                self._on_complete.pop(tid, None)
                self._quiet_ticks.pop(tid, None)
        if stale:
            logger.debug("Cleaned up %d finished task(s)", len(stale))
        return stale

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every timer. Task records and statuses are left as they are."""
        with self._lock:
            timers = list(self._timers.items())
            self._timers.clear()
            for tid, (_, stop) in timers:
                stop.set()
                task = self._tasks.get(tid)
                if task is not None:
                    task.generation += 1
        current = threading.current_thread()
        for _, (thread, _) in timers:
            if thread is not current:
                thread.join(timeout=timeout)
        logger.debug("Task monitor shut down (%d timers stopped)", len(timers))

    # ── Internal ────────────────────────────────────────────────

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def _start_timer(self, task: Task) -> None:
        stop = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(task.id, task.generation, task.check_interval_ms / 1000, stop),
            name=f"task-{task.service}",
            daemon=True,
        )
        self._timers[task.id] = (thread, stop)
        thread.start()

    def _stop_timer(self, task_id: str) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer[1].set()

    def _run(self, task_id: str, generation: int, interval: float, stop: threading.Event) -> None:
        while not stop.is_set():
            self._tick(task_id, generation)
            if stop.wait(interval):
                break

    def _tick(self, task_id: str, generation: int) -> TaskCheck | None:
        with self._lock:
            task = self._tasks.get(task_id)
            checker = self._checkers.get(task_id)
            if task is None or checker is None:
                return None
            view = task.model_copy(deep=True)

        try:
            check = checker(view)
        except Exception as e:
            # One bad tick never ends monitoring.
            logger.warning("Status check for %s failed: %s", task_id, e)
            last = view.last_progress.percentage if view.last_progress else None
            check = TaskCheck(
                connected=not isinstance(e, ConnectivityError),
                still_trying=True,
                percentage=last,
                error=str(e) or e.__class__.__name__,
            )

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.generation != generation or task.status != TaskStatus.ACTIVE:
                logger.debug("Discarding stale check result for %s", task_id)
                return None

            previous = task.last_progress
            task.checks += 1
            if check.error:
                task.errors += 1
            task.last_progress = check

            if check.completed:
                task.status = TaskStatus.COMPLETE
                task.finished_at = time.time()
                task.last_progress = check.model_copy(update={"percentage": 100.0})
                self._stop_timer(task_id)
                snapshot = task.model_copy(deep=True)
                on_complete = self._on_complete.get(task_id)
                emit = False
            elif check.fatal:
                task.status = TaskStatus.ERROR
                task.finished_at = time.time()
                self._stop_timer(task_id)
                snapshot = task.model_copy(deep=True)
                on_complete = None
                emit = False
            else:
                emit = self._meaningful(task_id, previous, check)
                snapshot = task.model_copy(deep=True)
                on_complete = None

        if snapshot.status == TaskStatus.COMPLETE:
            self._finish(snapshot, check, on_complete)
        elif snapshot.status == TaskStatus.ERROR:
            self._fail(snapshot, check)
        elif emit:
            self._report(snapshot, check)
        return check

    def _meaningful(self, task_id: str, previous: TaskCheck | None, check: TaskCheck) -> bool:
        quiet = self._quiet_ticks.get(task_id, 0)
        changed = (
            previous is None
            or previous.connected != check.connected
            or (check.percentage is not None and (
                previous.percentage is None
                or abs(check.percentage - previous.percentage) > MEANINGFUL_DELTA
            ))
        )
        if changed or quiet + 1 >= self.heartbeat_ticks:
            self._quiet_ticks[task_id] = 0
            return True
        self._quiet_ticks[task_id] = quiet + 1
        return False

    def _report(self, task: Task, check: TaskCheck) -> None:
        updates: dict[str, Any] = {"status": "active", "details": dict(check.details)}
        if check.percentage is not None:
            updates["progress_pct"] = check.percentage
        if check.eta_seconds is not None:
            eta = datetime.now(UTC) + timedelta(seconds=check.eta_seconds)
            updates["estimated_completion"] = eta.isoformat()
        self._persist(lambda store: store.update_sync_operation(task.id, **updates))
        self._emit("task:progress", task, check)

    def _finish(self, task: Task, check: TaskCheck, on_complete: CompleteFn | None) -> None:
        self._persist(lambda store: store.update_sync_operation(task.id, status="complete", progress_pct=100.0))
        self._persist(lambda store: store.remove_background_task(task.id))

        if on_complete is not None:
            try:
                on_complete(task, check)
            except Exception:
                logger.exception("on_complete for task %s failed", task.id)

        if task.type == NODE_SYNC and task.config.get("auto_switch"):
            self._bus.publish("node:ready", key=task.service, data={
                "service": task.service,
                "endpoint": task.config.get("endpoint", ""),
                "message": "Local node is synced and ready for use",
            })

        duration = (task.finished_at or time.time()) - (task.started_at or task.created_at)
        logger.info("Task completed: %s (%s) in %.0fs", task.id, task.service, duration)
        self._emit("task:complete", task, task.last_progress, duration_s=round(duration, 3))

    def _fail(self, task: Task, check: TaskCheck) -> None:
        self._persist(lambda store: store.update_sync_operation(
            task.id, status="error", details={**check.details, "error": check.error or "failed"},
        ))
        self._persist(lambda store: store.remove_background_task(task.id))
        logger.error("Task failed: %s (%s): %s", task.id, task.service, check.error or "no reason given")
        self._emit("task:error", task, check)

    def _emit(self, event_type: str, task: Task, check: TaskCheck | None = None, **kw: Any) -> None:
        data: dict[str, Any] = {
            "task_id": task.id,
            "type": task.type,
            "service": task.service,
            "status": task.status.value,
        }
        progress = check or task.last_progress
        if progress is not None:
            data.update(
                percentage=progress.percentage,
                connected=progress.connected,
                still_trying=progress.still_trying,
                eta_seconds=progress.eta_seconds,
                details=dict(progress.details),
            )
            if progress.error:
                data["error"] = progress.error
        self._bus.publish(event_type, key=task.id, data=data, **kw)

    def _persist(self, fn: Callable[[InstallationStateStore], Any]) -> None:
        """State updates from the monitor are best-effort; polling goes on."""
        if self._store is None:
            return
        try:
            fn(self._store)
        except (NodestackError, OSError) as e:
            logger.warning("Could not persist task update: %s", e)
