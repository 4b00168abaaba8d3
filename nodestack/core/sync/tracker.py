"""
Sync tracker: progress and ETA for a node catching up its chain.

Keeps a short history of ``(timestamp, height)`` samples per node and
derives a block rate from the oldest and newest sample in the trailing
window. Connectivity failures are reported as ``Disconnected``, never
as 0% progress, so callers can tell "slow" from "unreachable".
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from nodestack.core.errors import ConnectivityError
from nodestack.core.models.sync import Disconnected, SyncProgress, SyncSample
from nodestack.core.models.task import Task, TaskCheck

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_S = 600.0


class SyncSource(Protocol):
    """Anything that can report a node's chain position."""

    def get_sync_status(self) -> SyncSample: ...


class SyncTracker:
    """Per-node sample history and progress arithmetic.

    Args:
        window_s: Samples older than this (relative to the newest) are dropped.
        clock: Epoch-seconds source; injectable for tests.
    """

    def __init__(
        self,
        *,
        window_s: float = DEFAULT_WINDOW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._history: dict[str, deque[tuple[float, int]]] = {}
        self._latest: dict[str, SyncSample] = {}

    # ── Sampling ────────────────────────────────────────────────

    def sample(self, node_key: str, source: SyncSource) -> SyncSample | Disconnected:
        """Poll ``source`` once and record the reading."""
        try:
            reading = source.get_sync_status()
        except ConnectivityError as e:
            logger.debug("Sync source %s unreachable: %s", node_key, e)
            return Disconnected(node_key=node_key, error=str(e), timed_out=e.timed_out)
        self.record(node_key, reading)
        return reading

    def record(self, node_key: str, reading: SyncSample, at: float | None = None) -> None:
        """Add a reading to the node's history, trimming the window."""
        now = self._clock() if at is None else at
        with self._lock:
            history = self._history.setdefault(node_key, deque())
            history.append((now, reading.current_height))
            while history and now - history[0][0] > self.window_s:
                history.popleft()
            self._latest[node_key] = reading

    # ── Derived progress ────────────────────────────────────────

    def progress(self, node_key: str) -> SyncProgress | None:
        """Progress for the latest reading, or None if never sampled."""
        with self._lock:
            reading = self._latest.get(node_key)
            history = list(self._history.get(node_key, ()))
        if reading is None:
            return None

        current = reading.current_height
        target = reading.target_height
        if reading.is_synced:
            percentage = 100.0
        elif target > 0:
            percentage = min(100.0, 100.0 * current / target)
        else:
            percentage = 0.0
        remaining = 0 if reading.is_synced else max(0, target - current)

        rate = _rate(history)
        eta: float | None = None
        if reading.is_synced:
            eta = 0.0
        elif rate is not None and rate > 0:
            eta = remaining / rate

        return SyncProgress(
            node_key=node_key,
            current_height=current,
            target_height=target,
            is_synced=reading.is_synced,
            percentage=round(percentage, 2),
            blocks_remaining=remaining,
            rate_blocks_per_sec=rate,
            eta_seconds=eta,
            samples=len(history),
        )

    def check(self, node_key: str, source: SyncSource) -> SyncProgress | Disconnected:
        """Sample then report progress."""
        result = self.sample(node_key, source)
        if isinstance(result, Disconnected):
            return result
        progress = self.progress(node_key)
        if progress is None:
            # history was cleared between the sample and the read
            return Disconnected(node_key=node_key, error="No reading recorded")
        return progress

    def clear_history(self, node_key: str | None = None) -> None:
        with self._lock:
            if node_key is None:
                self._history.clear()
                self._latest.clear()
            else:
                self._history.pop(node_key, None)
                self._latest.pop(node_key, None)

    def status_checker(self, node_key: str, source: SyncSource) -> Callable[[Task], TaskCheck]:
        """Adapt this tracker into a task-monitor status function."""
        def check(task: Task) -> TaskCheck:
            result = self.check(node_key, source)
            if isinstance(result, Disconnected):
                last = task.last_progress.percentage if task.last_progress else None
                return TaskCheck(
                    connected=False,
                    still_trying=True,
                    percentage=last,
                    error=result.error or "Node not reachable",
                    details={"timed_out": result.timed_out},
                )
            return TaskCheck(
                completed=result.is_synced,
                percentage=result.percentage,
                eta_seconds=result.eta_seconds,
                details={
                    "current_height": result.current_height,
                    "target_height": result.target_height,
                    "blocks_remaining": result.blocks_remaining,
                    "rate_blocks_per_sec": result.rate_blocks_per_sec,
                    "eta": format_eta(result.eta_seconds),
                },
            )

        return check


def _rate(history: list[tuple[float, int]]) -> float | None:
    if len(history) < 2:
        return None
    (t0, h0), (t1, h1) = history[0], history[-1]
    if t1 <= t0:
        return None
    return (h1 - h0) / (t1 - t0)


def format_eta(seconds: float | None) -> str:
    """Human text for an ETA: "42 seconds", "5 minutes 3s", "3 hours 12 min"."""
    if seconds is None:
        return "unknown"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        minutes, rest = divmod(seconds, 60)
        text = f"{minutes} minute{'s' if minutes != 1 else ''}"
        return f"{text} {rest}s" if rest else text
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    text = f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{text} {minutes} min" if minutes else text
