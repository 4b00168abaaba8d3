"""
EventBus: in-process pub/sub for installer progress.

The task monitor and the orchestration engine publish here; the SSE
route and in-process listeners consume. Events are plain dicts::

    {"v": 1, "ts": 1739648400.1, "seq": 47,
     "type": "task:progress", "key": "task-3f2a...", "data": {...}}

``type`` is ``<domain>:<action>`` (task, node, install, fallback, sys).
``key`` names the resource the event is about: a task id, a service
name or an installation id.

Reconnecting streams pass the last ``seq`` they saw and get the missed
events from a bounded replay window. A stream that fell out of the
window (or is new) gets ``state:snapshot`` instead: the last task and
node event per key, which is enough to redraw progress bars.

One lock guards the sequence counter, the replay window, the
subscriber queues and the per-key slots. Listeners run after the lock
is released, on the publisher's thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from typing import Any

logger = logging.getLogger(__name__)

EVENT_VERSION = 1

Listener = Callable[[dict], None]

# Only these domains describe long-lived resources worth snapshotting
_KEYED_DOMAINS = ("task:", "node:")


class EventBus:
    """Sequenced event fan-out with a replay window.

    Args:
        buffer_size: Events kept for replay to reconnecting streams.
        subscriber_queue_size: Backlog a stream may build up before it
            is disconnected.
    """

    def __init__(self, *, buffer_size: int = 500, subscriber_queue_size: int = 200) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._window: deque[dict] = deque(maxlen=buffer_size)
        self._streams: list[queue.Queue[dict]] = []
        self._listeners: list[Listener] = []
        self._last_by_key: dict[str, dict] = {}
        self._backlog = subscriber_queue_size
        self._started = time.strftime("%Y-%m-%dT%H:%M:%S")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._streams)

    def _stamp(self, event_type: str, key: str, data: dict[str, Any], **extra: Any) -> dict:
        # Caller holds the lock
        self._seq += 1
        return {
            "v": EVENT_VERSION,
            "ts": time.time(),
            "seq": self._seq,
            "type": event_type,
            "key": key,
            "data": data,
            **extra,
        }

    # ── Publishing ──────────────────────────────────────────────

    def publish(
        self,
        event_type: str,
        *,
        key: str = "",
        data: dict[str, Any] | None = None,
        **extra: Any,
    ) -> dict:
        """Sequence an event, fan it out, and return it."""
        return self._publish(event_type, key, data or {}, extra)

    def _publish(
        self,
        event_type: str,
        key: str,
        data: dict[str, Any],
        extra: dict[str, Any],
        skip: queue.Queue[dict] | None = None,
    ) -> dict:
        # ``skip`` is a stream that yields the event itself
        with self._lock:
            event = self._stamp(event_type, key, data, **extra)
            self._window.append(event)
            if key and event_type.startswith(_KEYED_DOMAINS):
                self._last_by_key[key] = event

            overflowing = []
            for stream in self._streams:
                if stream is skip:
                    continue
                try:
                    stream.put_nowait(event)
                except queue.Full:
                    overflowing.append(stream)
            for stream in overflowing:
                self._streams.remove(stream)
            listeners = list(self._listeners)

        if overflowing:
            logger.warning("Disconnected %d stream(s) that stopped reading", len(overflowing))

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s", event_type)

        if event_type != "sys:heartbeat":
            logger.debug("event %s key=%s", event_type, key or "-")
        return event

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Run ``listener(event)`` on every publish; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def recent(self, event_type: str | None = None, since: int = 0) -> list[dict]:
        """Events still in the replay window newer than ``since``."""
        with self._lock:
            return [
                e for e in self._window
                if e["seq"] > since and (event_type is None or e["type"] == event_type)
            ]

    # ── Streaming ───────────────────────────────────────────────

    def _backfill(self, stream: queue.Queue[dict], since: int) -> bool:
        """Queue the events after ``since``. False when a snapshot is needed."""
        # Caller holds the lock
        if since <= 0 or not self._window or since < self._window[0]["seq"]:
            return False
        missed = [e for e in self._window if e["seq"] > since]
        if len(missed) > self._backlog:
            return False
        for event in missed:
            stream.put_nowait(event)
        return True

    def subscribe(self, *, since: int = 0, heartbeat_interval: float = 30.0) -> Iterator[dict]:
        """Stream events to one client until the generator is closed.

        Starts with ``sys:ready``, then either the missed events after
        ``since`` or a ``state:snapshot``, then live events. A
        ``sys:heartbeat`` is published whenever ``heartbeat_interval``
        passes without one.
        """
        stream: queue.Queue[dict] = queue.Queue(maxsize=self._backlog)
        with self._lock:
            replayed = self._backfill(stream, since)
            self._streams.append(stream)
            ready = self._stamp("sys:ready", "", {"instance_id": self._started})
            snapshot = None if replayed else self._stamp("state:snapshot", "", self._snapshot_locked())
            count = len(self._streams)
        logger.info("Stream opened (since=%d, replayed=%s, streams=%d)", since, replayed, count)

        try:
            yield ready
            if snapshot is not None:
                yield snapshot
            while True:
                try:
                    yield stream.get(timeout=heartbeat_interval)
                except queue.Empty:
                    yield self._publish("sys:heartbeat", "", {}, {}, skip=stream)
        finally:
            with self._lock:
                if stream in self._streams:
                    self._streams.remove(stream)
            logger.info("Stream closed")

    # ── Snapshot ────────────────────────────────────────────────

    def _snapshot_locked(self) -> dict[str, dict]:
        now = time.time()
        return {
            key: {"type": e["type"], "data": e["data"], "age_s": round(now - e["ts"])}
            for key, e in self._last_by_key.items()
        }

    def snapshot(self) -> dict[str, dict]:
        """Last task/node event per key, with its age in seconds."""
        with self._lock:
            return self._snapshot_locked()


bus = EventBus()
"""Process-wide bus used when no explicit bus is wired in."""
