"""
Mock adapters: in-process doubles for the container runtime and node.

Used by tests and ``--mock`` runs to drive the orchestration without a
container runtime or a real node. Every call is recorded.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable

from nodestack.adapters.base import ContainerDriver, ContainerStatus, NodeRpc
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.receipt import Receipt
from nodestack.core.models.sync import SyncSample


class MockContainerDriver(ContainerDriver):
    """Container driver that succeeds by default and remembers everything.

    Starting a service marks it running and healthy; failures, delays and
    explicit statuses can be configured per ``(operation, service)``.
    """

    def __init__(self, driver_name: str = "mock", available: bool = True):
        self._name = driver_name
        self._available = available
        self._lock = threading.Lock()
        self._statuses: dict[str, ContainerStatus] = {}
        self._failures: dict[tuple[str, str], str] = {}
        self._delays: dict[tuple[str, str], float] = {}
        self._logs: dict[str, list[str]] = {}
        self._unreachable = False
        self._call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[tuple[str, str]]:
        """``(operation, service)`` for every call received."""
        with self._lock:
            return list(self._call_log)

    def calls(self, operation: str) -> list[str]:
        """Services ``operation`` was called for, in order."""
        return [svc for op, svc in self.call_log if op == operation]

    def is_available(self) -> bool:
        return self._available

    # ── Configuration ───────────────────────────────────────────

    def set_failure(self, operation: str, service: str, error: str = "Mock failure") -> None:
        self._failures[(operation, service)] = error

    def clear_failure(self, operation: str, service: str) -> None:
        self._failures.pop((operation, service), None)

    def set_delay(self, operation: str, service: str, seconds: float) -> None:
        """Make an operation block (to exercise caller timeouts)."""
        self._delays[(operation, service)] = seconds

    def set_status(self, service: str, *, exists: bool = True, running: bool = True,
                   health: str = "none", state: str = "") -> None:
        self._statuses[service] = ContainerStatus(
            service=service, exists=exists, running=running, health=health,
            state=state or ("running" if running else "exited"),
        )

    def set_logs(self, service: str, lines: Iterable[str]) -> None:
        self._logs[service] = list(lines)

    def set_unreachable(self, unreachable: bool = True) -> None:
        """Make ``status`` raise ConnectivityError, as if the daemon were down."""
        self._unreachable = unreachable

    # ── Driver interface ────────────────────────────────────────

    def prepare(self, service: str) -> Receipt:
        return self._operation("prepare", service)

    def start(self, service: str) -> Receipt:
        receipt = self._operation("start", service)
        if receipt.ok:
            self.set_status(service)
        return receipt

    def stop(self, service: str) -> Receipt:
        receipt = self._operation("stop", service)
        if receipt.ok and service in self._statuses:
            self.set_status(service, running=False)
        return receipt

    def status(self, service: str) -> ContainerStatus:
        self._record("status", service)
        delay = self._delays.get(("status", service))
        if delay:
            time.sleep(delay)
        if self._unreachable:
            raise ConnectivityError("mock runtime unreachable", target=self._name)
        return self._statuses.get(service, ContainerStatus(service=service))

    def logs(self, service: str, tail: int = 50) -> list[str]:
        self._record("logs", service)
        return self._logs.get(service, [])[-tail:]

    def _record(self, operation: str, service: str) -> None:
        with self._lock:
            self._call_log.append((operation, service))

    def _operation(self, operation: str, service: str) -> Receipt:
        self._record(operation, service)
        delay = self._delays.get((operation, service))
        if delay:
            time.sleep(delay)
        error = self._failures.get((operation, service))
        if error is not None:
            return Receipt.failure(self._name, operation, service, error=error)
        return Receipt.success(self._name, operation, service, output="[mock] ok", metadata={"mock": True})


class ScriptedNodeRpc(NodeRpc):
    """Node double that replays a script of readings.

    Each entry is a SyncSample, an exception instance to raise, or a
    ``(current, target, synced)`` tuple. The last entry repeats once the
    script runs out.
    """

    def __init__(self, script: Iterable[SyncSample | Exception | tuple[int, int, bool]],
                 endpoint: str = "mock://node"):
        self._script = [self._coerce(item) for item in script]
        if not self._script:
            raise ValueError("ScriptedNodeRpc needs at least one reading")
        self._endpoint = endpoint
        self._index = 0
        self._lock = threading.Lock()
        self.calls = 0

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def extend(self, items: Iterable[SyncSample | Exception | tuple[int, int, bool]]) -> None:
        with self._lock:
            self._script.extend(self._coerce(item) for item in items)

    def get_sync_status(self) -> SyncSample:
        with self._lock:
            item = self._script[min(self._index, len(self._script) - 1)]
            self._index += 1
            self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item

    @staticmethod
    def _coerce(item: SyncSample | Exception | tuple[int, int, bool]) -> SyncSample | Exception:
        if isinstance(item, tuple):
            current, target, synced = item
            return SyncSample(current_height=current, target_height=target, is_synced=synced)
        return item
