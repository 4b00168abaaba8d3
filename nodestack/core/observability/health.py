"""
Health checker: aggregate installer health from its collaborators.

Reports the container runtime, the node RPC, the state store and the
background task monitor. Used by the CLI `health` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nodestack.adapters.base import ContainerDriver, NodeRpc
from nodestack.core.engine.task_monitor import BackgroundTaskMonitor
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.task import TaskStatus
from nodestack.core.persistence.state_store import InstallationStateStore

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Aggregate health of the installer."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_container_runtime(driver: ContainerDriver) -> ComponentHealth:
    if driver.is_available():
        return ComponentHealth(name="container_runtime", status="healthy",
                               message=f"{driver.name} available")
    return ComponentHealth(name="container_runtime", status="unhealthy",
                           message=f"{driver.name} not available")


def check_node_rpc(rpc: NodeRpc) -> ComponentHealth:
    """Unreachable is degraded, not unhealthy: the public network can stand in."""
    try:
        sample = rpc.get_sync_status()
    except ConnectivityError as e:
        return ComponentHealth(
            name="node_rpc",
            status="degraded",
            message="timed out" if e.timed_out else str(e),
            details={"endpoint": rpc.endpoint},
        )
    return ComponentHealth(
        name="node_rpc",
        status="healthy",
        message="synced" if sample.is_synced else f"syncing {sample.current_height}/{sample.target_height}",
        details={"endpoint": rpc.endpoint, **sample.model_dump()},
    )


def check_state_store(store: InstallationStateStore) -> ComponentHealth:
    if store.state_file.exists() and store.load() is None:
        return ComponentHealth(name="state_store", status="degraded",
                               message="State file unreadable; treated as no state",
                               details={"path": str(store.state_file)})
    summary = store.summary()
    if summary is None:
        return ComponentHealth(name="state_store", status="healthy", message="No installation in progress")
    return ComponentHealth(name="state_store", status="healthy",
                           message=f"Phase {summary['phase']}", details=summary)


def check_task_monitor(monitor: BackgroundTaskMonitor) -> ComponentHealth:
    tasks = monitor.list(include_finished=True)
    errored = [t.id for t in tasks if t.status == TaskStatus.ERROR]
    active = [t.id for t in tasks if not t.status.terminal]
    details = {"active": active, "errored": errored, "total": len(tasks)}
    if errored:
        return ComponentHealth(name="task_monitor", status="degraded",
                               message=f"{len(errored)} task(s) in error", details=details)
    return ComponentHealth(name="task_monitor", status="healthy",
                           message=f"{len(active)} active task(s)", details=details)


def check_system_health(
    driver: ContainerDriver | None = None,
    rpc: NodeRpc | None = None,
    store: InstallationStateStore | None = None,
    monitor: BackgroundTaskMonitor | None = None,
) -> SystemHealth:
    """Run all health checks and return aggregate status."""
    health = SystemHealth()
    if driver is not None:
        health.add(check_container_runtime(driver))
    if rpc is not None:
        health.add(check_node_rpc(rpc))
    if store is not None:
        health.add(check_state_store(store))
    if monitor is not None:
        health.add(check_task_monitor(monitor))
    return health
