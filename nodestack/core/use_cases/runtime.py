"""
Runtime wiring: build every collaborator from Settings.

The CLI and the web server both go through ``build_runtime`` so that one
process holds exactly one state store, one task monitor and one engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from nodestack.adapters.base import ContainerDriver, NodeRpc
from nodestack.adapters.containers.docker import DockerComposeDriver
from nodestack.adapters.mock import MockContainerDriver, ScriptedNodeRpc
from nodestack.adapters.rpc.node_rpc import HttpNodeRpc
from nodestack.core.config.catalog_loader import load_catalog
from nodestack.core.config.loader import Settings, load_settings
from nodestack.core.engine.orchestrator import OrchestrationEngine, RpcFactory
from nodestack.core.engine.task_monitor import BackgroundTaskMonitor
from nodestack.core.fallback.controller import FallbackController
from nodestack.core.models.profile import Catalog, ServiceRef
from nodestack.core.persistence.state_store import InstallationStateStore
from nodestack.core.reliability.backoff import BackoffPolicy
from nodestack.core.services.event_bus import EventBus
from nodestack.core.services.event_bus import bus as default_bus
from nodestack.core.sync.tracker import SyncTracker

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """One process's worth of wired-up installer components."""

    settings: Settings
    catalog: Catalog
    driver: ContainerDriver
    store: InstallationStateStore
    monitor: BackgroundTaskMonitor
    tracker: SyncTracker
    fallback: FallbackController
    engine: OrchestrationEngine
    rpc: NodeRpc
    event_bus: EventBus
    mock: bool = False

    def close(self) -> None:
        self.engine.shutdown()
        self.store.close()


def _mock_rpc_factory(ref: ServiceRef) -> NodeRpc:
    # A node that is one block behind, then synced
    return ScriptedNodeRpc([(999, 1000, False), (1000, 1000, True)], endpoint=f"mock://{ref.name}")


def build_runtime(
    settings: Settings | None = None,
    *,
    config_path: Path | None = None,
    mock: bool = False,
    driver: ContainerDriver | None = None,
    rpc_factory: RpcFactory | None = None,
    event_bus: EventBus | None = None,
) -> Runtime:
    """Load settings and catalog, then wire store, monitor, fallback and engine.

    Args:
        settings: Pre-loaded settings; loaded from ``config_path`` otherwise.
        config_path: Explicit nodestack.yml (searched upward when None).
        mock: Use the in-process mock driver and a scripted node.
        driver: Override the container driver (tests).
        rpc_factory: Override how sync services' node RPC is built (tests).
        event_bus: Defaults to the process-wide bus.

    Raises:
        ConfigError: Settings or catalog invalid.
    """
    settings = settings or load_settings(config_path)
    catalog = load_catalog(settings.catalog_path)
    bus = event_bus or default_bus

    if driver is None:
        if mock:
            driver = MockContainerDriver()
        else:
            driver = DockerComposeDriver(
                settings.compose_file,
                project=settings.compose_project,
                timeout=settings.driver_timeout_s,
            )

    if rpc_factory is None:
        if mock:
            rpc_factory = _mock_rpc_factory
        else:
            def rpc_factory(ref: ServiceRef) -> NodeRpc:
                return HttpNodeRpc(settings.rpc.url, timeout=settings.rpc.timeout_s)

    store = InstallationStateStore(
        settings.state_dir,
        max_snapshots=settings.max_snapshots,
        max_age_hours=settings.resume_max_age_hours,
    )
    monitor = BackgroundTaskMonitor(
        store,
        bus,
        default_interval_s=settings.check_interval_s,
        heartbeat_ticks=settings.progress_heartbeat_ticks,
    )
    # Task ids saved by an earlier process have no timer in this one
    store.prune_background_tasks(monitor.live_ids())
    tracker = SyncTracker()

    # Reachability probes for every sync service, so a running but deaf
    # node is told apart from a healthy one.
    probes = {}
    for profile in catalog.profiles.values():
        for ref in profile.services:
            if ref.sync and ref.name not in probes:
                probes[ref.name] = rpc_factory(ref).get_sync_status

    retry = BackoffPolicy(
        base_delay=settings.retry.base_delay_s,
        max_attempts=settings.retry.max_attempts,
        max_delay=settings.retry.max_delay_s,
    )
    fallback = FallbackController(
        catalog, driver, store, probes=probes, retry=retry, driver_timeout_s=settings.driver_timeout_s,
    )
    engine = OrchestrationEngine(
        catalog,
        driver,
        store,
        monitor,
        tracker=tracker,
        rpc_factory=rpc_factory,
        fallback=fallback,
        limits=settings.resource_limits,
        driver_timeout_s=settings.driver_timeout_s,
        event_bus=bus,
    )

    if mock:
        rpc: NodeRpc = ScriptedNodeRpc([(1000, 1000, True)], endpoint="mock://node")
    else:
        rpc = HttpNodeRpc(settings.rpc.url, timeout=settings.rpc.timeout_s)

    logger.debug("Runtime built (driver=%s, state=%s, mock=%s)", driver.name, settings.state_dir, mock)
    return Runtime(
        settings=settings,
        catalog=catalog,
        driver=driver,
        store=store,
        monitor=monitor,
        tracker=tracker,
        fallback=fallback,
        engine=engine,
        rpc=rpc,
        event_bus=bus,
        mock=mock,
    )
