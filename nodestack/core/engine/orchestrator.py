"""
Orchestration engine: the top-level installation loop.

Takes a profile selection, asks the resolver for a startup plan, runs it
against the container driver phase by phase, backgrounds node syncs with
the task monitor, and writes every step into the state store.

Flow:
    preparing → building → starting → validating → syncing → complete

Services inside one startup phase start concurrently; a phase begins only
after the previous one finished. Sync services are registered with the
monitor as soon as they start, so later phases never wait for a chain to
catch up. The installation is complete once no sync task remains.

Fatal problems persist the failing service and resume point *before*
raising FatalOrchestrationError, so both "retry from here" and "start
over" stay possible.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, NoReturn

from nodestack.adapters.base import ContainerDriver, NodeRpc
from nodestack.core.config.loader import ResourceLimits
from nodestack.core.errors import (
    ConnectivityError,
    FatalOrchestrationError,
    InvalidTransitionError,
    NoStateError,
    ValidationError,
)
from nodestack.core.engine.task_monitor import NODE_SYNC, BackgroundTaskMonitor
from nodestack.core.fallback.controller import FallbackController
from nodestack.core.models.fallback import FallbackConfig, FallbackStrategy
from nodestack.core.models.profile import Catalog, ServiceRef
from nodestack.core.models.receipt import Receipt
from nodestack.core.models.resolution import Resolution
from nodestack.core.models.state import InstallationState, InstallPhase, ServiceState
from nodestack.core.models.task import Task, TaskCheck, TaskStatus
from nodestack.core.persistence.state_store import InstallationStateStore
from nodestack.core.reliability.deadline import call_with_deadline
from nodestack.core.resolver.dependency_resolver import resolve
from nodestack.core.resolver.templates import apply_template, get_template
from nodestack.core.services.event_bus import EventBus
from nodestack.core.services.event_bus import bus as default_bus
from nodestack.core.sync.tracker import SyncTracker

logger = logging.getLogger(__name__)

RpcFactory = Callable[[ServiceRef], NodeRpc]

# Services already past this point are not touched again on resume
_DONE = frozenset({ServiceState.RUNNING, ServiceState.SYNCING})


@dataclass
class InstallReport:
    """What an install (or resume) call achieved before returning."""

    installation_id: str = ""
    profiles: list[str] = field(default_factory=list)
    phase: str = InstallPhase.PREPARING.value
    services: dict[str, str] = field(default_factory=dict)
    sync_tasks: list[str] = field(default_factory=list)
    receipts: list[Receipt] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.phase == InstallPhase.COMPLETE.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "installation_id": self.installation_id,
            "profiles": self.profiles,
            "phase": self.phase,
            "complete": self.complete,
            "services": self.services,
            "sync_tasks": self.sync_tasks,
            "receipts": [r.model_dump(mode="json") for r in self.receipts],
        }


class OrchestrationEngine:
    """Composes resolver, driver, state store, task monitor and fallback.

    Args:
        catalog: Profile registry.
        driver: Container driver the services run under.
        store: Installation state (single source of truth).
        monitor: Owner of background sync tasks.
        tracker: Sync progress tracker shared by all node-sync tasks.
        rpc_factory: Builds the node RPC client for a sync service. Without
            one, sync services are treated as ready as soon as they start.
        fallback: Controller used by ``apply_fallback``.
        limits: Thresholds for resource warnings.
        driver_timeout_s: Deadline for each driver call.
        sync_interval_s: Poll interval for sync tasks (monitor default if None).
    """

    def __init__(
        self,
        catalog: Catalog,
        driver: ContainerDriver,
        store: InstallationStateStore,
        monitor: BackgroundTaskMonitor,
        *,
        tracker: SyncTracker | None = None,
        rpc_factory: RpcFactory | None = None,
        fallback: FallbackController | None = None,
        limits: ResourceLimits | None = None,
        driver_timeout_s: float = 120.0,
        sync_interval_s: float | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.catalog = catalog
        self.driver = driver
        self.store = store
        self.monitor = monitor
        self.tracker = tracker or SyncTracker()
        self.rpc_factory = rpc_factory
        self.fallback = fallback or FallbackController(catalog, driver, store, driver_timeout_s=driver_timeout_s)
        self.limits = limits
        self.driver_timeout_s = driver_timeout_s
        self.sync_interval_s = sync_interval_s
        self._bus = event_bus or default_bus

        self._lock = threading.Lock()
        self._installing = False
        self._public_while_syncing: set[str] = set()
        self._driver_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="nodestack-driver")

    # ── Planning ────────────────────────────────────────────────

    def plan(self, profiles: list[str]) -> Resolution:
        return resolve(self.catalog, profiles, self.limits)

    # ── Install / resume ────────────────────────────────────────

    def install(
        self,
        profiles: list[str] | None = None,
        configuration: dict[str, Any] | None = None,
        *,
        template: str | None = None,
        public_while_syncing: bool = False,
    ) -> InstallReport:
        """Start a fresh installation.

        Args:
            profiles: Profile ids; defaults to the template's when one is given.
            configuration: Operator configuration (template values win).
            template: Template id to take profiles and configuration from.
            public_while_syncing: Point dependents of a syncing node at its
                public substitute until the sync completes.

        Raises:
            ValidationError: The selection does not resolve cleanly.
            FatalOrchestrationError: A service could not be built or started.
        """
        config = dict(configuration or {})
        if template is not None:
            tpl = get_template(self.catalog, template)
            profiles = list(profiles or tpl.profiles)
            config = apply_template(self.catalog, template, config)
        if not profiles:
            raise ValidationError("No profiles selected")

        resolution = self.plan(profiles)
        if not resolution.valid:
            messages = "; ".join(issue.message for issue in resolution.errors)
            raise ValidationError(f"Invalid profile selection: {messages}", issues=resolution.errors)

        # Only the request is stored; prerequisites are re-derived on resume
        state = self.store.start_new(resolution.selection, config)
        if template is not None:
            self.store.record_decision("template", template)
        if public_while_syncing:
            self.store.record_decision("use-public-while-syncing", ", ".join(resolution.resolved))

        def seed(s: InstallationState) -> None:
            for name in resolution.services:
                s.set_service_status(name, ServiceState.PENDING)
            s.current_step = "install"
            s.resume_point = InstallPhase.PREPARING.value

        self.store.mutate(seed)
        logger.info("Installing %s (%d services, %d phases)", resolution.resolved,
                    len(resolution.services), len(resolution.startup_plan))
        self._publish("install:start", {
            "installation_id": state.installation_id,
            "profiles": resolution.resolved,
        })
        return self._run(resolution, public_while_syncing=public_while_syncing)

    def resume(self, *, public_while_syncing: bool = False) -> InstallReport:
        """Continue the saved installation from where it stopped.

        Services in error are reset and retried; running ones are left alone.

        Raises:
            NoStateError: Nothing resumable (the reason is in the message).
        """
        check = self.store.can_resume()
        if not check.can_resume:
            raise NoStateError(f"Cannot resume: {check.message}")

        state = self.store.current()
        if state is None:
            raise NoStateError("Cannot resume: installation state disappeared")
        resolution = self.plan(state.selection.profiles)
        if not resolution.valid:
            messages = "; ".join(issue.message for issue in resolution.errors)
            raise ValidationError(f"Saved selection no longer resolves: {messages}", issues=resolution.errors)

        self.store.prune_background_tasks(self.monitor.live_ids())
        for svc in state.services:
            if svc.status == ServiceState.ERROR:
                self.store.reset_service(svc.name)
        self.store.record_decision("resume", state.resume_point)
        logger.info("Resuming installation %s from %s", state.installation_id, state.resume_point)
        return self._run(resolution, public_while_syncing=public_while_syncing)

    def start_over(self) -> None:
        """Cancel background work and drop all saved state."""
        for task in self.monitor.list():
            self.monitor.cancel(task.id)
        self.store.clear()
        self.tracker.clear_history()
        with self._lock:
            self._public_while_syncing.clear()
        self._publish("install:reset", {})
        logger.info("Installation state cleared; starting over")

    # ── Fallback ────────────────────────────────────────────────

    def apply_fallback(
        self,
        service: str,
        strategy: FallbackStrategy | str,
        dependents: list[str] | None = None,
    ) -> FallbackConfig:
        """Apply the operator's recovery choice for a failed service."""
        config = self.fallback.apply(service, strategy, dependents)

        if config.skip_local:
            receipt = self._call("stop", service)
            if receipt.failed:
                logger.warning("Could not stop %s after skipping it: %s", service, receipt.error)
        elif config.strategy == FallbackStrategy.RETRY_LOCAL and config.recovered:
            state = self.store.current()
            svc = state.get_service(service) if state else None
            if svc is not None and svc.status == ServiceState.ERROR:
                self.store.reset_service(service)
            if svc is not None:
                self.store.update_service_status(service, ServiceState.RUNNING)

        self._publish("fallback:applied", config.model_dump(mode="json"), key=service)
        return config

    # ── Status ──────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "state": self.store.summary(),
            "resume": self.store.can_resume().model_dump(),
            "tasks": [t.to_dict() for t in self.monitor.list(include_finished=True)],
        }

    def shutdown(self) -> None:
        self.monitor.shutdown()
        self.fallback.shutdown()
        self._driver_pool.shutdown(wait=False, cancel_futures=True)

    # ── The loop ────────────────────────────────────────────────

    def _run(self, resolution: Resolution, *, public_while_syncing: bool) -> InstallReport:
        with self._lock:
            self._installing = True
        try:
            report = self._execute(resolution, public_while_syncing)
        finally:
            with self._lock:
                self._installing = False
        # A sync that finished while the loop was still running left
        # finalizing to us.
        if report.phase == InstallPhase.SYNCING.value and not self._pending_syncs():
            self._finalize()
            report.phase = InstallPhase.COMPLETE.value
        return report

    def _execute(self, resolution: Resolution, public_while_syncing: bool) -> InstallReport:
        state = self.store.current()
        if state is None:
            raise NoStateError("No installation in progress")
        report = InstallReport(installation_id=state.installation_id, profiles=resolution.resolved)
        done = {s.name for s in state.services if s.status in _DONE}
        was_syncing = {s.name for s in state.services if s.status == ServiceState.SYNCING}

        # Building
        self._enter(InstallPhase.BUILDING)
        for name in resolution.services:
            if name in done:
                continue
            self._set_status(name, ServiceState.BUILDING)
            receipt = self._call("prepare", name)
            report.receipts.append(receipt)
            if receipt.failed:
                self._fatal(InstallPhase.BUILDING, name, receipt.error or "prepare failed")

        # Starting, one startup phase at a time
        self._enter(InstallPhase.STARTING)
        for phase in resolution.startup_plan:
            # Syncs survive a restart only in state; their tasks need registering again
            for name in phase.services:
                if name in was_syncing:
                    self._after_start(name, public_while_syncing, report)
            todo = [name for name in phase.services if name not in done]
            if not todo:
                continue
            logger.info("Starting phase %d: %s", phase.rank, ", ".join(todo))
            with ThreadPoolExecutor(max_workers=len(todo), thread_name_prefix="nodestack-start") as pool:
                receipts = list(pool.map(self._start_one, todo))
            report.receipts.extend(receipts)
            failed = [r for r in receipts if r.failed]
            if failed:
                first = failed[0]
                self._fatal(InstallPhase.STARTING, first.service, first.error or "start failed")
            for name in todo:
                self._after_start(name, public_while_syncing, report)

        # Validating: everything that is not still syncing must be up
        self._enter(InstallPhase.VALIDATING)
        syncing = self._syncing_services()
        for name in resolution.services:
            if name in syncing:
                continue
            self._validate(name)

        report.sync_tasks = sorted(t.id for t in self.monitor.list() if t.type == NODE_SYNC)
        if self._pending_syncs():
            self._enter(InstallPhase.SYNCING)
            report.phase = InstallPhase.SYNCING.value
            logger.info("Installation waiting on %d background sync(s)", len(report.sync_tasks))
        else:
            self._finalize()
            report.phase = InstallPhase.COMPLETE.value

        final = self.store.current()
        if final is not None:
            report.services = {s.name: s.status.value for s in final.services}
        return report

    def _start_one(self, name: str) -> Receipt:
        self._set_status(name, ServiceState.STARTING)
        return self._call("start", name)

    def _after_start(self, name: str, public_while_syncing: bool, report: InstallReport) -> None:
        found = self.catalog.find_service(name)
        ref = found[1] if found else None
        if ref is None or not ref.sync:
            return
        if self.rpc_factory is None:
            logger.warning("No node RPC configured for %s; not tracking its sync", name)
            return
        self._set_status(name, ServiceState.SYNCING)
        if public_while_syncing:
            self._use_public_while_syncing(name)
        task = self.monitor.register_node_sync(
            name,
            self.rpc_factory(ref),
            self.tracker,
            node_key=name,
            on_complete=self._on_sync_complete,
            interval_s=self.sync_interval_s,
        )
        if task.status == TaskStatus.ACTIVE and not self.monitor.is_monitoring(task.id):
            self.monitor.start_monitoring(task.id)
        report.sync_tasks.append(task.id)

    def _validate(self, name: str) -> None:
        try:
            status = call_with_deadline(
                self._driver_pool, self.driver.status, name,
                timeout=self.driver_timeout_s, target=f"status {name}",
            )
        except ConnectivityError as e:
            self._fatal(InstallPhase.VALIDATING, name, f"status check failed: {e}")
        if not status.running or status.health == "unhealthy":
            detail = "not running" if not status.running else "unhealthy"
            self._fatal(InstallPhase.VALIDATING, name, f"{name} is {detail}")
        self._set_status(name, ServiceState.RUNNING)

    # ── Sync completion ─────────────────────────────────────────

    def _use_public_while_syncing(self, name: str) -> None:
        public = self.catalog.public_endpoints.get(name)
        found = self.catalog.find_service(name)
        if public is None or found is None or not found[1].endpoint_env:
            return
        self.store.update_configuration({found[1].endpoint_env: public})
        with self._lock:
            self._public_while_syncing.add(name)
        logger.info("Dependents of %s use %s until it is synced", name, public)

    def _on_sync_complete(self, task: Task, check: TaskCheck) -> None:
        name = task.service
        self._set_status(name, ServiceState.RUNNING)

        with self._lock:
            was_public = name in self._public_while_syncing
            self._public_while_syncing.discard(name)
            installing = self._installing

        if was_public or self._fallback_active(name):
            found = self.catalog.find_service(name)
            if found is not None and found[1].endpoint_env and found[1].local_endpoint:
                self.store.update_configuration({found[1].endpoint_env: found[1].local_endpoint})
            dependents = self.fallback.dependents_of(name)
            self.store.record_decision(
                "switched-to-local-node",
                f"{name} synced; dependents: {', '.join(dependents) or 'none'}",
            )
            logger.info("Switched dependents of %s back to the local endpoint", name)

        if not installing and not self._pending_syncs():
            self._finalize()

    def _fallback_active(self, name: str) -> bool:
        """Whether the saved configuration points dependents away from ``name``."""
        found = self.catalog.find_service(name)
        state = self.store.current()
        if found is None or state is None or not found[1].endpoint_env:
            return False
        current = state.selection.configuration.get(found[1].endpoint_env)
        return current is not None and current != found[1].local_endpoint

    def _pending_syncs(self) -> bool:
        return any(t.type == NODE_SYNC for t in self.monitor.list())

    def _syncing_services(self) -> set[str]:
        state = self.store.current()
        if state is None:
            return set()
        return {s.name for s in state.services if s.status == ServiceState.SYNCING}

    def _finalize(self) -> None:
        state = self.store.current()
        if state is None or state.phase == InstallPhase.COMPLETE:
            return
        finished: list[str] = []

        # The loop and a sync callback can both get here; the write lane
        # serializes them, so only the first one marks completion.
        def finish(s: InstallationState) -> None:
            if s.phase == InstallPhase.COMPLETE:
                return
            s.current_step = "complete"
            if "install" not in s.completed_steps:
                s.completed_steps.append("install")
            s.resume_point = "complete"
            s.mark_complete()
            finished.append(s.installation_id)

        final = self.store.mutate(finish, create=False)
        if not finished:
            return
        logger.info("Installation %s complete", final.installation_id)
        self._publish("install:complete", {"installation_id": final.installation_id})

    # ── Helpers ─────────────────────────────────────────────────

    def _enter(self, phase: InstallPhase) -> None:
        def apply(s: InstallationState) -> None:
            s.set_phase(phase)
            s.resume_point = phase.value

        self.store.mutate(apply, create=False)
        self._publish("install:phase", {"phase": phase.value})

    def _set_status(self, name: str, status: ServiceState, error: str | None = None) -> None:
        try:
            self.store.update_service_status(name, status, error)
        except InvalidTransitionError as e:
            logger.debug("Ignoring status %s for %s: %s", status.value, name, e)
            return
        self._publish("install:service", {"service": name, "status": status.value, "error": error},
                      key=name)

    def _call(self, operation: str, service: str) -> Receipt:
        """Driver call with our own deadline; no answer becomes a timeout receipt."""
        fn = getattr(self.driver, operation)
        future = self._driver_pool.submit(fn, service)
        try:
            return future.result(timeout=self.driver_timeout_s)
        except FutureTimeout:
            logger.warning("%s %s did not answer within %gs", operation, service, self.driver_timeout_s)
            return Receipt.timeout(self.driver.name, operation, service, self.driver_timeout_s)

    def _fatal(self, stage: InstallPhase, service: str, message: str) -> NoReturn:
        def apply(s: InstallationState) -> None:
            svc = s.get_service(service)
            if svc is not None and svc.status == ServiceState.RUNNING:
                # Running is terminal; a failed re-check demotes it first
                svc.status = ServiceState.PENDING
            s.set_service_status(service, ServiceState.ERROR, message)
            s.resume_point = stage.value
            s.resumable = True

        self.store.mutate(apply, create=False)
        logger.error("Installation halted at %s (%s): %s", stage.value, service, message)
        self._publish("install:error", {"stage": stage.value, "service": service, "error": message},
                      key=service)
        raise FatalOrchestrationError(message, stage=stage.value, service=service)

    def _publish(self, event_type: str, data: dict[str, Any], *, key: str = "") -> None:
        self._bus.publish(event_type, key=key, data=data)
