"""
Fallback controller: reacts to a failed local dependency.

Flow:
    detect_failure(service)   composite health check → FailureReport | None
    dialog(report)            options for the operator (never auto-chosen)
    apply(service, strategy)  FallbackConfig for the dependents, recorded
                              as a user decision

``apply`` is idempotent for the same strategy and dependents: it derives
everything from the catalog and the current health, never from what a
previous apply did.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from pydantic import BaseModel, Field

from nodestack.adapters.base import ContainerDriver, ContainerStatus
from nodestack.core.errors import ConnectivityError, ValidationError
from nodestack.core.fallback.policy import options_for, suggestions_for
from nodestack.core.models.fallback import (
    FailureClass,
    FailureReport,
    FallbackConfig,
    FallbackOption,
    FallbackStrategy,
    HealthCheck,
)
from nodestack.core.models.profile import Catalog
from nodestack.core.persistence.state_store import InstallationStateStore
from nodestack.core.reliability.backoff import BackoffPolicy
from nodestack.core.reliability.deadline import call_with_deadline
from nodestack.core.resolver.dependency_resolver import resolve

logger = logging.getLogger(__name__)

Probe = Callable[[], Any]


class TroubleshootingInfo(BaseModel):
    service: str
    failure_class: FailureClass | None = None
    message: str = ""
    suggestions: list[str] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)


class FallbackController:
    """Detect failed local services and substitute public endpoints.

    Args:
        catalog: Profile catalog (service endpoints, public substitutes).
        driver: Container driver used for existence/running/health checks.
        store: Where decisions and configuration overrides are recorded.
        probes: Optional protocol-level reachability checks per service;
            each raises ConnectivityError when the service doesn't answer.
        retry: Backoff used by ``retry_local``.
        sleep: Injectable for tests.
        driver_timeout_s: Deadline for each driver call; a status check
            that overruns is reported as a timeout. None waits.
    """

    def __init__(
        self,
        catalog: Catalog,
        driver: ContainerDriver,
        store: InstallationStateStore | None = None,
        *,
        probes: dict[str, Probe] | None = None,
        retry: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        log_lines: int = 50,
        driver_timeout_s: float | None = None,
    ) -> None:
        self.catalog = catalog
        self.driver = driver
        self.store = store
        self.probes = dict(probes or {})
        self.retry = retry or BackoffPolicy()
        self._sleep = sleep
        self.log_lines = log_lines
        self.driver_timeout_s = driver_timeout_s
        self._driver_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="nodestack-fallback")

    def shutdown(self) -> None:
        self._driver_pool.shutdown(wait=False, cancel_futures=True)

    def _driver_call(self, operation: str, service: str, *args: Any) -> Any:
        fn = getattr(self.driver, operation)
        if self.driver_timeout_s is None:
            return fn(service, *args)
        return call_with_deadline(
            self._driver_pool, fn, service, *args,
            timeout=self.driver_timeout_s, target=f"{operation} {service}",
        )

    # ── Detection ───────────────────────────────────────────────

    def detect_failure(self, service: str, dependents: list[str] | None = None) -> FailureReport | None:
        """Run every health check; a report only if at least one fails."""
        checks: list[HealthCheck] = []
        failure: FailureClass | None = None

        try:
            status: ContainerStatus | None = self._driver_call("status", service)
        except ConnectivityError as e:
            checks.append(HealthCheck(name="runtime", passed=False, detail=str(e)))
            failure = FailureClass.TIMEOUT if e.timed_out else FailureClass.UNREACHABLE
            status = None

        if status is not None:
            checks.append(HealthCheck(name="exists", passed=status.exists,
                                      detail="" if status.exists else "container not found"))
            if not status.exists:
                failure = FailureClass.CONTAINER_MISSING
            else:
                checks.append(HealthCheck(name="running", passed=status.running,
                                          detail=status.state or ""))
                if not status.running:
                    failure = FailureClass.CONTAINER_STOPPED
                else:
                    ok = status.health != "unhealthy"
                    checks.append(HealthCheck(name="healthy", passed=ok, detail=status.health))
                    if not ok:
                        failure = FailureClass.UNHEALTHY

        probe = self.probes.get(service)
        if failure is None and probe is not None:
            try:
                probe()
                checks.append(HealthCheck(name="reachable", passed=True))
            except ConnectivityError as e:
                checks.append(HealthCheck(name="reachable", passed=False, detail=str(e)))
                failure = FailureClass.TIMEOUT if e.timed_out else FailureClass.UNREACHABLE

        if failure is None:
            return None

        failed = [c for c in checks if not c.passed]
        report = FailureReport(
            service=service,
            failure_class=failure,
            checks=checks,
            dependents=sorted(dependents if dependents is not None else self.dependents_of(service)),
            message="; ".join(f"{c.name}: {c.detail or 'failed'}" for c in failed),
            public_endpoint=self.catalog.public_endpoints.get(service),
        )
        logger.info("Service %s failed health checks (%s)", service, failure.value)
        return report

    def dependents_of(self, service: str, profiles: list[str] | None = None) -> list[str]:
        """Services that consume ``service``, within the selection if there is one."""
        if profiles is None:
            state = self.store.current() if self.store else None
            if state and state.selection.profiles:
                # The saved selection holds only what was asked for
                profiles = resolve(self.catalog, state.selection.profiles).resolved
        if profiles is None:
            profiles = list(self.catalog.profiles)
        return self.catalog.dependents_of(service, profiles)

    def dialog(self, report: FailureReport) -> list[FallbackOption]:
        return options_for(report.failure_class, report.public_endpoint is not None)

    # ── Application ─────────────────────────────────────────────

    def apply(
        self,
        service: str,
        strategy: FallbackStrategy | str,
        dependents: list[str] | None = None,
    ) -> FallbackConfig:
        """Execute the operator's chosen option.

        Raises:
            ValidationError: Unknown strategy, or a public option for a
                service that has no public substitute.
        """
        try:
            strategy = FallbackStrategy(strategy)
        except ValueError as e:
            raise ValidationError(f"Unknown fallback strategy: {strategy}") from e

        deps = sorted(dependents if dependents is not None else self.dependents_of(service))

        if strategy in (FallbackStrategy.CONTINUE_PUBLIC, FallbackStrategy.SKIP_LOCAL):
            config = self._use_public(service, strategy, deps)
        elif strategy == FallbackStrategy.RETRY_LOCAL:
            config = self._retry_local(service, deps)
        else:
            info = self.troubleshoot(service)
            config = FallbackConfig(
                strategy=strategy,
                failed_service=service,
                troubleshooting=info.suggestions,
            )

        self._record(config)
        return config

    def troubleshoot(self, service: str, report: FailureReport | None = None) -> TroubleshootingInfo:
        """Recent logs plus suggestions for the failure class."""
        report = report or self.detect_failure(service)
        logs = self._driver_call("logs", service, self.log_lines)
        if report is None:
            return TroubleshootingInfo(service=service, message="All health checks pass", logs=logs)
        return TroubleshootingInfo(
            service=service,
            failure_class=report.failure_class,
            message=report.message,
            suggestions=suggestions_for(report.failure_class),
            logs=logs,
        )

    # ── Internal ────────────────────────────────────────────────

    def _use_public(self, service: str, strategy: FallbackStrategy, deps: list[str]) -> FallbackConfig:
        public = self.catalog.public_endpoints.get(service)
        if public is None:
            raise ValidationError(f"No public endpoint is available for {service}")
        return FallbackConfig(
            strategy=strategy,
            failed_service=service,
            endpoints={dep: public for dep in deps},
            overrides=self._endpoint_override(service, public),
            skip_local=strategy == FallbackStrategy.SKIP_LOCAL,
        )

    def _retry_local(self, service: str, deps: list[str]) -> FallbackConfig:
        report: FailureReport | None = None
        attempts = 0
        for attempt in range(1, self.retry.max_attempts + 1):
            if attempt > 1:
                delay = self.retry.delay(attempt - 1)
                logger.debug("Retrying %s in %.1fs (attempt %d/%d)", service, delay, attempt,
                             self.retry.max_attempts)
                self._sleep(delay)
            attempts = attempt
            report = self.detect_failure(service, deps)
            if report is None:
                break

        if report is None:
            logger.info("%s recovered after %d attempt(s)", service, attempts)
            local = self._local_endpoint(service)
            return FallbackConfig(
                strategy=FallbackStrategy.RETRY_LOCAL,
                failed_service=service,
                endpoints={dep: local for dep in deps} if local else {},
                overrides=self._endpoint_override(service, local) if local else {},
                recovered=True,
                attempts=attempts,
            )

        logger.warning("%s still failing after %d attempt(s): %s", service, attempts, report.message)
        return FallbackConfig(
            strategy=FallbackStrategy.RETRY_LOCAL,
            failed_service=service,
            recovered=False,
            attempts=attempts,
            troubleshooting=[report.message, *suggestions_for(report.failure_class)],
        )

    def _local_endpoint(self, service: str) -> str:
        found = self.catalog.find_service(service)
        return found[1].local_endpoint if found else ""

    def _endpoint_override(self, service: str, url: str) -> dict[str, str]:
        found = self.catalog.find_service(service)
        if found is None or not found[1].endpoint_env:
            return {}
        return {found[1].endpoint_env: url}

    def _record(self, config: FallbackConfig) -> None:
        if self.store is None:
            return
        if config.overrides:
            self.store.update_configuration(config.overrides)
        outcome = ""
        if config.strategy == FallbackStrategy.RETRY_LOCAL:
            outcome = " (recovered)" if config.recovered else f" (still failing after {config.attempts})"
        self.store.record_decision(
            f"fallback:{config.strategy.value}",
            f"{config.failed_service}{outcome}; dependents: {', '.join(config.endpoints) or 'none'}",
        )
