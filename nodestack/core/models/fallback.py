"""
Fallback models: failure reports, recovery options and the applied config.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class FailureClass(StrEnum):
    CONTAINER_MISSING = "container_missing"
    CONTAINER_STOPPED = "container_stopped"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"


class FallbackStrategy(StrEnum):
    CONTINUE_PUBLIC = "continue_public"
    RETRY_LOCAL = "retry_local"
    SKIP_LOCAL = "skip_local"
    TROUBLESHOOT = "troubleshoot"


class HealthCheck(BaseModel):
    """One probe in the composite health check."""

    name: str                        # exists, running, healthy, reachable
    passed: bool
    detail: str = ""


class FailureReport(BaseModel):
    """Why a local service is considered failed."""

    service: str
    failure_class: FailureClass
    checks: list[HealthCheck] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    message: str = ""
    public_endpoint: str | None = None

    @property
    def failed_checks(self) -> list[HealthCheck]:
        return [c for c in self.checks if not c.passed]


class FallbackOption(BaseModel):
    """A recovery choice offered to the operator."""

    strategy: FallbackStrategy
    label: str
    description: str = ""
    recommended: bool = False


class FallbackConfig(BaseModel):
    """Effective configuration after applying a recovery choice."""

    strategy: FallbackStrategy
    failed_service: str
    endpoints: dict[str, str] = Field(default_factory=dict)     # dependent -> url
    overrides: dict[str, str] = Field(default_factory=dict)     # ENV -> value
    skip_local: bool = False
    recovered: bool = False
    attempts: int = 0
    troubleshooting: list[str] = Field(default_factory=list)
