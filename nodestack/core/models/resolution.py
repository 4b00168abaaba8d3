"""
Resolution result models: what the dependency resolver hands back.

Issues are data, not exceptions: the UI renders them as fix-it
messages while the operator is still choosing profiles.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class IssueType(StrEnum):
    """Kinds of resolution problems."""

    UNKNOWN_PROFILE = "unknown_profile"
    MISSING_PREREQUISITE = "missing_prerequisite"
    CONFLICT = "conflict"
    PORT_CONFLICT = "port_conflict"
    CYCLE = "cycle"
    RANK_INVERSION = "rank_inversion"
    RESOURCE_EXCEEDED = "resource_exceeded"


class ResolutionIssue(BaseModel):
    """A single error or warning about a selection."""

    type: IssueType
    severity: str = "error"              # error, warning
    message: str = ""
    profiles: list[str] = Field(default_factory=list)
    alternatives: list[str] = Field(default_factory=list)
    port: int | None = None
    path: list[str] = Field(default_factory=list)
    details: dict[str, float] = Field(default_factory=dict)


class ResourceTotals(BaseModel):
    """Aggregated hardware needs of a resolved selection."""

    cpu_cores: float = 0
    ram_gb: float = 0
    disk_gb: float = 0
    shared_services: list[str] = Field(default_factory=list)


class Phase(BaseModel):
    """Services that may start concurrently once earlier phases are up."""

    rank: int
    services: list[str] = Field(default_factory=list)
    profiles: list[str] = Field(default_factory=list)


class Resolution(BaseModel):
    """Outcome of resolving a profile selection against the catalog."""

    selection: list[str] = Field(default_factory=list)
    resolved: list[str] = Field(default_factory=list)
    errors: list[ResolutionIssue] = Field(default_factory=list)
    warnings: list[ResolutionIssue] = Field(default_factory=list)
    startup_plan: list[Phase] = Field(default_factory=list)
    resources: ResourceTotals = Field(default_factory=ResourceTotals)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def services(self) -> list[str]:
        """All services in startup order."""
        return [s for phase in self.startup_plan for s in phase.services]

    def errors_of(self, issue_type: IssueType) -> list[ResolutionIssue]:
        return [e for e in self.errors if e.type == issue_type]
