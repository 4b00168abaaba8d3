"""
Profile catalog models: the static registry of installable units.

Loaded once from catalog.yml. Profiles are frozen: nothing at runtime
mutates a profile, its services, or its edges. Every derived quantity
(resolved set, totals, startup plan) is recomputed from Catalog + selection.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Resources(BaseModel):
    """Hardware needs of a profile or a service."""

    model_config = ConfigDict(frozen=True)

    cpu_cores: float = 0
    ram_gb: float = 0
    disk_gb: float = 0


class ServiceRef(BaseModel):
    """A container service that belongs to a profile."""

    model_config = ConfigDict(frozen=True)

    name: str
    required: bool = True
    description: str = ""
    depends_on: tuple[str, ...] = ()     # services this one talks to
    sync: bool = False                   # catches up a chain before it is useful
    endpoint_env: str = ""               # config key dependents read our URL from
    local_endpoint: str = ""
    resources: Resources | None = None   # share of a shared service, if any


class Profile(BaseModel):
    """An installable bundle of services.

    ``dependencies`` are hard (all are pulled in automatically);
    ``prerequisites`` are alternatives (at least one must be present).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: str = "optional"
    services: tuple[ServiceRef, ...] = ()
    dependencies: tuple[str, ...] = ()
    prerequisites: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    startup_rank: int = 1
    resources: Resources = Field(default_factory=Resources)
    recommended: Resources | None = None
    ports: tuple[int, ...] = ()
    fallback_to_public: bool = False
    configuration: dict[str, Any] = Field(default_factory=dict)

    @property
    def service_names(self) -> list[str]:
        return [s.name for s in self.services]


class Template(BaseModel):
    """A named, pre-configured profile selection."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    profiles: tuple[str, ...] = ()
    category: str = "custom"
    use_case: str = "custom"
    config: dict[str, Any] = Field(default_factory=dict)
    developer_mode: bool = False
    tags: tuple[str, ...] = ()
    resources: Resources = Field(default_factory=Resources)
    recommended: Resources | None = None


class Catalog(BaseModel):
    """The whole profile registry plus shared infrastructure declarations."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    profiles: dict[str, Profile] = Field(default_factory=dict)
    templates: dict[str, Template] = Field(default_factory=dict)
    shared_services: tuple[str, ...] = ()
    public_endpoints: dict[str, str] = Field(default_factory=dict)

    def get_profile(self, profile_id: str) -> Profile | None:
        return self.profiles.get(profile_id)

    def profile_name(self, profile_id: str) -> str:
        """Human name for messages; falls back to the id."""
        profile = self.profiles.get(profile_id)
        return profile.name if profile else profile_id

    def find_service(self, name: str) -> tuple[Profile, ServiceRef] | None:
        """Locate a service and its owning profile (first declaration wins)."""
        for profile in self.profiles.values():
            for service in profile.services:
                if service.name == name:
                    return profile, service
        return None

    def is_shared(self, service_name: str) -> bool:
        return service_name in self.shared_services

    def dependents_of(self, service: str, profile_ids: list[str]) -> list[str]:
        """Services within the given profiles that declare ``depends_on: service``."""
        found: list[str] = []
        for pid in profile_ids:
            profile = self.profiles.get(pid)
            if profile is None:
                continue
            for ref in profile.services:
                if service in ref.depends_on and ref.name not in found:
                    found.append(ref.name)
        return found
