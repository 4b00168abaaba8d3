"""
Adapter base: the contracts between the installer core and the outside.

Two external collaborators:

    ContainerDriver   start/stop/prepare a service, report its status, tail logs
    NodeRpc           report the node's chain position

The core only talks to these through the interfaces below. Container
operations return Receipts and never raise for operation failures;
reachability problems (daemon gone, RPC down) raise ConnectivityError
so callers can branch on connectivity separately.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from nodestack.core.models.receipt import Receipt
from nodestack.core.models.sync import SyncSample


class ContainerStatus(BaseModel):
    """What the driver knows about one service's container."""

    service: str
    exists: bool = False
    running: bool = False
    health: str = "none"             # healthy, unhealthy, starting, none
    state: str = ""                  # raw runtime state, e.g. "exited"

    @property
    def healthy(self) -> bool:
        """Running, and not failing a declared healthcheck."""
        return self.running and self.health in ("healthy", "none")


class ContainerDriver(ABC):
    """Abstract base class for container runtimes.

    To add a runtime:
        1. Subclass ContainerDriver
        2. Implement name, is_available and the service operations
        3. Hand an instance to OrchestrationEngine / FallbackController
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The driver identifier (e.g., 'docker', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the runtime's tooling is present. Fast, never raises."""

    @abstractmethod
    def prepare(self, service: str) -> Receipt:
        """Make the service startable (pull or build its image)."""

    @abstractmethod
    def start(self, service: str) -> Receipt:
        """Start the service. MUST NOT raise for operation failures."""

    @abstractmethod
    def stop(self, service: str) -> Receipt:
        """Stop the service. MUST NOT raise for operation failures."""

    @abstractmethod
    def status(self, service: str) -> ContainerStatus:
        """Report the service's container state.

        Raises:
            ConnectivityError: The runtime itself could not be queried.
        """

    @abstractmethod
    def logs(self, service: str, tail: int = 50) -> list[str]:
        """Last ``tail`` log lines. Empty list when unavailable."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class NodeRpc(ABC):
    """A node that can report how far it has synced."""

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Where the node is reached, for messages and events."""

    @abstractmethod
    def get_sync_status(self) -> SyncSample:
        """Current chain position.

        Raises:
            ConnectivityError: Unreachable, timed out, or malformed reply.
        """
