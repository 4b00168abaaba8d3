"""Adapters: bindings to the container runtime and the node.

Public re-exports for convenient access.
"""

from nodestack.adapters.base import ContainerDriver, ContainerStatus, NodeRpc
from nodestack.adapters.mock import MockContainerDriver, ScriptedNodeRpc

__all__ = [
    "ContainerDriver",
    "ContainerStatus",
    "MockContainerDriver",
    "NodeRpc",
    "ScriptedNodeRpc",
]
