"""
Error taxonomy for the installation core.

Four families, each handled at a different distance from its source:

    ValidationError          selection problems; returned as data by the
                             resolver, raised only when an invalid selection
                             is pushed into the engine.
    ConnectivityError        driver / node RPC unreachable or timed out;
                             retried with backoff or reported as "still trying".
    StateCorruptionError     unreadable state file; treated as "no state".
    FatalOrchestrationError  the install cannot proceed (permission denied,
                             disk full, a container refusing to start).
"""

from __future__ import annotations

from typing import Any


class NodestackError(Exception):
    """Base class for all installer errors."""


class ValidationError(NodestackError):
    """The requested profile selection cannot be installed as-is."""

    def __init__(self, message: str, issues: list[Any] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class ConnectivityError(NodestackError):
    """An external collaborator did not answer, or answered garbage."""

    def __init__(self, message: str, *, target: str = "", timed_out: bool = False):
        super().__init__(message)
        self.target = target
        self.timed_out = timed_out


class StateCorruptionError(NodestackError):
    """The persisted installation state exists but cannot be parsed."""


class NoStateError(NodestackError, LookupError):
    """An operation needs an installation in progress and there is none."""


class TaskNotFoundError(NodestackError, KeyError):
    """No background task with the given id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "task not found"


class FatalOrchestrationError(NodestackError):
    """The installation halted; state was persisted before raising."""

    def __init__(self, message: str, *, stage: str, service: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.service = service


class InvalidTransitionError(NodestackError, ValueError):
    """A service status or phase move that would go backwards."""
