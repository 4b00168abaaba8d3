"""
Task models: units of work owned by the background task monitor.

The monitor keeps tasks in a dict keyed by id; the installation state
only ever holds their ids (``backgroundTasks``).
"""

from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(StrEnum):
    """Lifecycle of a monitored task."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETE, TaskStatus.ERROR, TaskStatus.CANCELLED)


class TaskCheck(BaseModel):
    """Result of one status-function call.

    ``connected`` is False when the data source could not be reached;
    ``percentage`` is then the last known value, not zero.

    An ``error`` alone is one failed attempt and polling goes on.
    ``fatal`` ends the task with status error.
    """

    completed: bool = False
    fatal: bool = False
    percentage: float | None = None
    connected: bool = True
    still_trying: bool = False
    error: str | None = None
    eta_seconds: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """A long-running operation the monitor polls on its own interval."""

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    type: str = "node-sync"
    service: str
    config: dict[str, Any] = Field(default_factory=dict)
    check_interval_ms: int = 10_000
    status: TaskStatus = TaskStatus.ACTIVE
    last_progress: TaskCheck | None = None
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    checks: int = 0
    errors: int = 0
    generation: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return self.type, self.service

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"generation"})
