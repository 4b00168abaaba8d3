"""
Receipt model: the container driver's result contract.

The engine asks the driver to do something to a service; the driver
answers with a Receipt. Operation failures never surface as exceptions,
and a timeout is recorded separately from an explicit error reply.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Receipt(BaseModel):
    """Result of a driver operation against one service."""

    driver: str
    operation: str                  # start, stop, prepare, ...
    service: str
    status: Literal["ok", "skipped", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the operation succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def timed_out(self) -> bool:
        """No answer by the deadline, as opposed to an error answer."""
        return bool(self.metadata.get("timed_out"))

    @classmethod
    def success(cls, driver: str, operation: str, service: str, output: str = "", **kwargs: Any) -> Receipt:
        return cls(driver=driver, operation=operation, service=service, status="ok", output=output, **kwargs)

    @classmethod
    def failure(cls, driver: str, operation: str, service: str, error: str, **kwargs: Any) -> Receipt:
        return cls(driver=driver, operation=operation, service=service, status="failed", error=error, **kwargs)

    @classmethod
    def skip(cls, driver: str, operation: str, service: str, reason: str = "", **kwargs: Any) -> Receipt:
        return cls(driver=driver, operation=operation, service=service, status="skipped", output=reason, **kwargs)

    @classmethod
    def timeout(cls, driver: str, operation: str, service: str, seconds: float) -> Receipt:
        """Failure receipt for an operation that never answered."""
        return cls.failure(
            driver, operation, service,
            error=f"{operation} {service} timed out after {seconds:g}s",
            metadata={"timed_out": True, "timeout_s": seconds},
        )
