"""
Sync models: what a node reports and what the tracker derives from it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SyncSample(BaseModel):
    """One reading of a node's chain position."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current_height: int = Field(ge=0)
    target_height: int = Field(ge=0)
    is_synced: bool = False


class SyncProgress(BaseModel):
    """Normalized progress for a tracked node.

    ``rate_blocks_per_sec`` and ``eta_seconds`` are None while the
    window holds fewer than two samples (unknown, not zero).
    """

    node_key: str
    connected: Literal[True] = True
    current_height: int = 0
    target_height: int = 0
    is_synced: bool = False
    percentage: float = 0.0
    blocks_remaining: int = 0
    rate_blocks_per_sec: float | None = None
    eta_seconds: float | None = None
    samples: int = 0


class Disconnected(BaseModel):
    """The node could not be sampled. Distinct from 0% progress."""

    node_key: str
    connected: Literal[False] = False
    error: str = ""
    timed_out: bool = False
