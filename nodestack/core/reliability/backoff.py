"""
Backoff policy: how long to wait before the next attempt.

Pure functions: attempt number in, delay out. The side-effecting retry
loop lives with the caller, so this can be tested without a network.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


def backoff_delay(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``base * 2**(attempt-1)`` capped at ``max_delay``, plus up to
    ``jitter`` (a fraction of the delay) of random spread.
    """
    if attempt < 1:
        return 0.0
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter > 0:
        delay += (rng or random).uniform(0, delay * jitter)
    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """A capped exponential schedule."""

    base_delay: float = 2.0
    max_attempts: int = 3
    max_delay: float = 30.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter)

    def schedule(self) -> list[float]:
        """Waits between consecutive attempts (``max_attempts - 1`` of them)."""
        return [self.delay(n) for n in range(1, self.max_attempts)]

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
