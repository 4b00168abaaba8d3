"""
Deadlines for collaborator calls that may never return.

The call runs on a worker pool and the caller waits at most ``timeout``
seconds. A call that overruns keeps its worker until it returns on its
own; the caller has already moved on with a ConnectivityError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, TypeVar

from nodestack.core.errors import ConnectivityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_deadline(
    pool: Executor,
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    target: str = "",
) -> T:
    """Return ``fn(*args)``, or raise ConnectivityError(timed_out=True).

    Exceptions raised by ``fn`` itself propagate unchanged.
    """
    future = pool.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning("%s did not answer within %gs", target or getattr(fn, "__name__", "call"), timeout)
        raise ConnectivityError(
            f"no answer within {timeout:g}s", target=target, timed_out=True,
        ) from None
