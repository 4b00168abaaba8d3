"""
Fallback policy: which recovery options fit which failure.

No side effects here: failure class in, option list out. The controller
does the probing and the rewriting.
"""

from __future__ import annotations

from nodestack.core.models.fallback import FailureClass, FallbackOption, FallbackStrategy

_LABELS = {
    FallbackStrategy.CONTINUE_PUBLIC: (
        "Continue with public network",
        "Point dependent services at a public endpoint and keep installing.",
    ),
    FallbackStrategy.RETRY_LOCAL: (
        "Retry local service",
        "Check the local service again a few times with increasing delays.",
    ),
    FallbackStrategy.SKIP_LOCAL: (
        "Skip local service",
        "Leave the local service out entirely and stay on the public endpoint.",
    ),
    FallbackStrategy.TROUBLESHOOT: (
        "Troubleshoot",
        "Show recent logs and suggestions before deciding.",
    ),
}

# Failures a plain retry has a realistic chance of fixing
_TRANSIENT = frozenset({FailureClass.UNHEALTHY, FailureClass.TIMEOUT, FailureClass.UNREACHABLE})

SUGGESTIONS: dict[FailureClass, list[str]] = {
    FailureClass.CONTAINER_MISSING: [
        "The container was never created; re-run the install step for this service",
        "Check that the service is defined in the compose file",
    ],
    FailureClass.CONTAINER_STOPPED: [
        "Inspect the last log lines for the exit reason",
        "Check free disk space and memory on the host",
        "Start the service again once the cause is fixed",
    ],
    FailureClass.UNHEALTHY: [
        "The service is running but failing its health check",
        "Give it a few minutes after startup, then retry",
        "Check the health check command and the service logs",
    ],
    FailureClass.UNREACHABLE: [
        "The service is running but does not answer on its port",
        "Check port mappings and that nothing else holds the port",
        "Check firewall rules between the containers",
    ],
    FailureClass.TIMEOUT: [
        "The service did not answer in time; it may still be starting",
        "Retry after a short wait",
        "Check host load (CPU, disk I/O)",
    ],
}


def options_for(failure: FailureClass, has_public_endpoint: bool) -> list[FallbackOption]:
    """Recovery options for a failure, recommended one flagged.

    Without a public substitute only local recovery is on offer.
    """
    strategies: list[FallbackStrategy] = []
    if has_public_endpoint:
        strategies.append(FallbackStrategy.CONTINUE_PUBLIC)
    strategies.append(FallbackStrategy.RETRY_LOCAL)
    if has_public_endpoint:
        strategies.append(FallbackStrategy.SKIP_LOCAL)
    strategies.append(FallbackStrategy.TROUBLESHOOT)

    if failure in _TRANSIENT:
        recommended = FallbackStrategy.RETRY_LOCAL
    elif has_public_endpoint:
        recommended = FallbackStrategy.CONTINUE_PUBLIC
    else:
        recommended = FallbackStrategy.TROUBLESHOOT

    options = []
    for strategy in strategies:
        label, description = _LABELS[strategy]
        options.append(FallbackOption(
            strategy=strategy,
            label=label,
            description=description,
            recommended=strategy == recommended,
        ))
    return options


def suggestions_for(failure: FailureClass) -> list[str]:
    return list(SUGGESTIONS.get(failure, []))
