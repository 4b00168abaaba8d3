"""
Dependency resolver: turns a profile selection into an installable plan.

Pure function over Catalog + selection: no I/O, no mutation of the
catalog, deterministic output. Called on every keystroke of the wizard,
so problems are returned as ResolutionIssue data rather than raised.

Pipeline:
    1. Drop unknown ids (unknown_profile)
    2. Expand hard dependencies transitively
    3. Check any-of prerequisites (missing_prerequisite)
    4. Check declared conflicts and shared ports
    5. Detect prerequisite cycles over the resolved set
    6. Assert prerequisites start in an earlier phase (rank_inversion)
    7. Aggregate resources, deduplicating shared services
    8. Group services into startup phases by rank
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from nodestack.core.config.loader import ResourceLimits
from nodestack.core.models.profile import Catalog, Profile
from nodestack.core.models.resolution import (
    IssueType,
    Phase,
    Resolution,
    ResolutionIssue,
    ResourceTotals,
)

logger = logging.getLogger(__name__)

_DIMENSIONS = ("cpu_cores", "ram_gb", "disk_gb")
_UNITS = {"cpu_cores": "CPU cores", "ram_gb": "GB RAM", "disk_gb": "GB disk"}


def resolve(
    catalog: Catalog,
    selection: Iterable[str],
    limits: ResourceLimits | None = None,
) -> Resolution:
    """Resolve a profile selection against the catalog.

    Args:
        catalog: The immutable profile registry.
        selection: Requested profile ids (order and duplicates are ignored).
        limits: Optional thresholds for resource_exceeded warnings.

    Returns:
        Resolution with resolved ids, errors, warnings, startup plan and
        resource totals. ``startup_plan`` is empty when the graph has a
        cycle or a rank inversion.
    """
    requested = sorted(set(selection))
    errors: list[ResolutionIssue] = []
    warnings: list[ResolutionIssue] = []

    known = [pid for pid in requested if pid in catalog.profiles]
    for pid in requested:
        if pid not in catalog.profiles:
            errors.append(ResolutionIssue(
                type=IssueType.UNKNOWN_PROFILE,
                message=f"Unknown profile '{pid}'",
                profiles=[pid],
            ))

    resolved_ids = _expand(catalog, known, errors)
    profiles = [catalog.profiles[pid] for pid in resolved_ids]

    errors.extend(_check_prerequisites(catalog, profiles, resolved_ids))
    errors.extend(_check_conflicts(catalog, profiles))
    errors.extend(_check_ports(catalog, profiles))

    cycles = find_cycles(catalog, resolved_ids)
    for path in cycles:
        names = " → ".join(path)
        errors.append(ResolutionIssue(
            type=IssueType.CYCLE,
            message=f"Circular prerequisite chain: {names}",
            profiles=sorted(set(path)),
            path=path,
        ))

    inversions = _check_ranks(catalog, profiles, resolved_ids)
    errors.extend(inversions)

    totals = aggregate_resources(catalog, resolved_ids)
    if limits is not None:
        warnings.extend(_check_limits(totals, limits))

    plan = [] if (cycles or inversions) else startup_plan(catalog, resolved_ids)

    ordered = sorted(resolved_ids, key=lambda pid: (catalog.profiles[pid].startup_rank, pid))
    result = Resolution(
        selection=requested,
        resolved=ordered,
        errors=errors,
        warnings=warnings,
        startup_plan=plan,
        resources=totals,
    )
    logger.debug(
        "Resolved %s -> %s (%d errors, %d warnings, %d phases)",
        requested, ordered, len(errors), len(warnings), len(plan),
    )
    return result


# ── Expansion ───────────────────────────────────────────────────────


def _expand(catalog: Catalog, roots: list[str], errors: list[ResolutionIssue]) -> set[str]:
    """Follow hard dependencies transitively."""
    resolved = set(roots)
    queue = list(roots)
    while queue:
        pid = queue.pop(0)
        for dep in catalog.profiles[pid].dependencies:
            if dep in resolved:
                continue
            if dep not in catalog.profiles:
                errors.append(ResolutionIssue(
                    type=IssueType.UNKNOWN_PROFILE,
                    message=f"{catalog.profile_name(pid)} depends on unknown profile '{dep}'",
                    profiles=[pid, dep],
                ))
                continue
            resolved.add(dep)
            queue.append(dep)
    return resolved


def _edges(profile: Profile, resolved: set[str]) -> list[str]:
    """Profiles this one must start after, restricted to the resolved set."""
    out = [p for p in profile.prerequisites if p in resolved]
    out += [d for d in profile.dependencies if d in resolved and d not in out]
    return sorted(out)


# ── Checks ──────────────────────────────────────────────────────────


def _check_prerequisites(
    catalog: Catalog,
    profiles: list[Profile],
    resolved: set[str],
) -> list[ResolutionIssue]:
    issues = []
    for profile in sorted(profiles, key=lambda p: p.id):
        if not profile.prerequisites:
            continue
        if any(p in resolved for p in profile.prerequisites):
            continue
        options = list(profile.prerequisites)
        names = " or ".join(catalog.profile_name(p) for p in options)
        issues.append(ResolutionIssue(
            type=IssueType.MISSING_PREREQUISITE,
            message=f"{profile.name} requires {names}",
            profiles=[profile.id],
            alternatives=options,
        ))
    return issues


def _check_conflicts(catalog: Catalog, profiles: list[Profile]) -> list[ResolutionIssue]:
    issues = []
    ordered = sorted(profiles, key=lambda p: p.id)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            if b.id in a.conflicts or a.id in b.conflicts:
                issues.append(ResolutionIssue(
                    type=IssueType.CONFLICT,
                    message=f"{a.name} conflicts with {b.name}",
                    profiles=[a.id, b.id],
                ))
    return issues


def _check_ports(catalog: Catalog, profiles: list[Profile]) -> list[ResolutionIssue]:
    issues = []
    ordered = sorted(profiles, key=lambda p: p.id)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            for port in sorted(set(a.ports) & set(b.ports)):
                issues.append(ResolutionIssue(
                    type=IssueType.PORT_CONFLICT,
                    message=f"Port {port} is used by both {a.name} and {b.name}",
                    profiles=[a.id, b.id],
                    port=port,
                ))
    return issues


def _check_ranks(
    catalog: Catalog,
    profiles: list[Profile],
    resolved: set[str],
) -> list[ResolutionIssue]:
    issues = []
    for profile in sorted(profiles, key=lambda p: p.id):
        for before in _edges(profile, resolved):
            other = catalog.profiles[before]
            if other.startup_rank < profile.startup_rank:
                continue
            issues.append(ResolutionIssue(
                type=IssueType.RANK_INVERSION,
                message=(
                    f"{profile.name} (rank {profile.startup_rank}) must start after "
                    f"{other.name} (rank {other.startup_rank})"
                ),
                profiles=[profile.id, other.id],
            ))
    return issues


def _check_limits(totals: ResourceTotals, limits: ResourceLimits) -> list[ResolutionIssue]:
    issues = []
    for dim in _DIMENSIONS:
        limit = getattr(limits, dim)
        required = getattr(totals, dim)
        if limit is None or required <= limit:
            continue
        issues.append(ResolutionIssue(
            type=IssueType.RESOURCE_EXCEEDED,
            severity="warning",
            message=(
                f"Selected profiles require {required:g} {_UNITS[dim]} "
                f"(threshold {limit:g}) - ensure your system has sufficient resources"
            ),
            details={"required": required, "limit": limit},
        ))
    return issues


# ── Cycles ──────────────────────────────────────────────────────────


def find_cycles(catalog: Catalog, resolved: Iterable[str]) -> list[list[str]]:
    """Report every distinct cycle in the prerequisite graph.

    Each returned path lists profile ids where every element is a
    prerequisite of the next, closing back to the first element.
    Rotations of the same cycle are reported once.
    """
    nodes = set(resolved)
    graph = {pid: _edges(catalog.profiles[pid], nodes) for pid in sorted(nodes)}
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    for root in graph:
        # Explicit stack of (node, next-edge index); ``path`` mirrors it.
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        on_path = {root}
        while stack:
            node, idx = stack[-1]
            edges = graph[node]
            if idx >= len(edges):
                stack.pop()
                path.pop()
                on_path.discard(node)
                continue
            stack[-1] = (node, idx + 1)
            nxt = edges[idx]
            if nxt in on_path:
                loop = path[path.index(nxt):]
                key = _canonical(loop)
                if key not in seen:
                    seen.add(key)
                    chain = list(reversed(loop))
                    cycles.append(chain + [chain[0]])
                continue
            # Only walk forward from the root's smallest node to bound work.
            if nxt < root:
                continue
            stack.append((nxt, 0))
            path.append(nxt)
            on_path.add(nxt)
    return cycles


def _canonical(loop: list[str]) -> tuple[str, ...]:
    i = loop.index(min(loop))
    return tuple(loop[i:] + loop[:i])


# ── Aggregation & plan ──────────────────────────────────────────────


def aggregate_resources(catalog: Catalog, resolved: Iterable[str]) -> ResourceTotals:
    """Sum profile resources; count each shared service once, at its maximum."""
    totals = {dim: 0.0 for dim in _DIMENSIONS}
    shared: dict[str, dict[str, float]] = {}

    for pid in sorted(set(resolved)):
        profile = catalog.profiles[pid]
        for dim in _DIMENSIONS:
            totals[dim] += getattr(profile.resources, dim)
        for svc in profile.services:
            if svc.resources is None:
                continue
            if catalog.is_shared(svc.name):
                peak = shared.setdefault(svc.name, {dim: 0.0 for dim in _DIMENSIONS})
                for dim in _DIMENSIONS:
                    peak[dim] = max(peak[dim], getattr(svc.resources, dim))
            else:
                for dim in _DIMENSIONS:
                    totals[dim] += getattr(svc.resources, dim)

    for peak in shared.values():
        for dim in _DIMENSIONS:
            totals[dim] += peak[dim]

    return ResourceTotals(**totals, shared_services=sorted(shared))


def startup_plan(catalog: Catalog, resolved: Iterable[str]) -> list[Phase]:
    """Group services into phases by profile rank, ascending.

    A service shared between profiles starts with the earliest of them.
    """
    by_rank: dict[int, Phase] = {}
    placed: set[str] = set()
    ordered = sorted(set(resolved), key=lambda pid: (catalog.profiles[pid].startup_rank, pid))
    for pid in ordered:
        profile = catalog.profiles[pid]
        phase = by_rank.setdefault(profile.startup_rank, Phase(rank=profile.startup_rank))
        phase.profiles.append(pid)
        for svc in profile.services:
            if svc.name in placed:
                continue
            placed.add(svc.name)
            phase.services.append(svc.name)
    return [by_rank[rank] for rank in sorted(by_rank)]
