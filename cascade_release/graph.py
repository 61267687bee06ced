"""Dependency graph utilities.

Groups packages into batches so that the dependencies of every package in a
batch sit in earlier batches. The orchestrator holds back a batch's commit
analysis until all earlier batches have analysed, which gives the release
type propagator final answers for dependencies before dependants ask.
"""

from __future__ import annotations

from collections.abc import Mapping

from .models import Package


def dependency_batches(packages: Mapping[str, Package]) -> list[list[str]]:
    """Split packages into dependency levels.

    Uses Kahn's algorithm one level at a time. Names within a batch are
    sorted alphabetically for deterministic output, and dependencies outside
    ``packages`` are ignored.

    Circular local dependencies are legal (the release type propagator stops
    at packages it is already resolving), so packages that never become free
    of unprocessed dependencies are put together in one final batch instead
    of raising.

    Example:
        If A depends on B, and B and C depend on D:
        dependency_batches({A, B, C, D}) → [[D], [B, C], [A]]
    """
    # Count unprocessed dependencies for each package
    in_degree = {name: 0 for name in packages}
    # Who depends on each package
    reverse_deps: dict[str, list[str]] = {name: [] for name in packages}

    for name, package in packages.items():
        for dep in set(package.local_deps):
            if dep in packages and dep != name:
                in_degree[name] += 1
                reverse_deps[dep].append(name)

    batches: list[list[str]] = []
    ready = sorted(name for name, degree in in_degree.items() if degree == 0)
    while ready:
        batches.append(ready)
        next_ready: list[str] = []
        for node in ready:
            for dependent in reverse_deps[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.append(dependent)
        ready = sorted(next_ready)

    processed = {name for batch in batches for name in batch}
    remaining = sorted(set(packages) - processed)
    if remaining:
        batches.append(remaining)
    return batches


def is_cyclic_batch(batch: list[str], packages: Mapping[str, Package]) -> bool:
    """True if members of ``batch`` depend on each other.

    Only the final batch of ``dependency_batches`` can be cyclic; members
    of a regular level never depend on one another.
    """
    members = set(batch)
    return any(
        dep in members and dep != name
        for name in batch
        for dep in packages[name].local_deps
    )


def flatten(batches: list[list[str]]) -> list[str]:
    """Release order implied by a list of batches."""
    return [name for batch in batches for name in batch]
