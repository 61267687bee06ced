"""Multirelease: discover → batch → run every package pipeline concurrently.

This module orchestrates a cascade-release run:
1. Discover all packages of the workspace from the root package.json
2. Link each package to the local packages it depends on
3. Split packages into dependency batches
4. Run one pipeline per package, all at once, sharing a single phase gate;
   each batch's analysis waits until every earlier batch has analysed, and
   members of a dependency cycle resolve their release types together
5. Collect results once every pipeline has settled

A failing package never cuts its siblings short. Failures are gathered and
raised together at the end.
"""

from __future__ import annotations

import asyncio
import glob
from collections.abc import Callable, Mapping
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

import structlog

from .config import CONFIG_KEY, ReleaseConfig
from .errors import ManifestError, MultiReleaseError
from .gates import DependencyBatchGate, PhaseGate
from .graph import dependency_batches, flatten, is_cyclic_batch
from .manifest import get_dependency_names, load_manifest, load_workspace_manifest
from .models import Package, ReleaseResult
from .pipeline import PackagePipeline, ReleasePlugins

log = structlog.get_logger(__name__)

PluginsFactory = Callable[[Package, ReleaseConfig], ReleasePlugins]


def get_workspace_globs(root_manifest: Mapping[str, Any]) -> list[str]:
    """Extract workspace glob patterns from a root package.json.

    Accepts both ``"workspaces": [...]`` and
    ``"workspaces": {"packages": [...]}``.

    Raises:
        ManifestError: If no workspaces are declared.
    """
    workspaces = root_manifest.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if not isinstance(workspaces, list) or not workspaces:
        raise ManifestError('No "workspaces" defined in the root package.json')
    return [str(pattern) for pattern in workspaces]


def find_package_dirs(root: Path, patterns: list[str]) -> list[Path]:
    """Expand workspace globs into package directories.

    Patterns starting with ``!`` exclude directories matched by earlier
    patterns. Only directories holding a package.json are returned.
    """
    found: list[Path] = []
    for pattern in patterns:
        if pattern.startswith("!"):
            excluded = {Path(m).resolve() for m in glob.glob(str(root / pattern[1:]))}
            found = [d for d in found if d.resolve() not in excluded]
            continue
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match)
            if (p / "package.json").is_file() and p not in found:
                found.append(p)
    return found


def discover_packages(root: Path, config: ReleaseConfig) -> dict[str, Package]:
    """Scan the workspace and discover all packages.

    Reads ``workspaces`` from the root package.json to find package
    directories, then loads each package's manifest.

    Args:
        root: Workspace root.
        config: Run configuration (ignored packages, default channel).

    Returns:
        Map of package name to Package, local dependencies linked.
    """
    root_manifest = load_workspace_manifest(root / "package.json")
    package_dirs = find_package_dirs(root, get_workspace_globs(root_manifest))
    if not package_dirs:
        raise ManifestError("No packages found matching workspaces")

    # First pass: load every manifest
    packages: dict[str, Package] = {}
    for d in package_dirs:
        manifest, contents = load_manifest(d / "package.json")
        name = manifest["name"]
        if any(fnmatch(name, pattern) for pattern in config.ignore_packages):
            log.info("discover.ignored", package=name)
            continue
        if name in packages:
            raise ManifestError(f"Duplicate package name {name!r} in {d} and {packages[name].dir}")

        own_settings = manifest.get(CONFIG_KEY)
        channel = config.prerelease
        if isinstance(own_settings, dict) and "prerelease" in own_settings:
            channel = own_settings["prerelease"] or None

        packages[name] = Package(
            name=name,
            path=str(d / "package.json"),
            dir=str(d),
            manifest=manifest,
            contents=contents,
            deps=get_dependency_names(manifest),
            pre_release=channel,
        )

    # Second pass: keep only deps released from this workspace
    names = set(packages)
    for package in packages.values():
        package.local_deps = [d for d in package.deps if d in names and d != package.name]
        log.debug(
            "discover.package",
            package=package.name,
            dir=package.dir,
            local_deps=package.local_deps,
            channel=package.pre_release,
        )

    return packages


async def multi_release(
    packages: dict[str, Package],
    plugins_factory: PluginsFactory,
    config: ReleaseConfig,
) -> list[ReleaseResult]:
    """Release every package, respecting dependency order where it matters.

    Args:
        packages: Every package of the run, by name.
        plugins_factory: Builds the release plugins for one package.
        config: Run configuration.

    Returns:
        One result per package, dependencies first.

    Raises:
        MultiReleaseError: If any pipeline failed; carries the results of
            the others.
    """
    batches = dependency_batches(packages)
    phase_gate = PhaseGate()

    # Batch N waits for every package of batches 0..N-1
    batch_gates: list[DependencyBatchGate] = []
    gate_for: dict[str, DependencyBatchGate | None] = {}
    cycle_gate_for: dict[str, DependencyBatchGate | None] = {}
    earlier: list[str] = []
    for batch in batches:
        gate = DependencyBatchGate(earlier) if earlier else None
        if gate is not None:
            batch_gates.append(gate)
        cycle_gate = DependencyBatchGate(batch) if is_cyclic_batch(batch, packages) else None
        for name in batch:
            gate_for[name] = gate
            cycle_gate_for[name] = cycle_gate
        earlier = earlier + batch

    def on_analyzed(name: str) -> None:
        for gate in batch_gates:
            gate.mark_done(name)

    order = flatten(batches)
    log.info("multirelease.start", packages=order, batches=len(batches))
    pipelines = {
        name: PackagePipeline(
            packages[name],
            packages,
            plugins_factory(packages[name], config),
            config,
            phase_gate,
            batch_gate=gate_for[name],
            on_analyzed=on_analyzed,
            cycle_gate=cycle_gate_for[name],
        )
        for name in order
    }

    outcomes: list[ReleaseResult | BaseException]
    if config.concurrent:
        outcomes = list(
            await asyncio.gather(*(p.run() for p in pipelines.values()), return_exceptions=True)
        )
    else:
        outcomes = []
        for batch in batches:
            if cycle_gate_for[batch[0]] is not None:
                # Cycle members wait for each other's analysis
                outcomes.extend(
                    await asyncio.gather(
                        *(pipelines[name].run() for name in batch), return_exceptions=True
                    )
                )
                continue
            for name in batch:
                try:
                    outcomes.append(await pipelines[name].run())
                except Exception as exc:
                    outcomes.append(exc)

    results: list[ReleaseResult] = []
    failures: dict[str, BaseException] = {}
    for name, outcome in zip(order, outcomes):
        if isinstance(outcome, BaseException):
            failures[name] = outcome
            log.error("multirelease.package_failed", package=name, error=str(outcome))
        else:
            results.append(outcome)

    log.info(
        "multirelease.done",
        released=[r.name for r in results if r.released],
        skipped=[r.name for r in results if not r.released],
        failed=sorted(failures),
    )
    if failures:
        raise MultiReleaseError(failures, results)
    return results
