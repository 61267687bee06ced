"""Cascading release types and dependency range rewriting.

A package needs a release when its own commits say so, or when one of its
local dependencies is released and the dependant's manifest has to change to
reference the new version. This module walks the local dependency graph to
resolve that release type, rewriting dependency ranges in memory on the way,
and writes the rewritten manifests back to disk once a package is prepared.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import structlog

from .errors import ReleaseError, UnresolvedDependencyError
from .manifest import load_manifest, save_manifest
from .models import (
    DEPENDENCY_SCOPES,
    BumpStrategy,
    ManifestChanges,
    Package,
    ReleaseStrategy,
    ReleaseType,
    VersionBump,
    severity,
)
from .versions import get_next_pre_version, get_next_version, resolve_next_version

log = structlog.get_logger(__name__)

RELEASE_STRATEGIES = ("patch", "minor", "major", "inherit")


def get_prospective_version(dependency: Package) -> str | None:
    """Version a dependant should reference for ``dependency``.

    A dependency with a resolved release type references its upcoming
    version (prerelease form on a prerelease channel); otherwise its last
    released version, or None if it was never released.
    """
    if dependency.next_release:
        return dependency.next_release.version
    if dependency.next_type:
        if dependency.pre_release:
            return get_next_pre_version(dependency)
        return get_next_version(dependency)
    return dependency.last_version


def bump_dependency(
    scope: dict[str, Any],
    name: str,
    next_version: str | None,
    strategy: BumpStrategy,
) -> VersionBump | None:
    """Rewrite one dependency range in a manifest scope, in place.

    Returns:
        The change applied, or None if the scope does not declare ``name``,
        there is no version to point at, or the range is already right.
    """
    current = scope.get(name)
    if not next_version or not current:
        return None
    resolved = resolve_next_version(current, next_version, strategy)
    if resolved == current:
        return None
    scope[name] = resolved
    return VersionBump(old=current, new=resolved)


def _dependent_release_type(
    package: Package,
    packages: Mapping[str, Package],
    bump_strategy: BumpStrategy,
    release_strategy: ReleaseStrategy,
    visited: frozenset[str],
) -> ReleaseType | None:
    """Highest release type forced on ``package`` by its local dependencies.

    Dependencies are resolved first (recursively), then every scope of the
    package's manifest is rewritten to reference them. A dependency only
    counts if the rewrite changed something, or if the package itself has
    never been released.
    """
    # Siblings walked at this level are not walked again further down
    nested_visited = visited | set(package.local_deps)
    never_released = package.last_version is None
    release_type: ReleaseType | None = None

    for dep_name in package.local_deps:
        if dep_name in visited:
            continue
        dependency = packages.get(dep_name)
        if dependency is None:
            continue

        dep_type = resolve_release_type(
            dependency, packages, bump_strategy, release_strategy, nested_visited
        )
        next_version = get_prospective_version(dependency)

        require_release = never_released
        for scope_name in DEPENDENCY_SCOPES:
            scope = package.manifest.get(scope_name)
            if not isinstance(scope, dict):
                continue
            change = bump_dependency(scope, dep_name, next_version, bump_strategy)
            if change:
                require_release = True
                log.info(
                    "deps.range_bumped",
                    package=package.name,
                    dependency=dep_name,
                    scope=scope_name,
                    old=change.old,
                    new=change.new,
                )

        if require_release and severity(dep_type) > severity(release_type):
            release_type = dep_type

    return release_type


def _cascaded_type(
    dependent_type: ReleaseType | None, release_strategy: ReleaseStrategy
) -> ReleaseType | None:
    if dependent_type is None:
        return None
    if release_strategy == "inherit":
        return dependent_type
    return release_strategy


def resolve_release_type(
    package: Package,
    packages: Mapping[str, Package],
    bump_strategy: BumpStrategy = "override",
    release_strategy: ReleaseStrategy = "patch",
    visited: frozenset[str] = frozenset(),
) -> ReleaseType | None:
    """Resolve a package's release type, cascading through local deps.

    The package's own release type (from analysing its commits) always
    wins. Without one, a release is forced when any local dependency's
    release changes the package's manifest: ``release_strategy`` then
    decides the type, either a fixed ``patch``/``minor``/``major`` or
    ``inherit`` for the highest type among the triggering dependencies.

    Dependency ranges are rewritten in memory even when the package's own
    type wins, so manifests stay consistent. The result is memoised on the
    package; circular declarations stop at packages already being resolved.

    Args:
        package: The package to resolve.
        packages: Every package of the run, by name.
        bump_strategy: How dependency ranges are rewritten.
        release_strategy: Release type applied to dependency-only releases.
        visited: Packages already in progress up the call chain.

    Returns:
        The release type, or None if the package needs no release.
    """
    if release_strategy not in RELEASE_STRATEGIES:
        raise ReleaseError(f"Unknown dependency release strategy: {release_strategy!r}")

    if package.release_type_resolved:
        return package.next_type

    # Always walked: it also rewrites the package's dependency ranges
    dependent_type = _dependent_release_type(
        package, packages, bump_strategy, release_strategy, visited
    )

    direct_type = package.next_type
    resolved = direct_type or _cascaded_type(dependent_type, release_strategy)

    package.next_type = resolved
    package.release_type_resolved = True
    log.info(
        "deps.release_type",
        package=package.name,
        release_type=resolved,
        direct=direct_type,
        cascaded=dependent_type,
    )
    return resolved


def resolve_cyclic_release_types(
    names: Iterable[str],
    packages: Mapping[str, Package],
    bump_strategy: BumpStrategy = "override",
    release_strategy: ReleaseStrategy = "patch",
) -> dict[str, ReleaseType | None]:
    """Resolve a group of mutually dependent packages together.

    A recursive walk through a cycle sees each member half-resolved,
    depending on where it entered. Here every member's own release type
    must already be set; cascaded types are then raised member by member
    until a full pass changes nothing. Dependencies outside the group are
    resolved (or memoised) as usual.

    Returns:
        The release type of every member, by name.
    """
    if release_strategy not in RELEASE_STRATEGIES:
        raise ReleaseError(f"Unknown dependency release strategy: {release_strategy!r}")

    members = [packages[name] for name in names if name in packages]
    direct = {pkg.name: pkg.next_type for pkg in members}
    # Members answer each other's walks with their current type
    for pkg in members:
        pkg.release_type_resolved = True

    changed = True
    while changed:
        changed = False
        for pkg in members:
            dependent_type = _dependent_release_type(
                pkg, packages, bump_strategy, release_strategy, frozenset()
            )
            if direct[pkg.name]:
                continue
            cascaded = _cascaded_type(dependent_type, release_strategy)
            # Ranges already rewritten stop reporting a change, so never lower
            if severity(cascaded) > severity(pkg.next_type):
                pkg.next_type = cascaded
                changed = True

    for pkg in members:
        log.info(
            "deps.release_type",
            package=pkg.name,
            release_type=pkg.next_type,
            direct=direct[pkg.name],
            cycle=True,
        )
    return {pkg.name: pkg.next_type for pkg in members}


def get_manifest_difference(
    new_scope: Mapping[str, Any], old_scope: Mapping[str, Any]
) -> dict[str, VersionBump]:
    """Key-by-key differences from ``old_scope`` to ``new_scope``."""
    return {
        key: VersionBump(old=old_scope.get(key), new=str(value))
        for key, value in new_scope.items()
        if value != old_scope.get(key)
    }


def audit_manifest_changes(package: Package) -> ManifestChanges:
    """Compare the package's in-memory manifest with the file on disk."""
    old_manifest, _ = load_manifest(Path(package.path))
    changes = ManifestChanges()
    for scope in DEPENDENCY_SCOPES:
        diff = get_manifest_difference(
            package.manifest.get(scope) or {}, old_manifest.get(scope) or {}
        )
        if diff:
            changes.scopes[scope] = diff

    log.debug("deps.manifest_audit", package=package.name, path=package.path)
    return changes


def update_manifest_deps(
    package: Package, packages: Mapping[str, Package], *, write: bool = True
) -> ManifestChanges:
    """Write a package's rewritten dependency ranges back to its manifest.

    Args:
        package: The package being prepared.
        packages: Every package of the run, by name.
        write: If False, only report what would change.

    Returns:
        The changes found; ``written`` is True if the file was rewritten.

    Raises:
        UnresolvedDependencyError: If a local dependency has neither a
            pending (resolved type or computed next release) nor a previous
            release to reference.
    """
    for dep_name in package.local_deps:
        dependency = packages.get(dep_name)
        if dependency is None or not get_prospective_version(dependency):
            raise UnresolvedDependencyError(package.name, dep_name)

    changes = audit_manifest_changes(package)
    if not changes.changed:
        log.info("deps.manifest_unchanged", package=package.name)
        return changes

    log.info(
        "deps.manifest_changed",
        package=package.name,
        path=package.path,
        changes={
            scope: {name: str(bump) for name, bump in diff.items()}
            for scope, diff in changes.scopes.items()
        },
    )
    if write:
        package.contents = save_manifest(Path(package.path), package.manifest, package.contents)
        changes.written = True
    return changes
