"""Data models for cascade-release.

These Pydantic models represent the core data structures shared by the
propagator, the manifest updater and the per-package pipelines.

Packages live in an arena (``dict[str, Package]`` keyed by package name) and
reference their local dependencies by name, so diamond and circular
dependency declarations never turn into object reference cycles.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ReleaseType = Literal["patch", "minor", "major"]
BumpStrategy = Literal["override", "satisfy", "inherit"]
ReleaseStrategy = Literal["patch", "minor", "major", "inherit"]

# Lowest to highest. "No release" (None) sorts below all of them.
SEVERITY_ORDER: tuple[ReleaseType, ...] = ("patch", "minor", "major")

# Manifest keys holding dependency declarations (runtime, dev, peer, optional).
DEPENDENCY_SCOPES: tuple[str, ...] = (
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
)


def severity(release_type: ReleaseType | None) -> int:
    """Rank a release type; ``None`` ranks below ``patch``."""
    if release_type is None:
        return -1
    return SEVERITY_ORDER.index(release_type)


class Commit(BaseModel):
    """A commit already filtered to a package's subtree and ref range."""

    hash: str
    subject: str
    body: str = ""


class LastRelease(BaseModel):
    """The most recent published release of a package.

    Attributes:
        version: Released version string.
        git_tag: Tag the release was published under, if known.
        git_head: Commit the tag points at, if known.
    """

    version: str
    git_tag: str | None = None
    git_head: str | None = None


class NextRelease(BaseModel):
    """The release a package's pipeline is about to publish."""

    type: ReleaseType
    version: str
    git_tag: str
    channel: str | None = None
    notes: str = ""


class VersionBump(BaseModel):
    """Records a version change.

    Used for dependency ranges rewritten in a manifest, where ``old`` is
    ``None`` if the key was newly introduced.

    Attributes:
        old: The value before the change.
        new: The value after the change.
    """

    old: str | None
    new: str

    def __str__(self) -> str:
        return f"{self.old} → {self.new}"


class ManifestChanges(BaseModel):
    """Key-by-key differences between the on-disk and in-memory manifest.

    Attributes:
        scopes: Map of dependency scope → dependency name → change.
        written: True if the manifest file was rewritten.
    """

    scopes: dict[str, dict[str, VersionBump]] = Field(default_factory=dict)
    written: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.scopes)


class ReleaseHistory(BaseModel):
    """What the environment knows about a package's past.

    Supplied by the release plugins at the start of analysis.

    Attributes:
        last_release: Last published release, or None if never released.
        commits: Commits since the last release touching the package.
        tags: Previously published tag names (for prerelease resolution).
    """

    last_release: LastRelease | None = None
    commits: list[Commit] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class Package(BaseModel):
    """A single package of the workspace and its release state for one run.

    Attributes:
        name: Unique package name from the manifest.
        path: Path to the package's ``package.json``.
        dir: The package's directory.
        manifest: Parsed manifest, rewritten in memory by the propagator.
        contents: Raw manifest text as read, used for format-preserving writes.
        deps: Names of every dependency across all scopes.
        local_deps: Names of dependencies released from this repository.
        pre_release: Prerelease channel (e.g. ``"beta"``), or None.
        last_release: Last published release, set during analysis.
        next_type: Resolved release type, None meaning "no release".
        release_type_resolved: True once ``next_type`` has been resolved.
        next_release: Release being published this run.
        published_tags: Previously published tags, set during analysis.
        commits: Commits analysed for this package.
    """

    name: str
    path: str = ""
    dir: str = ""
    manifest: dict[str, Any] = Field(default_factory=dict)
    contents: str = ""
    deps: list[str] = Field(default_factory=list)
    local_deps: list[str] = Field(default_factory=list)
    pre_release: str | None = None

    last_release: LastRelease | None = None
    next_type: ReleaseType | None = None
    release_type_resolved: bool = False
    next_release: NextRelease | None = None
    published_tags: list[str] = Field(default_factory=list)
    commits: list[Commit] = Field(default_factory=list)

    analyzed: bool = False
    prepared: bool = False
    published: bool = False

    @property
    def last_version(self) -> str | None:
        return self.last_release.version if self.last_release else None


class ReleaseContext(BaseModel):
    """The view of a package handed to its release plugins at each phase."""

    name: str
    dir: str
    dry_run: bool = False
    last_release: LastRelease | None = None
    next_release: NextRelease | None = None
    commits: list[Commit] = Field(default_factory=list)
    notes: str = ""


class ReleaseResult(BaseModel):
    """Outcome of one package's pipeline.

    Attributes:
        name: Package name.
        released: False if the package needed no release.
        last_release: Release found before this run.
        next_release: Release published by this run.
        manifest_changes: Dependency ranges rewritten in the manifest.
        publish: Whatever the publish plugin reported.
    """

    name: str
    released: bool
    last_release: LastRelease | None = None
    next_release: NextRelease | None = None
    manifest_changes: ManifestChanges = Field(default_factory=ManifestChanges)
    publish: dict[str, Any] = Field(default_factory=dict)
