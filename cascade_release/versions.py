"""Version parsing, bumping and range resolution.

Versions are handled with ``semver``; npm-style ranges (``^1.0.0``, ``~1.2``,
``1.x``, ``*``, hyphen ranges, ``||`` sets) are checked with
``semantic_version.NpmSpec``. Everything in this module is a pure function
of its arguments (packages are only read, never written).
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

import semantic_version
import semver

from .errors import ReleaseError, UnresolvableVersionError
from .models import BumpStrategy, ReleaseType

if TYPE_CHECKING:
    from .models import Package

DEFAULT_FIRST_VERSION = "1.0.0"

_DIGITS = re.compile(r"\d+")
# Version at the end of a tag, e.g. "pkg-a@1.2.0-beta.3" or "v2.0.0".
_TAG_VERSION = re.compile(r"(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]*)?)$")
# Rest of a tag after the package name: "@1.2.0", "-v1.2.0", "/1.2.0"
_NAMED_TAG_VERSION = re.compile(r"[^0-9A-Za-z]*v?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]*)?)")
_NAME_CHAR = re.compile(r"[0-9A-Za-z._~-]")


def parse_version(version_str: str | None) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Raises:
        UnresolvableVersionError: If the string is not a full semantic
            version (``1.2.3``, ``1.2.3-beta.1``, ``1.2.3+build``).
    """
    if not isinstance(version_str, str):
        raise UnresolvableVersionError(version_str)
    try:
        return semver.Version.parse(version_str.strip())
    except ValueError as exc:
        raise UnresolvableVersionError(version_str) from exc


def satisfies(version: str, range_str: str) -> bool:
    """Check whether ``version`` satisfies the npm range ``range_str``.

    An empty range means "any version", like ``*``.
    """
    spec_str = range_str.strip() or "*"
    try:
        spec = semantic_version.NpmSpec(spec_str)
    except ValueError as exc:
        raise UnresolvableVersionError(range_str, "not a valid version range") from exc
    try:
        parsed = semantic_version.Version(version.strip())
    except ValueError as exc:
        raise UnresolvableVersionError(version) from exc
    return spec.match(parsed)


def increment(version_str: str, release_type: ReleaseType) -> str:
    """Bump a version by a release type.

    Lower components reset to zero and prerelease identifiers are dropped.
    A prerelease of the target version is finalised instead of bumped
    again, the way npm does it:

        "1.2.3" + minor → "1.3.0"
        "1.0.0-beta.2" + patch → "1.0.0"
        "1.1.0-beta.2" + minor → "1.1.0"
        "1.1.0-beta.2" + major → "2.0.0"
    """
    v = parse_version(version_str)
    if v.prerelease:
        finalise = (
            release_type == "patch"
            or (release_type == "minor" and v.patch == 0)
            or (release_type == "major" and v.minor == 0 and v.patch == 0)
        )
        if finalise:
            return str(v.finalize_version())

    if release_type == "major":
        return str(v.bump_major())
    if release_type == "minor":
        return str(v.bump_minor())
    if release_type == "patch":
        return str(v.bump_patch())
    raise UnresolvableVersionError(version_str, f"unknown release type {release_type!r}")


def increment_prerelease(version_str: str, channel: str) -> str:
    """Bump a version as a prerelease on ``channel``.

    Examples:
        "1.0.0-beta.1" on beta → "1.0.0-beta.2"
        "1.0.0-alpha.3" on beta → "1.0.0-beta.0"
        "1.0.0" on beta → "1.0.1-beta.0"
    """
    v = parse_version(version_str)
    if not v.prerelease:
        return str(v.bump_patch().replace(prerelease=f"{channel}.0"))

    parts = v.prerelease.split(".")
    if parts[0] != channel:
        return str(v.replace(prerelease=f"{channel}.0", build=None))

    numeric = [i for i, part in enumerate(parts) if part.isdigit()]
    if numeric:
        last = numeric[-1]
        parts[last] = str(int(parts[last]) + 1)
    else:
        parts.append("0")
    if len(parts) < 2 or not parts[1].isdigit():
        parts = [channel, "0"]
    return str(v.replace(prerelease=".".join(parts), build=None))


def resolve_next_version(
    current_range: str,
    next_version: str,
    strategy: BumpStrategy = "override",
) -> str:
    """Resolve how a dependency's next version is written into a dependant.

    Args:
        current_range: The range the dependant currently declares.
        next_version: The dependency's upcoming version.
        strategy: ``override`` replaces the range outright; ``satisfy``
            keeps a range the new version already satisfies; ``inherit``
            keeps a satisfied range and otherwise rewrites the range's
            numbers in place, keeping its operators and wildcards.

    Examples:
        ("^1.0.0", "1.0.1", "satisfy") → "^1.0.0"
        ("~1.0.0", "1.1.0", "inherit") → "~1.1.0"
        ("1.2.x", "1.3.0", "inherit") → "1.3.x"
        ("~1.0", "2.0.0", "inherit") → "~2.0"
    """
    if strategy not in ("override", "satisfy", "inherit"):
        raise ReleaseError(f"Unknown dependency bump strategy: {strategy!r}")

    if strategy in ("satisfy", "inherit") and satisfies(next_version, current_range):
        return current_range

    if strategy == "inherit":
        next_chunks = next_version.split(".")
        resolved: list[str] = []
        for i, chunk in enumerate(current_range.split(".")):
            if i < len(next_chunks) and next_chunks[i]:
                # Only the first digit run; "x", "*" and operators survive
                replacement = next_chunks[i]
                chunk = _DIGITS.sub(lambda _m: replacement, chunk, count=1)
            resolved.append(chunk)
        return ".".join(resolved)

    return next_version


def get_next_version(package: Package) -> str:
    """Resolve the full (non-prerelease) version a package releases next.

    A package without a last release or without a resolved release type
    keeps its last version, or starts at 1.0.0.
    """
    last_version = package.last_version
    if not last_version or not package.next_type:
        return last_version or DEFAULT_FIRST_VERSION
    return increment(last_version, package.next_type)


def get_pre_release_tag(version: str | None) -> str | None:
    """Return the first prerelease identifier of a version (``beta`` for
    ``1.0.0-beta.2``), or None for full releases."""
    if not version:
        return None
    prerelease = parse_version(version).prerelease
    if not prerelease:
        return None
    return prerelease.split(".")[0]


def get_version_from_tag(package_name: str, tag: str | None) -> str | None:
    """Extract a valid version from a release tag.

    When the tag carries the package name, the version must follow it
    directly, so tags of packages whose names extend this one are skipped.
    Tags without the name (``v2.0.0``) are read as-is.

    Examples:
        ("pkg-a", "pkg-a@1.2.0-beta.3") → "1.2.0-beta.3"
        ("pkg-a", "pkg-a@latest") → None
        ("pkg-a", "pkg-ab@1.0.0") → None
    """
    if not tag:
        return None
    if package_name not in tag:
        match = _TAG_VERSION.search(tag)
    else:
        match = None
        start = tag.find(package_name)
        while start != -1 and match is None:
            if start == 0 or not _NAME_CHAR.match(tag[start - 1]):
                match = _NAMED_TAG_VERSION.fullmatch(tag, start + len(package_name))
            start = tag.find(package_name, start + 1)
    if not match or not semver.Version.is_valid(match.group(1)):
        return None
    return match.group(1)


def get_latest_version(
    versions: Iterable[str | None], with_prerelease: bool = False
) -> str | None:
    """Return the highest valid version, ignoring anything unparseable.

    Prereleases are skipped unless ``with_prerelease`` is set.
    """
    parsed: list[semver.Version] = []
    for version in versions:
        if not version or not semver.Version.is_valid(version):
            continue
        v = semver.Version.parse(version)
        if v.prerelease and not with_prerelease:
            continue
        parsed.append(v)
    return str(max(parsed)) if parsed else None


def get_next_pre_version(package: Package, tags: list[str] | None = None) -> str:
    """Resolve the next prerelease version of a package on its channel.

    Rules, in order:

    1. Never released, or last released on another channel →
       ``1.0.0-<channel>.1``.
    2. Last release was a full release → its version bumped by the resolved
       release type (``patch`` if none), suffixed ``-<channel>.1``.
    3. Otherwise the higher of the latest matching published tag bumped on
       the channel and the last version bumped on the channel.

    Args:
        package: Package on a prerelease channel.
        tags: Published tags to consider instead of
            ``package.published_tags``.
    """
    channel = package.pre_release
    if not channel:
        raise ReleaseError(f"{package.name} is not releasing on a prerelease channel")

    last_version = package.last_version
    last_channel = get_pre_release_tag(last_version)
    if not last_version or (last_channel and last_channel != channel):
        return f"{DEFAULT_FIRST_VERSION}-{channel}.1"

    if last_channel is None:
        v = parse_version(last_version)
        base = f"{v.major}.{v.minor}.{v.patch}"
        return f"{increment(base, package.next_type or 'patch')}-{channel}.1"

    candidates = tags if tags else package.published_tags
    tag_versions = [
        get_version_from_tag(package.name, tag)
        for tag in candidates
        if package.name in tag and channel in tag
    ]
    latest_tag = get_latest_version(tag_versions, with_prerelease=True)

    bump_from_last = increment_prerelease(last_version, channel)
    if latest_tag is None:
        return bump_from_last
    bump_from_tags = increment_prerelease(latest_tag, channel)
    # Equal candidates are interchangeable
    return max(bump_from_tags, bump_from_last, key=semver.Version.parse)
