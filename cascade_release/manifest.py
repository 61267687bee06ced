"""package.json reading and writing utilities.

Manifests are rewritten in place, so writes reproduce the indentation and
trailing whitespace of the original file to keep diffs minimal.
"""

from __future__ import annotations

import json
import re
from collections import Counter
from pathlib import Path
from typing import Any

from .errors import ManifestError
from .models import DEPENDENCY_SCOPES

_TRAILING_WHITESPACE = re.compile(r"\s*$")
_LEADING_WHITESPACE = re.compile(r"^([ \t]*)\S")

DEFAULT_INDENT = "  "


def read_manifest(path: Path) -> str:
    """Read the raw text of a package.json file.

    Raises:
        ManifestError: If the file is missing, not a regular file or
            unreadable.
    """
    if not path.exists():
        raise ManifestError(f'package.json file not found: "{path}"')
    if not path.is_file():
        raise ManifestError(f'package.json is not a file: "{path}"')
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f'package.json cannot be read: "{path}"') from exc


def load_workspace_manifest(path: Path) -> dict[str, Any]:
    """Load the workspace root package.json, which need not have a name.

    Raises:
        ManifestError: If the file cannot be read, parsed, or is not an
            object.
    """
    try:
        manifest = json.loads(read_manifest(path))
    except json.JSONDecodeError as exc:
        raise ManifestError(f'package.json could not be parsed: "{path}"') from exc
    if not isinstance(manifest, dict):
        raise ManifestError(f'package.json was not an object: "{path}"')
    return manifest


def load_manifest(path: Path) -> tuple[dict[str, Any], str]:
    """Load and validate a package.json file.

    Returns:
        Tuple of (parsed manifest, raw file contents).

    Raises:
        ManifestError: If the file cannot be read or parsed, is not an
            object, has no name, or declares a dependency scope that is not
            an object.
    """
    contents = read_manifest(path)
    try:
        manifest = json.loads(contents)
    except json.JSONDecodeError as exc:
        raise ManifestError(f'package.json could not be parsed: "{path}"') from exc

    if not isinstance(manifest, dict):
        raise ManifestError(f'package.json was not an object: "{path}"')

    name = manifest.get("name")
    if not isinstance(name, str) or not name:
        raise ManifestError(f'Package name must be non-empty string: "{path}"')

    for scope in DEPENDENCY_SCOPES:
        if scope in manifest and not isinstance(manifest[scope], dict):
            raise ManifestError(f'Package {scope} must be object: "{path}"')

    return manifest, contents


def recognize_format(contents: str) -> tuple[str, str]:
    """Detect the indentation and trailing whitespace of a JSON document.

    The indent is the most common step between the leading whitespace of
    consecutive non-blank lines, so one oddly indented line does not decide
    it. Ties go to the step seen first.

    Returns:
        Tuple of (indent string, trailing whitespace). Indent falls back to
        two spaces for single-line documents.
    """
    trailing = _TRAILING_WHITESPACE.search(contents)
    trailing_whitespace = trailing.group(0) if trailing else ""

    steps: Counter[str] = Counter()
    previous = ""
    for line in contents.splitlines():
        match = _LEADING_WHITESPACE.match(line)
        if not match:
            continue
        current = match.group(1)
        if len(current) > len(previous) and current.startswith(previous):
            steps[current[len(previous) :]] += 1
        previous = current

    indent = steps.most_common(1)[0][0] if steps else DEFAULT_INDENT
    return indent, trailing_whitespace


def dump_manifest(manifest: dict[str, Any], contents: str) -> str:
    """Serialize a manifest using the formatting of its original contents."""
    indent, trailing_whitespace = recognize_format(contents)
    return json.dumps(manifest, indent=indent, ensure_ascii=False) + trailing_whitespace


def save_manifest(path: Path, manifest: dict[str, Any], contents: str) -> str:
    """Write a manifest back to disk, preserving the original formatting.

    Returns:
        The text written, so callers can refresh their raw copy.
    """
    text = dump_manifest(manifest, contents)
    path.write_text(text, encoding="utf-8")
    return text


def get_dependency_names(manifest: dict[str, Any]) -> list[str]:
    """Collect dependency names across all four scopes, first seen first."""
    names: list[str] = []
    for scope in DEPENDENCY_SCOPES:
        for name in manifest.get(scope, {}):
            if name not in names:
                names.append(name)
    return names
