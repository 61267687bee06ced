"""Run configuration.

Settings come from the optional ``cascadeRelease`` object of the workspace
root ``package.json``, with command line options applied on top:

    {
      "workspaces": ["packages/*"],
      "cascadeRelease": {
        "bump": "inherit",
        "release": "inherit",
        "prerelease": "beta",
        "ignorePackages": ["@acme/sandbox-*"]
      }
    }

The resulting ``ReleaseConfig`` is frozen and passed explicitly to every
call that needs it.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigError
from .manifest import load_workspace_manifest
from .models import BumpStrategy, ReleaseStrategy

CONFIG_KEY = "cascadeRelease"
DEFAULT_TAG_FORMAT = "{name}@{version}"


class ReleaseConfig(BaseModel):
    """Settings for one multirelease.

    Attributes:
        bump: How dependants' ranges are rewritten (override|satisfy|inherit).
        release: Release type for dependency-only releases
            (patch|minor|major|inherit).
        prerelease: Default prerelease channel, or None for full releases.
        ignore_packages: Package name globs left out of the run.
        concurrent: Run package pipelines concurrently.
        dry_run: Resolve everything but write and publish nothing.
        debug: Verbose logging.
        tag_format: Git tag template with ``{name}`` and ``{version}``.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    bump: BumpStrategy = "override"
    release: ReleaseStrategy = "patch"
    prerelease: str | None = None
    ignore_packages: list[str] = Field(default_factory=list)
    concurrent: bool = True
    dry_run: bool = False
    debug: bool = False
    tag_format: str = DEFAULT_TAG_FORMAT

    @field_validator("tag_format")
    @classmethod
    def _tag_format_has_version(cls, value: str) -> str:
        if "{version}" not in value:
            raise ValueError("tag format must contain {version}")
        return value

    def format_tag(self, name: str, version: str) -> str:
        return self.tag_format.format(name=name, version=version)


def load_config(root: Path, overrides: Mapping[str, Any] | None = None) -> ReleaseConfig:
    """Build the run configuration for a workspace.

    Args:
        root: Workspace root holding the root package.json.
        overrides: Settings that win over the file (None values are
            ignored, so unset CLI options fall through).

    Raises:
        ConfigError: If the settings are invalid.
    """
    settings: dict[str, Any] = {}
    root_manifest = root / "package.json"
    if root_manifest.exists():
        manifest = load_workspace_manifest(root_manifest)
        file_settings = manifest.get(CONFIG_KEY, {})
        if not isinstance(file_settings, dict):
            raise ConfigError(f'"{CONFIG_KEY}" in {root_manifest} must be an object')
        settings.update(file_settings)

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        # Overrides use field names; drop any file alias for the same field
        settings.pop(to_camel(key), None)
        settings[key] = value

    try:
        return ReleaseConfig.model_validate(settings)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
