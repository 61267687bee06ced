"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog

from cascade_release.models import (
    LastRelease,
    Package,
    ReleaseContext,
    ReleaseHistory,
    ReleaseType,
)


def write_package_json(directory: Path, manifest: dict[str, Any], indent: int | str = 2) -> Path:
    """Write a package.json with the given indentation and a trailing newline."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "package.json"
    path.write_text(json.dumps(manifest, indent=indent) + "\n")
    return path


def make_package(
    name: str,
    *,
    last: str | None = None,
    next_type: ReleaseType | None = None,
    local_deps: list[str] | None = None,
    manifest: dict[str, Any] | None = None,
    pre_release: str | None = None,
    tags: list[str] | None = None,
) -> Package:
    """Build an in-memory package, no file behind it."""
    manifest = manifest if manifest is not None else {"name": name}
    return Package(
        name=name,
        manifest=manifest,
        local_deps=list(local_deps or []),
        last_release=LastRelease(version=last) if last else None,
        next_type=next_type,
        pre_release=pre_release,
        published_tags=list(tags or []),
    )


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo the logging setup installed by configure_logging."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def tmp_workspace(tmp_path: Path) -> Callable[..., Path]:
    """Build a workspace of packages under ``tmp_path/packages``.

    Call with a map of package name → manifest (``name`` is filled in).
    """

    def _build(
        packages: dict[str, dict[str, Any]],
        root_extra: dict[str, Any] | None = None,
    ) -> Path:
        root_manifest: dict[str, Any] = {"private": True, "workspaces": ["packages/*"]}
        root_manifest.update(root_extra or {})
        write_package_json(tmp_path, root_manifest)
        for name, manifest in packages.items():
            write_package_json(tmp_path / "packages" / name, {"name": name, **manifest})
        return tmp_path

    return _build


class FakePlugins:
    """In-memory release plugins recording every call.

    Args:
        name: Package the plugins belong to.
        events: Shared list receiving ``(name, phase)`` tuples.
        last_version: Last released version reported by the history.
        release_type: Release type the commit analysis returns.
        notes: Notes generated for the release.
        tags: Published tags reported by the history.
        fail_in: Phase that raises RuntimeError.
        delay: Seconds to sleep inside ``load_history``.
    """

    def __init__(
        self,
        name: str,
        events: list[tuple[str, str]] | None = None,
        *,
        last_version: str | None = None,
        release_type: ReleaseType | None = None,
        notes: str | None = "## 1.0.0\n\n* fix things",
        tags: list[str] | None = None,
        fail_in: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.events = events if events is not None else []
        self.last_version = last_version
        self.release_type = release_type
        self.notes = notes
        self.tags = tags or []
        self.fail_in = fail_in
        self.delay = delay
        self.contexts: dict[str, ReleaseContext] = {}

    async def _record(self, phase: str, context: ReleaseContext) -> None:
        self.contexts[phase] = context
        self.events.append((self.name, phase))
        await asyncio.sleep(0)
        if self.fail_in == phase:
            raise RuntimeError(f"{phase} failed for {self.name}")

    async def verify_conditions(self, context: ReleaseContext) -> None:
        await self._record("verify", context)

    async def load_history(self, context: ReleaseContext) -> ReleaseHistory:
        if self.delay:
            await asyncio.sleep(self.delay)
        await self._record("history", context)
        last = LastRelease(version=self.last_version) if self.last_version else None
        return ReleaseHistory(last_release=last, tags=self.tags)

    async def analyze_commits(self, context: ReleaseContext) -> ReleaseType | None:
        await self._record("analyze", context)
        return self.release_type

    async def generate_notes(self, context: ReleaseContext) -> str | None:
        await self._record("notes", context)
        return self.notes

    async def prepare(self, context: ReleaseContext) -> None:
        await self._record("prepare", context)

    async def publish(self, context: ReleaseContext) -> dict[str, Any]:
        await self._record("publish", context)
        return {"channel": "latest"}
