"""Tests for cascade_release.pipeline."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
from conftest import FakePlugins, make_package, write_package_json

from cascade_release.config import ReleaseConfig
from cascade_release.errors import ReleaseError
from cascade_release.gates import DependencyBatchGate, PhaseGate
from cascade_release.manifest import load_manifest
from cascade_release.models import NextRelease, Package
from cascade_release.pipeline import PackagePipeline, dependency_notes


def _on_disk(tmp_path: Path, name: str, dependencies: dict[str, str] | None = None) -> Package:
    manifest_data: dict[str, Any] = {"name": name, "version": "0.0.0-development"}
    if dependencies:
        manifest_data["dependencies"] = dependencies
    path = write_package_json(tmp_path / name, manifest_data)
    manifest, contents = load_manifest(path)
    return Package(
        name=name,
        path=str(path),
        dir=str(path.parent),
        manifest=manifest,
        contents=contents,
        local_deps=list(dependencies or {}),
    )


def _pipeline(
    package: Package,
    plugins: FakePlugins,
    packages: dict[str, Package] | None = None,
    **kwargs: Any,
) -> PackagePipeline:
    kwargs.setdefault("config", ReleaseConfig())
    kwargs.setdefault("phase_gate", PhaseGate())
    return PackagePipeline(
        package,
        packages if packages is not None else {package.name: package},
        plugins,
        **kwargs,
    )


class TestDependencyNotes:
    def test_lists_released_dependencies(self) -> None:
        packages = {
            "a": make_package("a", local_deps=["b", "c", "d"]),
            "b": make_package("b", last="1.0.0", next_type="minor"),
            "c": make_package("c", last="1.0.0"),
            "d": make_package("d", last="2.0.0", next_type="major"),
        }
        packages["d"].next_release = NextRelease(type="major", version="3.0.0", git_tag="d@3.0.0")
        assert dependency_notes(packages["a"], packages) == (
            "### Dependencies\n\n* **b:** upgraded to 1.1.0\n* **d:** upgraded to 3.0.0"
        )

    def test_nothing_released(self) -> None:
        packages = {"a": make_package("a", local_deps=["b"]), "b": make_package("b", last="1.0.0")}
        assert dependency_notes(packages["a"], packages) == ""


class TestPackagePipeline:
    @pytest.mark.asyncio
    async def test_skips_package_without_release(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins("pkg-a", last_version="1.0.0")
        pipeline = _pipeline(pkg, plugins)

        result = await pipeline.run()

        assert not result.released
        assert result.last_release is not None
        assert result.last_release.version == "1.0.0"
        assert [phase for _, phase in plugins.events] == ["verify", "history", "analyze"]
        assert not pipeline.phase_gate.locked()

    @pytest.mark.asyncio
    async def test_full_release(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins(
            "pkg-a", last_version="1.0.0", release_type="minor", notes="## 1.1.0\n\n* feat"
        )
        pipeline = _pipeline(pkg, plugins)

        result = await pipeline.run()

        assert result.released
        assert result.next_release is not None
        assert result.next_release.version == "1.1.0"
        assert result.next_release.git_tag == "pkg-a@1.1.0"
        assert result.next_release.notes == "## pkg-a 1.1.0\n\n* feat"
        assert result.publish == {"channel": "latest"}
        assert [phase for _, phase in plugins.events] == [
            "verify",
            "history",
            "analyze",
            "notes",
            "prepare",
            "publish",
        ]
        assert plugins.contexts["publish"].next_release == result.next_release
        assert pkg.analyzed and pkg.prepared and pkg.published
        assert not pipeline.phase_gate.locked()

    @pytest.mark.asyncio
    async def test_linked_heading(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins(
            "pkg-a",
            last_version="1.0.0",
            release_type="patch",
            notes="# [1.0.1](https://example.com/compare) (2026-10-18)\n\n* fix",
        )
        result = await _pipeline(pkg, plugins).run()
        assert result.next_release is not None
        assert result.next_release.notes.startswith(
            "# pkg-a [1.0.1](https://example.com/compare)"
        )

    @pytest.mark.asyncio
    async def test_custom_tag_format(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins("pkg-a", release_type="minor")
        config = ReleaseConfig(tag_format="{name}-v{version}")
        result = await _pipeline(pkg, plugins, config=config).run()
        assert result.next_release is not None
        assert result.next_release.git_tag == "pkg-a-v1.0.0"

    @pytest.mark.asyncio
    async def test_prerelease_channel(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        pkg.pre_release = "beta"
        plugins = FakePlugins("pkg-a", last_version="1.0.0", release_type="minor")
        result = await _pipeline(pkg, plugins).run()
        assert result.next_release is not None
        assert result.next_release.version == "1.1.0-beta.1"
        assert result.next_release.channel == "beta"

    @pytest.mark.asyncio
    async def test_dependency_release_cascades(self, tmp_path: Path) -> None:
        a = _on_disk(tmp_path, "a", {"b": "1.0.0"})
        packages = {"a": a, "b": make_package("b", last="1.0.0", next_type="minor")}
        plugins = FakePlugins("a", last_version="1.0.0", notes="## 1.0.1\n\n* deps")

        result = await _pipeline(a, plugins, packages).run()

        assert result.released
        assert result.next_release is not None
        assert result.next_release.type == "patch"
        assert result.next_release.version == "1.0.1"
        assert result.next_release.notes == (
            "## a 1.0.1\n\n* deps\n\n### Dependencies\n\n* **b:** upgraded to 1.1.0"
        )
        assert result.manifest_changes.written
        assert json.loads(Path(a.path).read_text())["dependencies"] == {"b": "1.1.0"}

    @pytest.mark.asyncio
    async def test_own_commits_override_provisional_resolution(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        # Resolved as "no release" by a dependant's walk before its own analysis
        pkg.release_type_resolved = True
        plugins = FakePlugins("pkg-a", last_version="1.0.0", release_type="major")
        result = await _pipeline(pkg, plugins).run()
        assert result.next_release is not None
        assert result.next_release.version == "2.0.0"

    @pytest.mark.asyncio
    async def test_dry_run(self, tmp_path: Path) -> None:
        a = _on_disk(tmp_path, "a", {"b": "1.0.0"})
        original = Path(a.path).read_text()
        packages = {"a": a, "b": make_package("b", last="1.0.0", next_type="major")}
        plugins = FakePlugins("a", last_version="1.0.0")

        result = await _pipeline(a, plugins, packages, config=ReleaseConfig(dry_run=True)).run()

        assert result.released
        assert result.manifest_changes.changed
        assert not result.manifest_changes.written
        assert result.publish == {}
        assert Path(a.path).read_text() == original
        assert [phase for _, phase in plugins.events] == ["verify", "history", "analyze", "notes"]
        assert plugins.contexts["notes"].dry_run

    @pytest.mark.asyncio
    async def test_waits_for_dependency_batch(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins("pkg-a", last_version="1.0.0")
        batch_gate = DependencyBatchGate(["dep"])

        task = asyncio.create_task(_pipeline(pkg, plugins, batch_gate=batch_gate).run())
        await asyncio.sleep(0.01)
        assert [phase for _, phase in plugins.events] == ["verify"]

        batch_gate.mark_done("dep")
        await asyncio.wait_for(task, timeout=1)
        assert pkg.analyzed

    @pytest.mark.asyncio
    async def test_holds_gate_between_prepare_and_publish(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins("pkg-a", last_version="1.0.0", release_type="patch")
        gate = PhaseGate()
        await gate.acquire("pkg-other")

        task = asyncio.create_task(_pipeline(pkg, plugins, phase_gate=gate).run())
        await asyncio.sleep(0.01)
        assert pkg.prepared
        assert not pkg.published
        assert gate.holder == "pkg-other"

        gate.release("pkg-other")
        result = await asyncio.wait_for(task, timeout=1)
        assert result.released
        assert pkg.published
        assert not gate.locked()

    @pytest.mark.asyncio
    async def test_failure_in_prepare(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins(
            "pkg-a", last_version="1.0.0", release_type="patch", fail_in="prepare"
        )
        analyzed: list[str] = []
        pipeline = _pipeline(pkg, plugins, on_analyzed=analyzed.append)

        with pytest.raises(RuntimeError, match="prepare failed"):
            await pipeline.run()

        assert pipeline.phase == "prepare"
        assert analyzed == ["pkg-a"]
        assert not pipeline.phase_gate.locked()

    @pytest.mark.asyncio
    async def test_failure_inside_gate_window_releases_gate(self, tmp_path: Path) -> None:
        class RejectedPush(PackagePipeline):
            async def publish(self) -> dict[str, Any]:
                raise RuntimeError("tag push rejected")

        pkg = _on_disk(tmp_path, "pkg-a")
        gate = PhaseGate()
        pipeline = RejectedPush(
            pkg,
            {"pkg-a": pkg},
            FakePlugins("pkg-a", last_version="1.0.0", release_type="patch"),
            ReleaseConfig(),
            gate,
        )

        with pytest.raises(RuntimeError, match="rejected"):
            await pipeline.run()
        assert not gate.locked()

    @pytest.mark.asyncio
    async def test_failed_analysis_still_reported(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        plugins = FakePlugins("pkg-a", fail_in="history")
        analyzed: list[str] = []

        with pytest.raises(RuntimeError):
            await _pipeline(pkg, plugins, on_analyzed=analyzed.append).run()

        assert analyzed == ["pkg-a"]
        assert not pkg.analyzed

    @pytest.mark.asyncio
    async def test_next_version_never_regresses(self, tmp_path: Path) -> None:
        pkg = _on_disk(tmp_path, "pkg-a")
        pkg.next_type = "minor"
        pkg.next_release = NextRelease(type="major", version="2.0.0", git_tag="pkg-a@2.0.0")
        pipeline = _pipeline(pkg, FakePlugins("pkg-a"))

        with pytest.raises(ReleaseError, match="regress"):
            await pipeline.generate_notes()
