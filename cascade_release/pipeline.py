"""Per-package release pipeline: verify → analyze → notes → prepare → publish.

Every package of a multirelease runs one ``PackagePipeline`` as its own
asyncio task. The pipeline owns the cross-package parts of a release:

1. Wait for the package's dependency cohort before analysing commits
2. Cascade release types and dependency ranges through the local graph
3. Compute the next (pre)release version and tag
4. Add a "Dependencies" section to the release notes
5. Write rewritten dependency ranges back to package.json
6. Hold the phase gate from the end of prepare to the start of publish

Everything package-specific (verifying credentials, reading git history,
turning commits into a release type, writing changelogs, creating tags,
publishing to a registry) is delegated to the package's ``ReleasePlugins``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import semver
import structlog

from .config import ReleaseConfig
from .deps import (
    get_prospective_version,
    resolve_cyclic_release_types,
    resolve_release_type,
    update_manifest_deps,
)
from .errors import ReleaseError
from .gates import DependencyBatchGate, PhaseGate
from .models import (
    ManifestChanges,
    NextRelease,
    Package,
    ReleaseContext,
    ReleaseHistory,
    ReleaseResult,
    ReleaseType,
)
from .versions import get_next_pre_version, get_next_version

log = structlog.get_logger(__name__)

# "# 1.0.0" or "## [1.0.1]" at the very start of generated notes
_NOTES_HEADING = re.compile(r"^(#+) (\[?\d+\.\d+\.\d+\]?)")


class ReleasePlugins(Protocol):
    """The single-package release machinery a pipeline delegates to."""

    async def verify_conditions(self, context: ReleaseContext) -> None: ...

    async def load_history(self, context: ReleaseContext) -> ReleaseHistory: ...

    async def analyze_commits(self, context: ReleaseContext) -> ReleaseType | None: ...

    async def generate_notes(self, context: ReleaseContext) -> str | None: ...

    async def prepare(self, context: ReleaseContext) -> None: ...

    async def publish(self, context: ReleaseContext) -> Mapping[str, Any] | None: ...


def dependency_notes(package: Package, packages: Mapping[str, Package]) -> str:
    """Release-note section listing local dependencies released this run."""
    upgrades = [
        packages[name]
        for name in package.local_deps
        if name in packages
        and (packages[name].next_release is not None or packages[name].next_type is not None)
    ]
    if not upgrades:
        return ""
    bullets = "\n".join(
        f"* **{dep.name}:** upgraded to {get_prospective_version(dep)}" for dep in upgrades
    )
    return f"### Dependencies\n\n{bullets}"


class PackagePipeline:
    """Release pipeline for one package of a multirelease.

    Args:
        package: The package to release.
        packages: Every package of the run, by name.
        plugins: Single-package release machinery.
        config: Run configuration.
        phase_gate: Gate shared by all pipelines of the run.
        batch_gate: Gate to wait on before analysing, if any.
        on_analyzed: Called with the package name once analysis is over,
            successful or not.
        cycle_gate: Gate shared with the other members of a dependency
            cycle. Release types are only cascaded once every member has
            analysed its own commits.
    """

    def __init__(
        self,
        package: Package,
        packages: Mapping[str, Package],
        plugins: ReleasePlugins,
        config: ReleaseConfig,
        phase_gate: PhaseGate,
        batch_gate: DependencyBatchGate | None = None,
        on_analyzed: Callable[[str], None] | None = None,
        cycle_gate: DependencyBatchGate | None = None,
    ) -> None:
        self.package = package
        self.packages = packages
        self.plugins = plugins
        self.config = config
        self.phase_gate = phase_gate
        self.batch_gate = batch_gate
        self.on_analyzed = on_analyzed
        self.cycle_gate = cycle_gate
        self.phase: str | None = None
        self.manifest_changes = ManifestChanges()
        self._analysis_reported = False
        self.log = log.bind(package=package.name)

    def context(self) -> ReleaseContext:
        """Snapshot of the package's state for the plugins."""
        pkg = self.package
        return ReleaseContext(
            name=pkg.name,
            dir=pkg.dir,
            dry_run=self.config.dry_run,
            last_release=pkg.last_release,
            next_release=pkg.next_release,
            commits=pkg.commits,
            notes=pkg.next_release.notes if pkg.next_release else "",
        )

    def _report_analysis(self) -> None:
        if self._analysis_reported:
            return
        self._analysis_reported = True
        if self.cycle_gate is not None:
            self.cycle_gate.mark_done(self.package.name)
        if self.on_analyzed is not None:
            self.on_analyzed(self.package.name)

    async def verify_conditions(self) -> None:
        self.phase = "verify"
        await self.plugins.verify_conditions(self.context())
        self.log.debug("pipeline.verified")

    async def analyze_commits(self) -> ReleaseType | None:
        """Resolve the package's release type.

        The plugins analyse the package's own commits; local dependencies
        released this run can then raise (never lower) the result.
        """
        self.phase = "analyze"
        if self.batch_gate is not None:
            await self.batch_gate.wait()

        pkg = self.package
        history = await self.plugins.load_history(self.context())
        pkg.last_release = history.last_release
        pkg.commits = history.commits
        pkg.published_tags = history.tags

        direct_type = await self.plugins.analyze_commits(self.context())
        if direct_type:
            # Own commits win over anything a dependant's walk resolved earlier
            pkg.next_type = direct_type

        if self.cycle_gate is not None:
            self.cycle_gate.mark_done(pkg.name)
            await self.cycle_gate.wait()
            # The first member past the gate resolves the whole cycle
            if not pkg.release_type_resolved:
                resolve_cyclic_release_types(
                    self.cycle_gate.cohort, self.packages, self.config.bump, self.config.release
                )

        release_type = resolve_release_type(
            pkg, self.packages, self.config.bump, self.config.release
        )
        pkg.analyzed = True
        self.log.info(
            "pipeline.analyzed",
            commits=len(pkg.commits),
            last_version=pkg.last_version,
            release_type=release_type,
        )
        self._report_analysis()
        return release_type

    def _set_next_release(self, release: NextRelease) -> None:
        current = self.package.next_release
        if current is not None and semver.Version.parse(release.version) < semver.Version.parse(
            current.version
        ):
            raise ReleaseError(
                f"{self.package.name}: next version {release.version} "
                f"would regress from {current.version}"
            )
        self.package.next_release = release

    async def generate_notes(self) -> str:
        """Compute the next release and its notes.

        The package name is injected into the first version heading of the
        plugins' notes, and a "Dependencies" section is appended.
        """
        self.phase = "generate-notes"
        pkg = self.package
        if pkg.next_type is None:
            raise ReleaseError(f"{pkg.name} has no release type to generate notes for")

        version = get_next_pre_version(pkg) if pkg.pre_release else get_next_version(pkg)
        self._set_next_release(
            NextRelease(
                type=pkg.next_type,
                version=version,
                git_tag=self.config.format_tag(pkg.name, version),
                channel=pkg.pre_release,
            )
        )

        notes: list[str] = []
        generated = await self.plugins.generate_notes(self.context())
        if generated:
            notes.append(
                _NOTES_HEADING.sub(
                    lambda m: f"{m.group(1)} {pkg.name} {m.group(2)}", generated, count=1
                )
            )
        upgrades = dependency_notes(pkg, self.packages)
        if upgrades:
            notes.append(upgrades)

        text = "\n\n".join(notes)
        pkg.next_release.notes = text  # type: ignore[union-attr]
        self.log.debug("pipeline.notes_generated", version=version)
        return text

    async def prepare(self) -> ManifestChanges:
        """Write dependency ranges, run the plugins, then take the phase gate.

        The gate is taken after the prepare work and kept until publish
        starts: tags are created and pushed in between.
        """
        self.phase = "prepare"
        dry_run = self.config.dry_run
        self.manifest_changes = update_manifest_deps(
            self.package, self.packages, write=not dry_run
        )
        if not dry_run:
            await self.plugins.prepare(self.context())
        self.package.prepared = True
        self.log.debug("pipeline.prepared", manifest_changed=self.manifest_changes.changed)

        await self.phase_gate.acquire(self.package.name)
        return self.manifest_changes

    async def publish(self) -> dict[str, Any]:
        """Give the phase gate back, then publish."""
        self.phase = "publish"
        self.phase_gate.release(self.package.name)

        result: Mapping[str, Any] | None = None
        if not self.config.dry_run:
            result = await self.plugins.publish(self.context())
        self.package.published = True
        self.log.info(
            "pipeline.published",
            version=self.package.next_release.version if self.package.next_release else None,
            dry_run=self.config.dry_run,
        )
        return dict(result or {})

    async def run(self) -> ReleaseResult:
        """Run every phase of the package's release.

        Raises:
            Whatever a phase raised. The phase gate is released and analysis
            reported as over before the error leaves the pipeline.
        """
        pkg = self.package
        try:
            await self.verify_conditions()
            release_type = await self.analyze_commits()
            if release_type is None:
                self.log.info("pipeline.skipped", reason="no release needed")
                return ReleaseResult(name=pkg.name, released=False, last_release=pkg.last_release)

            await self.generate_notes()
            await self.prepare()
            published = await self.publish()
        except Exception as exc:
            self.log.error("pipeline.failed", phase=self.phase, error=str(exc))
            raise
        finally:
            self.phase_gate.abandon(pkg.name)
            self._report_analysis()

        return ReleaseResult(
            name=pkg.name,
            released=True,
            last_release=pkg.last_release,
            next_release=pkg.next_release,
            manifest_changes=self.manifest_changes,
            publish=published,
        )
