"""CLI entry point for cascade-release."""

from __future__ import annotations

import asyncio
import importlib
from pathlib import Path

import click

from .config import load_config
from .errors import MultiReleaseError, ReleaseError
from .graph import dependency_batches, flatten
from .log import configure_logging
from .models import ReleaseResult
from .multirelease import PluginsFactory, discover_packages, multi_release


def load_plugins_factory(spec: str) -> PluginsFactory:
    """Import a plugins factory from a ``module:attribute`` path."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(f"expected module:factory, got {spec!r}", param_hint="--plugins")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise click.BadParameter(
            f"cannot import {module_name}: {exc}", param_hint="--plugins"
        ) from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise click.BadParameter(f"{spec} is not callable", param_hint="--plugins")
    return factory


def step(msg: str) -> None:
    """Print a visually distinct step header."""
    click.echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


def print_summary(results: list[ReleaseResult]) -> None:
    released = [r for r in results if r.released]
    skipped = [r for r in results if not r.released]
    if released:
        click.echo("Released:")
        for r in released:
            version = r.next_release.version if r.next_release else "?"
            click.echo(f"  {r.name} {version}")
    if skipped:
        click.echo("Unchanged: " + ", ".join(r.name for r in skipped))


@click.group()
@click.version_option(package_name="cascade-release")
def cli() -> None:
    """Release every package of a monorepo, dependencies first."""


@cli.command()
@click.option(
    "--plugins",
    "plugins_spec",
    required=True,
    metavar="MODULE:FACTORY",
    help="Factory building the release plugins for each package.",
)
@click.option(
    "--deps-bump",
    type=click.Choice(["override", "satisfy", "inherit"]),
    default=None,
    help="How dependants' ranges follow released dependencies.",
)
@click.option(
    "--deps-release",
    type=click.Choice(["patch", "minor", "major", "inherit"]),
    default=None,
    help="Release type of packages released only because of their deps.",
)
@click.option("--prerelease", default=None, help="Prerelease channel, e.g. beta.")
@click.option(
    "--ignore-packages",
    multiple=True,
    metavar="GLOB",
    help="Leave matching packages out of the run (repeatable).",
)
@click.option("--sequential", is_flag=True, help="Release packages one at a time.")
@click.option("--dry-run", is_flag=True, help="Resolve versions without writing or publishing.")
@click.option("--debug", is_flag=True, help="Verbose logging.")
@click.option("--json-logs", is_flag=True, help="Log one JSON object per line.")
def release(
    plugins_spec: str,
    deps_bump: str | None,
    deps_release: str | None,
    prerelease: str | None,
    ignore_packages: tuple[str, ...],
    sequential: bool,
    dry_run: bool,
    debug: bool,
    json_logs: bool,
) -> None:
    """Run the multirelease from the workspace root."""
    root = Path.cwd()
    factory = load_plugins_factory(plugins_spec)

    try:
        config = load_config(
            root,
            {
                "bump": deps_bump,
                "release": deps_release,
                "prerelease": prerelease,
                "ignore_packages": list(ignore_packages) or None,
                "concurrent": False if sequential else None,
                "dry_run": dry_run or None,
                "debug": debug or None,
            },
        )
        configure_logging(debug=config.debug, json=json_logs)

        step("Discovering workspace packages")
        packages = discover_packages(root, config)
        for name in flatten(dependency_batches(packages)):
            package = packages[name]
            deps = f" → [{', '.join(package.local_deps)}]" if package.local_deps else ""
            click.echo(f"  {name} ({package.dir}){deps}")

        step(f"Releasing {len(packages)} packages")
        results = asyncio.run(multi_release(packages, factory, config))
    except MultiReleaseError as exc:
        print_summary(exc.results)
        raise click.ClickException(str(exc)) from exc
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc

    step("Summary")
    print_summary(results)
