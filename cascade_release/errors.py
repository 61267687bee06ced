"""Error types raised by cascade-release.

Resolution errors are deterministic given their input, so nothing here is
retried: they propagate up and abort the affected package's pipeline.
"""

from __future__ import annotations

from typing import Any


class ReleaseError(Exception):
    """Base class for every error cascade-release raises on purpose."""


class UnresolvableVersionError(ReleaseError, ValueError):
    """A version or range string could not be parsed.

    Attributes:
        value: The offending string, surfaced verbatim to the operator.
    """

    def __init__(self, value: str | None, reason: str = "not a valid semantic version") -> None:
        self.value = value
        super().__init__(f"Cannot resolve version {value!r}: {reason}")


class UnresolvedDependencyError(ReleaseError):
    """A dependant is about to be written with a reference to a dependency
    that has neither a pending nor a previous release."""

    def __init__(self, package: str, dependency: str) -> None:
        self.package = package
        self.dependency = dependency
        super().__init__(
            f"Cannot release {package} because dependency {dependency} has not been released"
        )


class ManifestError(ReleaseError):
    """A package.json manifest is missing, unreadable or malformed."""


class ConfigError(ReleaseError):
    """Invalid cascade-release configuration."""


class MultiReleaseError(ReleaseError):
    """One or more package pipelines failed.

    Raised by the orchestrator after every pipeline has settled, so that
    unrelated packages are never cut short by a sibling's failure.

    Attributes:
        failures: Map of package name → the exception its pipeline raised.
        results: Results of the pipelines that did finish.
    """

    def __init__(
        self,
        failures: dict[str, BaseException],
        results: list[Any] | None = None,
    ) -> None:
        self.failures = failures
        self.results = results or []
        details = "\n".join(f"  - {name}: {exc}" for name, exc in failures.items())
        super().__init__(f"{len(failures)} package(s) failed to release:\n{details}")
