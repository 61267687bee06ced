"""Synchronisation points between concurrently running package pipelines.

Pipelines run fully in parallel except at two gates:

- ``PhaseGate``: one per multirelease. Held from the end of a package's
  prepare phase to the start of its publish phase, so tag creation and tag
  pushing never race between packages.
- ``DependencyBatchGate``: holds a package's commit analysis until a cohort
  of dependency packages has finished analysing. Members of a dependency
  cycle also share one, opened once each has read its own commits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from .errors import ReleaseError

log = structlog.get_logger(__name__)


class PhaseGate:
    """Mutual exclusion over the prepare → publish window.

    Unlike a plain lock, the gate remembers which package holds it, so a
    failing pipeline can give it back without touching anyone else's hold.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._holder: str | None = None

    @property
    def holder(self) -> str | None:
        """Name of the package currently holding the gate."""
        return self._holder

    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self, owner: str) -> None:
        """Wait for the gate and take it on behalf of ``owner``."""
        await self._lock.acquire()
        self._holder = owner
        log.debug("gate.phase_acquired", package=owner)

    def release(self, owner: str) -> None:
        """Give the gate back.

        Raises:
            ReleaseError: If ``owner`` does not hold the gate.
        """
        if self._holder != owner:
            raise ReleaseError(
                f"{owner} cannot release the phase gate held by {self._holder or 'nobody'}"
            )
        self._holder = None
        self._lock.release()
        log.debug("gate.phase_released", package=owner)

    def abandon(self, owner: str) -> bool:
        """Release the gate if, and only if, ``owner`` holds it.

        Called on failure paths. Returns True if the gate was released.
        """
        if self._holder != owner:
            return False
        self.release(owner)
        log.warning("gate.phase_abandoned", package=owner)
        return True


class DependencyBatchGate:
    """One-shot signal that opens when a cohort of packages has analysed.

    An empty cohort is open from the start.
    """

    def __init__(self, cohort: Iterable[str] = ()) -> None:
        self.cohort = tuple(cohort)
        self._pending = set(self.cohort)
        self._opened = asyncio.Event()
        if not self._pending:
            self._opened.set()

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def is_open(self) -> bool:
        return self._opened.is_set()

    def mark_done(self, name: str) -> None:
        """Record that ``name`` finished (or gave up on) analysis."""
        if name not in self._pending:
            return
        self._pending.discard(name)
        if not self._pending:
            self._opened.set()
            log.debug("gate.batch_opened", last=name)

    async def wait(self) -> None:
        """Wait until every package of the cohort has analysed."""
        await self._opened.wait()
