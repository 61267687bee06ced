"""Tests for cascade_release.gates."""

from __future__ import annotations

import asyncio

import pytest

from cascade_release.errors import ReleaseError
from cascade_release.gates import DependencyBatchGate, PhaseGate


class TestPhaseGate:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        gate = PhaseGate()
        await gate.acquire("a")
        assert gate.locked()
        assert gate.holder == "a"
        gate.release("a")
        assert not gate.locked()
        assert gate.holder is None

    @pytest.mark.asyncio
    async def test_serialises_holders(self) -> None:
        gate = PhaseGate()
        await gate.acquire("a")

        waiter = asyncio.create_task(gate.acquire("b"))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert gate.holder == "a"

        gate.release("a")
        await asyncio.wait_for(waiter, timeout=1)
        assert gate.holder == "b"
        gate.release("b")

    @pytest.mark.asyncio
    async def test_release_by_non_holder_raises(self) -> None:
        gate = PhaseGate()
        await gate.acquire("a")
        with pytest.raises(ReleaseError, match="held by a"):
            gate.release("b")
        assert gate.holder == "a"
        gate.release("a")

    def test_release_when_free_raises(self) -> None:
        with pytest.raises(ReleaseError, match="nobody"):
            PhaseGate().release("a")

    @pytest.mark.asyncio
    async def test_abandon_only_releases_own_hold(self) -> None:
        gate = PhaseGate()
        await gate.acquire("a")
        assert gate.abandon("b") is False
        assert gate.locked()
        assert gate.abandon("a") is True
        assert not gate.locked()
        assert gate.abandon("a") is False


class TestDependencyBatchGate:
    def test_empty_cohort_is_open(self) -> None:
        assert DependencyBatchGate().is_open()

    @pytest.mark.asyncio
    async def test_opens_once_cohort_is_done(self) -> None:
        gate = DependencyBatchGate(["a", "b"])
        waiter = asyncio.create_task(gate.wait())

        gate.mark_done("a")
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert gate.pending == frozenset({"b"})

        gate.mark_done("b")
        await asyncio.wait_for(waiter, timeout=1)
        assert gate.is_open()

    def test_unknown_and_repeated_names_ignored(self) -> None:
        gate = DependencyBatchGate(["a"])
        gate.mark_done("z")
        assert not gate.is_open()
        gate.mark_done("a")
        gate.mark_done("a")
        assert gate.is_open()
