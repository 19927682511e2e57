"""Tests for per-key asyncio locks."""

import asyncio

import pytest
from openmemory_mcp.services.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("m1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait(self):
        locks = KeyedLock()
        async with locks.hold("m1"):
            await asyncio.wait_for(_hold_briefly(locks, "m2"), timeout=1)
            assert locks.locked("m1")
            assert not locks.locked("m2")

    @pytest.mark.asyncio
    async def test_entries_are_dropped_when_released(self):
        locks = KeyedLock()
        async with locks.hold("m1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("m1")

    @pytest.mark.asyncio
    async def test_release_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("m1"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_hold_many_sorts_and_deduplicates(self):
        locks = KeyedLock()
        async with locks.hold_many(["c", "a", "b", "a"]) as held:
            assert held == ["a", "b", "c"]
            assert all(locks.locked(k) for k in held)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_overlapping_sets_do_not_deadlock(self):
        locks = KeyedLock()

        async def worker(keys):
            async with locks.hold_many(keys):
                await asyncio.sleep(0.005)

        await asyncio.wait_for(asyncio.gather(worker(["x", "y"]), worker(["y", "x"]), worker(["y", "z"])), timeout=2)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak(self):
        locks = KeyedLock()
        async with locks.hold("m1"):
            waiter = asyncio.create_task(_hold_briefly(locks, "m1"))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
        assert len(locks) == 0


async def _hold_briefly(locks, key):
    async with locks.hold(key):
        await asyncio.sleep(0)
