"""Unit tests for per-key locks."""

import asyncio

import pytest

from route_guard.locks import KeyedLocks


class TestKeyedLocks:
    """Test mutual exclusion and cleanup."""

    @pytest.mark.asyncio()
    async def test_same_key_is_serialised(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio()
    async def test_different_keys_do_not_wait(self):
        locks = KeyedLocks()
        async with locks.hold(1):
            await asyncio.wait_for(_enter(locks, 2), timeout=0.5)

    @pytest.mark.asyncio()
    async def test_unused_locks_are_dropped(self):
        locks = KeyedLocks()
        async with locks.hold(1):
            assert len(locks) == 1
        assert len(locks) == 0


async def _enter(locks, key):
    async with locks.hold(key):
        return True
