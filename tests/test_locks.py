"""Tests for KeyedLock — per-key serialization."""

import asyncio

from intake.locks import KeyedLock


class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name, delay):
            async with locks("user-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a", 0.02), worker("b", 0))
        assert order == ["a-start", "a-end", "b-start", "b-end"]

    async def test_different_keys_run_in_parallel(self):
        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks("user-1"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()
        assert locks.locked("user-1")

        # Another key is not blocked by user-1
        async with locks("user-2"):
            assert not locks.locked("user-3")

        release.set()
        await task

    async def test_lock_is_forgotten_when_released(self):
        locks = KeyedLock()
        async with locks("user-1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("user-1")

    async def test_released_on_error(self):
        locks = KeyedLock()
        try:
            async with locks("k"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0
