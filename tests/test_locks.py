"""
Tests for per-key locks
"""

import asyncio

import pytest

from consent_ledger.consent.locks import KeyedLocks


class TestKeyedLocks:

    def setup_method(self):
        self.locks = KeyedLocks()

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        order = []

        async def worker(name: str):
            async with self.locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        async with self.locks.hold("k1"):
            assert self.locks.locked("k1")
            assert not self.locks.locked("k2")
            await asyncio.wait_for(self._enter("k2"), timeout=0.5)

    async def _enter(self, key):
        async with self.locks.hold(key):
            pass

    @pytest.mark.asyncio
    async def test_idle_locks_are_discarded(self):
        async with self.locks.hold("k"):
            assert len(self.locks) == 1
        assert len(self.locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        with pytest.raises(RuntimeError):
            async with self.locks.hold("k"):
                raise RuntimeError("boom")

        assert not self.locks.locked("k")
        assert len(self.locks) == 0
