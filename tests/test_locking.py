import asyncio

import pytest

from project_export_backend.cache import CacheUnavailableError
from project_export_backend.locking import DistributedLock


class TestDistributedLock:
    @pytest.mark.asyncio
    async def test_second_acquire_fails_while_held(self, lock):
        token = await lock.acquire("export", "r1", 30)
        assert token
        assert await lock.acquire("export", "r1", 30) is None
        assert await lock.is_locked("export", "r1")

    @pytest.mark.asyncio
    async def test_release_requires_matching_token(self, lock):
        token = await lock.acquire("export", "r1", 30)
        assert await lock.release("export", "r1", "someone-else") is False
        assert await lock.is_locked("export", "r1")
        assert await lock.release("export", "r1", token) is True
        assert not await lock.is_locked("export", "r1")

    @pytest.mark.asyncio
    async def test_release_without_token_is_noop(self, lock):
        assert await lock.release("export", "r1", None) is False
        assert await lock.release("export", "r1", "") is False

    @pytest.mark.asyncio
    async def test_expired_lock_cannot_be_released_by_old_owner(self, lock, clock):
        old_token = await lock.acquire("export", "r1", 10)
        clock.advance(11)
        new_token = await lock.acquire("export", "r1", 10)
        assert new_token and new_token != old_token

        assert await lock.release("export", "r1", old_token) is False
        assert await lock.is_locked("export", "r1")

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, lock):
        first = await lock.acquire("export", "a", 30)
        second = await lock.acquire("export", "b", 30)
        assert first != second

    @pytest.mark.asyncio
    async def test_only_one_concurrent_acquirer_wins(self, lock):
        tokens = await asyncio.gather(*(lock.acquire("export", "r1", 30) for _ in range(10)))
        assert len([token for token in tokens if token]) == 1

    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, lock):
        async with lock.hold("export", "r1", 30) as held:
            assert held is not None
            assert held.resource_key == "locks:export:r1"
            async with lock.hold("export", "r1", 30) as contender:
                assert contender is None
        assert not await lock.is_locked("export", "r1")

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock):
        with pytest.raises(RuntimeError):
            async with lock.hold("export", "r1", 30):
                raise RuntimeError("boom")
        assert not await lock.is_locked("export", "r1")

    @pytest.mark.asyncio
    async def test_cache_outage_is_not_reported_as_contention(self, failing_cache):
        lock = DistributedLock(failing_cache)
        with pytest.raises(CacheUnavailableError):
            await lock.acquire("export", "r1", 30)
