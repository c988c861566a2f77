"""
Raw key/value backends used by KeyValueCache.

Backends see fully-qualified keys and already-encoded string values; they do
not log, count or swallow errors. Two implementations are provided:

- RedisCacheBackend: shared store for multi-process / multi-node deployments.
- InMemoryCacheBackend: single-process store for local runs and tests.
"""

from __future__ import annotations

import fnmatch
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis_asyncio

# Compare-and-delete executed server-side so that the ownership check and the
# delete cannot be interleaved with another client's SET.
_COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class CacheBackend(ABC):
    """Minimal async key/value contract required by the cache layer."""

    name: str = "backend"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the raw value for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` with an expiry."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomically store ``value`` only if ``key`` does not exist."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` only if it currently holds ``expected``."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if ``key`` exists."""

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Reset the expiry of an existing key."""

    @abstractmethod
    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Fetch several raw values at once."""

    @abstractmethod
    def scan(self, pattern: str, count: int) -> AsyncIterator[str]:
        """Incrementally iterate keys matching a glob ``pattern``."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backend answers."""

    async def close(self) -> None:
        return None


class InMemoryCacheBackend(CacheBackend):
    """
    Process-local backend with lazy expiry.

    Each coroutine below runs without suspending, so conditional operations
    are atomic with respect to every other task on the event loop.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live_value(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        if self._live_value(key) is not None:
            return False
        self._entries[key] = (value, self._clock() + ttl_seconds)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live_value(key) is not None:
                del self._entries[key]
                deleted += 1
        return deleted

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._live_value(key) != expected:
            return False
        del self._entries[key]
        return True

    async def exists(self, key: str) -> bool:
        return self._live_value(key) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        value = self._live_value(key)
        if value is None:
            return False
        self._entries[key] = (value, self._clock() + ttl_seconds)
        return True

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._live_value(key) for key in keys]

    async def scan(self, pattern: str, count: int) -> AsyncIterator[str]:
        matches = [key for key in list(self._entries) if fnmatch.fnmatchcase(key, pattern)]
        for key in matches:
            if self._live_value(key) is not None:
                yield key

    async def ping(self) -> bool:
        return True


class RedisCacheBackend(CacheBackend):
    """Redis backend built on the shared redis-py asyncio connection pool."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        client: Optional[redis_asyncio.Redis] = None,
    ) -> None:
        self._client = client or redis_asyncio.Redis.from_url(
            redis_url,
            decode_responses=True,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
        )
        self._compare_and_delete = self._client.register_script(_COMPARE_AND_DELETE)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        result = await self._client.set(key, value, px=int(ttl_seconds * 1000), nx=True)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        result = await self._compare_and_delete(keys=[key], args=[expected])
        return int(result) == 1

    async def exists(self, key: str) -> bool:
        return int(await self._client.exists(key)) == 1

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._client.expire(key, ttl_seconds))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(await self._client.mget(list(keys)))

    async def scan(self, pattern: str, count: int) -> AsyncIterator[str]:
        async for key in self._client.scan_iter(match=pattern, count=count):
            yield key

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


def create_cache_backend(backend: str, redis_url: str = "", max_connections: int = 20) -> CacheBackend:
    """
    Instantiate the configured cache backend.

    Args:
        backend: "memory" or "redis"
        redis_url: Connection URL, required for the redis backend
        max_connections: Size of the process-wide Redis connection pool

    Returns:
        A CacheBackend implementation

    Raises:
        ValueError: If the backend is unknown or misconfigured
    """
    if backend == "memory":
        return InMemoryCacheBackend()
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL must be set when CACHE_BACKEND=redis")
        return RedisCacheBackend(redis_url, max_connections=max_connections)
    raise ValueError(f"Unsupported cache backend: {backend!r}")
