"""
Distributed mutual exclusion over the shared cache.

A lock is a cache key holding a random owner token with an expiry. Acquisition
is a single set-if-absent; release is a single atomic compare-and-delete, so a
worker whose lock expired can never delete a lock re-acquired by someone else.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from uuid import uuid4

from .cache import KeyValueCache
from .cache_keys import CACHE_TTL, lock_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lock:
    resource_key: str
    owner_token: str
    ttl_seconds: float


def new_owner_token() -> str:
    return f"{os.getpid()}-{uuid4().hex}"


class DistributedLock:
    def __init__(self, cache: KeyValueCache, default_ttl_seconds: float = CACHE_TTL["OPERATION_LOCK"]) -> None:
        self._cache = cache
        self._default_ttl = default_ttl_seconds

    async def acquire(self, operation: str, resource_id: str, ttl_seconds: Optional[float] = None) -> Optional[str]:
        """
        Try once to take the lock for ``(operation, resource_id)``.

        Returns:
            The owner token, or None if the lock is held by someone else

        Raises:
            CacheUnavailableError: If the cache could not be reached
        """
        key = lock_key(operation, resource_id)
        token = new_owner_token()
        acquired = await self._cache.set_if_absent(key, token, ttl_seconds or self._default_ttl)
        if not acquired:
            logger.debug(f"Lock {key} is already held")
            return None
        logger.debug(f"Acquired lock {key}")
        return token

    async def release(self, operation: str, resource_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        key = lock_key(operation, resource_id)
        released = await self._cache.delete_if_equals(key, token)
        if not released:
            logger.warning(f"Lock {key} was not released: token mismatch or lock expired")
        return released

    async def is_locked(self, operation: str, resource_id: str) -> bool:
        return await self._cache.exists(lock_key(operation, resource_id))

    @asynccontextmanager
    async def hold(
        self, operation: str, resource_id: str, ttl_seconds: Optional[float] = None
    ) -> AsyncIterator[Optional[Lock]]:
        """Yield the acquired Lock (or None when held elsewhere) and release it on exit."""
        ttl = ttl_seconds or self._default_ttl
        token = await self.acquire(operation, resource_id, ttl)
        try:
            yield Lock(lock_key(operation, resource_id), token, ttl) if token else None
        finally:
            if token:
                await self.release(operation, resource_id, token)
