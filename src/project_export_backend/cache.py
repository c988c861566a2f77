"""
Typed key/value cache used by the export engine.

KeyValueCache wraps a CacheBackend and adds:
- environment/service namespacing of every key
- canonical JSON encoding with transparent gzip compression for large values
- fail-soft reads and writes (errors are logged and counted, never raised)
- hit/miss/latency counters

The only operation that surfaces backend failures is ``set_if_absent``; the
distributed lock needs to tell "already held" apart from "cache down".
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import gzip
import json
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from redis.exceptions import RedisError

from .cache_backend import CacheBackend
from .cache_keys import DEFAULT_TTL, validate_key

logger = logging.getLogger(__name__)

COMPRESSION_TAG = "gz1:"
# Entries written before the tag was versioned.
LEGACY_COMPRESSION_TAG = "gzip:"

SLOW_PING_SECONDS = 1.0

BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
DECODE_ERRORS = (ValueError, OSError, EOFError, zlib.error, binascii.Error)


class CacheUnavailableError(Exception):
    """Raised when a conditional cache operation cannot reach the backend."""


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def encode_value(value: Any, compression_enabled: bool = True, threshold: int = 1024) -> str:
    """
    Serialise ``value`` for storage.

    Values whose JSON text is at least ``threshold`` bytes are gzip-compressed,
    base64-encoded and tagged with ``gz1:``. Smaller values are stored as plain
    JSON text.
    """
    text = _canonical_json(value)
    payload = text.encode("utf-8")
    if not compression_enabled or len(payload) < threshold:
        return text
    compressed = base64.b64encode(gzip.compress(payload)).decode("ascii")
    return f"{COMPRESSION_TAG}{compressed}"


def decode_value(raw: str) -> Any:
    """Inverse of encode_value; also accepts the legacy ``gzip:`` tag."""
    for tag in (COMPRESSION_TAG, LEGACY_COMPRESSION_TAG):
        if raw.startswith(tag):
            data = gzip.decompress(base64.b64decode(raw[len(tag):], validate=True))
            return json.loads(data.decode("utf-8"))
    return json.loads(raw)


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    operations: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    def observe(self, latency_ms: float) -> None:
        self.operations += 1
        self.total_latency_ms += latency_ms
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)

    def snapshot(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "operations": self.operations,
            "hitRate": round(self.hits / lookups, 4) if lookups else 0.0,
            "avgLatencyMs": round(self.total_latency_ms / self.operations, 3) if self.operations else 0.0,
            "maxLatencyMs": round(self.max_latency_ms, 3),
        }


class KeyValueCache:
    """
    Namespaced, fail-soft JSON cache over a CacheBackend.

    Keys passed in and returned are domain keys (``export:status:...``); the
    ``"{environment}:{key_prefix}:"`` namespace is only visible to the backend.
    """

    def __init__(
        self,
        backend: CacheBackend,
        environment: str = "development",
        key_prefix: str = "project-service",
        compression_enabled: bool = True,
        compression_threshold: int = 1024,
        metrics_enabled: bool = True,
        default_ttl: int = DEFAULT_TTL,
        scan_count: int = 100,
    ) -> None:
        self._backend = backend
        self._namespace = f"{environment}:{key_prefix}:"
        self._compression_enabled = compression_enabled
        self._compression_threshold = compression_threshold
        self._metrics_enabled = metrics_enabled
        self._default_ttl = default_ttl
        self._scan_count = scan_count
        self.metrics = CacheMetrics()

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def backend_name(self) -> str:
        return self._backend.name

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _qualify(self, key: str) -> Optional[str]:
        if not validate_key(key):
            logger.warning(f"Rejected invalid cache key: {key[:80]!r}")
            return None
        return f"{self._namespace}{key}"

    def _strip(self, full_key: str) -> str:
        return full_key[len(self._namespace):] if full_key.startswith(self._namespace) else full_key

    def _count(self, counter: str, amount: int = 1) -> None:
        if self._metrics_enabled:
            setattr(self.metrics, counter, getattr(self.metrics, counter) + amount)

    def _observe(self, started: float) -> None:
        if self._metrics_enabled:
            self.metrics.observe((time.perf_counter() - started) * 1000)

    def _resolve_ttl(self, key: str, ttl_seconds: Optional[float]) -> Optional[float]:
        if ttl_seconds is None:
            return self._default_ttl
        if ttl_seconds <= 0:
            logger.warning(f"Rejected non-positive TTL {ttl_seconds} for cache key {key}")
            return None
        return ttl_seconds

    def _decode(self, key: str, raw: Optional[str]) -> Optional[Any]:
        if raw is None:
            self._count("misses")
            return None
        try:
            value = decode_value(raw)
        except DECODE_ERRORS as exc:
            self._count("errors")
            logger.error(f"Failed to decode cached value for {key}: {exc}")
            return None
        self._count("hits")
        return value

    # ------------------------------------------------------------------
    # basic operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        full_key = self._qualify(key)
        if full_key is None:
            return None
        started = time.perf_counter()
        try:
            raw = await self._backend.get(full_key)
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache get failed for {key}: {exc}")
            return None
        finally:
            self._observe(started)
        return self._decode(key, raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None, compress: bool = True) -> bool:
        """Store ``value``; pass ``compress=False`` for values later matched by delete_if_equals."""
        full_key = self._qualify(key)
        ttl = self._resolve_ttl(key, ttl_seconds)
        if full_key is None or ttl is None:
            return False
        try:
            encoded = encode_value(value, self._compression_enabled and compress, self._compression_threshold)
        except (TypeError, ValueError) as exc:
            self._count("errors")
            logger.error(f"Failed to encode value for {key}: {exc}")
            return False

        started = time.perf_counter()
        try:
            await self._backend.set(full_key, encoded, max(1, int(ttl)))
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache set failed for {key}: {exc}")
            return False
        finally:
            self._observe(started)
        self._count("sets")
        return True

    async def delete(self, keys: Union[str, Sequence[str]]) -> int:
        requested = [keys] if isinstance(keys, str) else list(keys)
        full_keys = [full for full in (self._qualify(key) for key in requested) if full is not None]
        if not full_keys:
            return 0
        started = time.perf_counter()
        try:
            deleted = await self._backend.delete(*full_keys)
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache delete failed for {len(full_keys)} key(s): {exc}")
            return 0
        finally:
            self._observe(started)
        self._count("deletes", deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        full_key = self._qualify(key)
        if full_key is None:
            return False
        try:
            return await self._backend.exists(full_key)
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache exists failed for {key}: {exc}")
            return False

    async def set_expiry(self, key: str, ttl_seconds: int) -> bool:
        full_key = self._qualify(key)
        ttl = self._resolve_ttl(key, ttl_seconds)
        if full_key is None or ttl is None:
            return False
        try:
            return await self._backend.expire(full_key, max(1, int(ttl)))
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache expire failed for {key}: {exc}")
            return False

    # ------------------------------------------------------------------
    # bulk operations
    # ------------------------------------------------------------------

    async def get_many(self, keys: Sequence[str]) -> List[Optional[Any]]:
        qualified = [self._qualify(key) for key in keys]
        valid = [full for full in qualified if full is not None]
        raw_by_key: Dict[str, Optional[str]] = {}
        if valid:
            started = time.perf_counter()
            try:
                raw_values = await self._backend.mget(valid)
            except BACKEND_ERRORS as exc:
                self._count("errors")
                logger.error(f"Cache mget failed for {len(valid)} key(s): {exc}")
                return [None] * len(keys)
            finally:
                self._observe(started)
            raw_by_key = dict(zip(valid, raw_values))
        return [
            self._decode(key, raw_by_key.get(full)) if full is not None else None
            for key, full in zip(keys, qualified)
        ]

    async def set_many(self, entries: Dict[str, Any], ttl_seconds: Optional[float] = None) -> bool:
        results = [await self.set(key, value, ttl_seconds) for key, value in entries.items()]
        return all(results)

    async def keys(self, pattern: str) -> List[str]:
        full_pattern = self._qualify(pattern)
        if full_pattern is None:
            return []
        found: List[str] = []
        try:
            async for full_key in self._backend.scan(full_pattern, self._scan_count):
                found.append(self._strip(full_key))
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache scan failed for {pattern}: {exc}")
        return found

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` in batches of ``scan_count``."""
        full_pattern = self._qualify(pattern)
        if full_pattern is None:
            return 0
        deleted = 0
        batch: List[str] = []
        try:
            async for full_key in self._backend.scan(full_pattern, self._scan_count):
                batch.append(full_key)
                if len(batch) >= self._scan_count:
                    deleted += await self._backend.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._backend.delete(*batch)
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Cache pattern delete failed for {pattern}: {exc}")
        self._count("deletes", deleted)
        if deleted:
            logger.info(f"Deleted {deleted} cache key(s) matching {pattern}")
        return deleted

    # ------------------------------------------------------------------
    # conditional operations
    # ------------------------------------------------------------------

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """
        Atomically store ``value`` only if ``key`` is unset.

        Raises:
            CacheUnavailableError: If the backend could not be reached
        """
        full_key = self._qualify(key)
        ttl = self._resolve_ttl(key, ttl_seconds)
        if full_key is None or ttl is None:
            return False
        started = time.perf_counter()
        try:
            stored = await self._backend.set_if_absent(full_key, _canonical_json(value), ttl)
        except BACKEND_ERRORS as exc:
            self._count("errors")
            raise CacheUnavailableError(f"set_if_absent failed for {key}") from exc
        finally:
            self._observe(started)
        if stored:
            self._count("sets")
        return stored

    async def delete_if_equals(self, key: str, expected: Any) -> bool:
        full_key = self._qualify(key)
        if full_key is None:
            return False
        started = time.perf_counter()
        try:
            deleted = await self._backend.delete_if_equals(full_key, _canonical_json(expected))
        except BACKEND_ERRORS as exc:
            self._count("errors")
            logger.error(f"Conditional delete failed for {key}: {exc}")
            return False
        finally:
            self._observe(started)
        if deleted:
            self._count("deletes")
        return deleted

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        started = time.perf_counter()
        try:
            healthy = await self._backend.ping()
        except BACKEND_ERRORS as exc:
            logger.error(f"Cache health check failed: {exc}")
            return False
        elapsed = time.perf_counter() - started
        if elapsed > SLOW_PING_SECONDS:
            logger.warning(f"Cache ping took {elapsed:.2f}s")
        return healthy

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": self._backend.name,
            "namespace": self._namespace,
            "metricsEnabled": self._metrics_enabled,
            **self.metrics.snapshot(),
        }

    async def close(self) -> None:
        await self._backend.close()
