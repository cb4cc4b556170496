"""Layered caching for registry snapshots and prices.

This module provides an in-process TTL cache, a Redis-backed distributed
cache, and `CacheStore`, which stacks the two and guards cold loads with a
per-key lock so concurrent callers trigger a single underlying load.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import redis.asyncio as redis

from walletlens.services.metrics import record_cache_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Cache entry with TTL tracking."""
    value: T
    created_at: float
    ttl_seconds: float

    def is_expired(self) -> bool:
        """Check if this cache entry has expired."""
        return time.time() - self.created_at > self.ttl_seconds

    def remaining_ttl(self) -> float:
        """Return remaining TTL in seconds (negative if expired)."""
        return self.ttl_seconds - (time.time() - self.created_at)


class TTLCache(Generic[T]):
    """Generic in-process TTL cache.

    Items expire after their TTL and are lazily cleaned up on access.
    """

    def __init__(self, default_ttl_seconds: float = 60.0):
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._default_ttl = default_ttl_seconds
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[T]:
        """Get value from cache if not expired.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found/expired
        """
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired():
            del self._cache[key]
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        self._cache[key] = CacheEntry(value=value, created_at=time.time(), ttl_seconds=ttl)

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0.0,
        }


class KeyedLocks:
    """Get-or-create map of asyncio locks, one per cache key."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        # setdefault never yields to the loop, so two callers always share a lock
        return self._locks.setdefault(key, asyncio.Lock())

    def __len__(self) -> int:
        return len(self._locks)


class DistributedCache:
    """JSON-over-Redis cache whose failures degrade to cache misses.

    Every operation logs and swallows I/O errors: the distributed layer speeds
    things up but is never required for a correct answer.
    """

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    @classmethod
    def from_url(cls, url: str | None) -> DistributedCache:
        if not url:
            return cls(None)
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @staticmethod
    def generate_key(*parts: Any) -> str:
        return ":".join(str(part) for part in parts)

    async def get(self, key: str) -> Any:
        if self._client is None:
            return None
        try:
            payload = await self._client.get(key)
        except Exception as e:
            logger.warning(f"Distributed cache get failed for {key}: {e}")
            record_cache_error("distributed", "get")
            return None
        if not payload:
            return None
        try:
            return json.loads(payload)
        except ValueError as e:
            logger.warning(f"Discarding undecodable cache payload for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self._client is None:
            return
        try:
            await self._client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))
        except Exception as e:
            logger.warning(f"Distributed cache set failed for {key}: {e}")
            record_cache_error("distributed", "set")

    async def remove(self, key: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.delete(key)
        except Exception as e:
            logger.warning(f"Distributed cache remove failed for {key}: {e}")
            record_cache_error("distributed", "remove")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class CacheStore:
    """In-process snapshots backed by the distributed cache.

    `get_or_load` walks: in-process hit, else take the key's lock, re-check,
    then distributed cache, then the loader (source of truth), writing each
    layer on the way back. Every `invalidate` bumps the key's generation; a
    load that overlapped one returns its value but caches nothing, so a write
    made during the load is never hidden behind the older snapshot.
    """

    def __init__(
        self,
        distributed: DistributedCache | None = None,
        enabled: bool = True,
    ):
        self.memory: TTLCache[Any] = TTLCache()
        self.distributed = distributed or DistributedCache(None)
        self.enabled = enabled
        self._locks = KeyedLocks()
        self._generations: Dict[str, int] = {}

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        encode: Callable[[T], Any] = lambda value: value,
        decode: Callable[[Any], T] = lambda payload: payload,
    ) -> T:
        if not self.enabled:
            return await loader()

        value = self.memory.get(key)
        if value is not None:
            return value

        async with self._locks.get(key):
            # Another caller may have finished the load while we waited
            value = self.memory.get(key)
            if value is not None:
                return value

            generation = self._generations.get(key, 0)
            payload = await self.distributed.get(key)
            if payload is not None:
                value = decode(payload)
            else:
                value = await loader()
                if self._generations.get(key, 0) == generation:
                    await self.distributed.set(key, encode(value), ttl_seconds)
                    if self._generations.get(key, 0) != generation:
                        # Invalidated while the set was in flight
                        await self.distributed.remove(key)

            if self._generations.get(key, 0) == generation:
                self.memory.set(key, value, ttl_seconds)
            else:
                logger.debug(f"Cache key {key} invalidated during load, not caching")
            return value

    def peek(self, key: str) -> Any:
        """In-process lookup only."""
        if not self.enabled:
            return None
        return self.memory.get(key)

    async def get(self, key: str) -> Any:
        if not self.enabled:
            return None
        value = self.memory.get(key)
        if value is not None:
            return value
        return await self.distributed.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float, payload: Any = None) -> None:
        if not self.enabled:
            return
        self.memory.set(key, value, ttl_seconds)
        await self.distributed.set(key, value if payload is None else payload, ttl_seconds)

    async def invalidate(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1
        self.memory.delete(key)
        await self.distributed.remove(key)
