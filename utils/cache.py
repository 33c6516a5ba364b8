"""Record cache: serialized users and listing pages with per-entry TTL.

The cache is an optimization only. Every backend failure is logged and turned
into a ``BACKEND_UNAVAILABLE`` result so callers fall through to the store.
"""
from __future__ import annotations
import os, json, time, asyncio, logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Iterable, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError
from cachetools import TLRUCache

from services.errors import TransientUnavailable

logger = logging.getLogger(__name__)

CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")  # "memory" or "redis"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
USER_CACHE_TTL = int(os.getenv("USER_CACHE_TTL_SECONDS", "3600"))
LIST_CACHE_TTL = int(os.getenv("LIST_CACHE_TTL_SECONDS", "300"))
CACHE_MAXSIZE = int(os.getenv("CACHE_MAXSIZE", "2000"))
CACHE_TIMEOUT = float(os.getenv("CACHE_TIMEOUT_SECONDS", "0.5"))

BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl: int) -> None: ...
    async def delete(self, *keys: str) -> None: ...
    async def incr(self, key: str) -> int: ...
    async def close(self) -> None: ...


def _entry_expiry(_key, entry, now):
    return now + entry[1]


class MemoryCacheBackend:
    """Process-local backend on a cachetools TLRU cache (per-entry TTL)."""

    def __init__(self, maxsize: int = CACHE_MAXSIZE, timer=time.monotonic):
        self._entries = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        # counters live outside the LRU so eviction can never rewind them
        self._counters: dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        if key in self._counters:
            return str(self._counters[key])
        entry = self._entries.get(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def incr(self, key: str) -> int:
        self._counters[key] = self._counters.get(key, 0) + 1
        return self._counters[key]

    async def close(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str = REDIS_URL) -> "RedisCacheBackend":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._redis.delete(*keys)

    async def incr(self, key: str) -> int:
        return int(await self._redis.incr(key))

    async def close(self) -> None:
        await self._redis.aclose()


def build_cache_backend(kind: str = CACHE_BACKEND) -> CacheBackend:
    if kind == "redis":
        return RedisCacheBackend.from_url()
    if kind != "memory":
        logger.warning("Unknown CACHE_BACKEND=%r, using in-process cache", kind)
    return MemoryCacheBackend()


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    BACKEND_UNAVAILABLE = "backend_unavailable"


@dataclass(frozen=True)
class CacheResult:
    status: CacheStatus
    value: Any = None
    error: Optional[TransientUnavailable] = None

    @property
    def hit(self) -> bool:
        return self.status is CacheStatus.HIT

    @classmethod
    def found(cls, value: Any) -> "CacheResult":
        return cls(CacheStatus.HIT, value)

    @classmethod
    def miss(cls) -> "CacheResult":
        return cls(CacheStatus.MISS)

    @classmethod
    def unavailable(cls, error: TransientUnavailable) -> "CacheResult":
        return cls(CacheStatus.BACKEND_UNAVAILABLE, error=error)


class RecordCache:
    def __init__(self, backend: CacheBackend, timeout: float = CACHE_TIMEOUT):
        self.backend = backend
        self.timeout = timeout

    async def get(self, key: str) -> CacheResult:
        try:
            raw = await asyncio.wait_for(self.backend.get(key), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return CacheResult.unavailable(TransientUnavailable(f"cache get {key}: {e}"))
        if raw is None:
            logger.debug("Cache miss %s", key)
            return CacheResult.miss()
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            await self.delete(key)
            return CacheResult.miss()
        logger.debug("Cache hit %s", key)
        return CacheResult.found(value)

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        blob = json.dumps(value, default=str, sort_keys=True)
        try:
            await asyncio.wait_for(self.backend.set(key, blob, ttl), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Cache set failed for %s: %s", key, e)
            return False
        return True

    async def delete(self, key: str) -> bool:
        return await self.delete_many([key])

    async def delete_many(self, keys: Iterable[str]) -> bool:
        keys = list(keys)
        if not keys:
            return True
        try:
            await asyncio.wait_for(self.backend.delete(*keys), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Cache delete failed for %s: %s", keys, e)
            return False
        return True

    async def incr(self, key: str) -> Optional[int]:
        try:
            return await asyncio.wait_for(self.backend.incr(key), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Cache incr failed for %s: %s", key, e)
            return None

    async def close(self) -> None:
        try:
            await self.backend.close()
        except BACKEND_ERRORS as e:
            logger.warning("Cache close failed: %s", e)
