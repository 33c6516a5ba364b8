"""Username membership filter.

A Bloom filter answering "might this username exist?". It only ever grows:
there is no removal, so deleted usernames keep reporting ``MAYBE_PRESENT``
and the directory re-checks the store for every positive answer. Backend
failures fail open (``might_contain`` returns True). After a lost write the
filter stays degraded until ``rebuild`` re-seeds it from the store.
"""
from __future__ import annotations
import os, math, asyncio, hashlib, logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol

import redis.asyncio as redis
from redis.exceptions import ResponseError

from utils.cache import REDIS_URL, CACHE_TIMEOUT, BACKEND_ERRORS

logger = logging.getLogger(__name__)

BLOOM_CAPACITY = int(os.getenv("BLOOM_CAPACITY", "10000"))
BLOOM_ERROR_RATE = float(os.getenv("BLOOM_ERROR_RATE", "0.01"))
BLOOM_FILTER_NAME = os.getenv("BLOOM_FILTER_NAME", "usernames")
SEED_BATCH_SIZE = 500


class BloomBackend(Protocol):
    async def reserve(self, error_rate: float, capacity: int) -> bool: ...
    async def add(self, item: str) -> None: ...
    async def add_many(self, items: list[str]) -> None: ...
    async def exists(self, item: str) -> bool: ...
    async def close(self) -> None: ...


class LocalBloomFilter:
    """In-process bit array with Kirsch-Mitzenmacker double hashing."""

    def __init__(self, capacity: int = BLOOM_CAPACITY, error_rate: float = BLOOM_ERROR_RATE):
        self.capacity = capacity
        self.error_rate = error_rate
        self._bits: bytearray | None = None
        self._size = 0
        self._hash_count = 0

    @staticmethod
    def optimal_size(n: int, p: float) -> int:
        # m = -(n * ln p) / (ln 2)^2
        return max(int(math.ceil(-(n * math.log(p)) / (math.log(2) ** 2))), 64)

    @staticmethod
    def optimal_hash_count(m: int, n: int) -> int:
        return max(int(round((m / n) * math.log(2))), 1)

    async def reserve(self, error_rate: float, capacity: int) -> bool:
        if self._bits is not None:
            return False
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0 < error_rate < 1:
            raise ValueError("error_rate must be between 0 and 1 exclusive")
        self.capacity, self.error_rate = capacity, error_rate
        self._size = self.optimal_size(capacity, error_rate)
        self._hash_count = self.optimal_hash_count(self._size, capacity)
        self._bits = bytearray(math.ceil(self._size / 8))
        logger.debug(
            "Bloom filter reserved: size=%d bits, hashes=%d, capacity=%d, error_rate=%.4f",
            self._size, self._hash_count, capacity, error_rate,
        )
        return True

    def _positions(self, item: str) -> list[int]:
        raw = item.encode("utf-8")
        h1 = int(hashlib.md5(raw).hexdigest(), 16)
        h2 = int(hashlib.sha256(raw).hexdigest(), 16)
        return [(h1 + i * h2) % self._size for i in range(self._hash_count)]

    async def add(self, item: str) -> None:
        if self._bits is None:
            await self.reserve(self.error_rate, self.capacity)
        for pos in self._positions(item):
            byte_idx, bit_idx = divmod(pos, 8)
            self._bits[byte_idx] |= 1 << bit_idx

    async def add_many(self, items: list[str]) -> None:
        for item in items:
            await self.add(item)

    async def exists(self, item: str) -> bool:
        if self._bits is None:
            return False
        for pos in self._positions(item):
            byte_idx, bit_idx = divmod(pos, 8)
            if not self._bits[byte_idx] & (1 << bit_idx):
                return False
        return True

    async def close(self) -> None:
        return None


class RedisBloomFilter:
    """RedisBloom module backend (BF.* commands) shared by all processes."""

    def __init__(self, client: redis.Redis, name: str = BLOOM_FILTER_NAME):
        self._redis = client
        self.name = name

    @classmethod
    def from_url(cls, url: str = REDIS_URL, name: str = BLOOM_FILTER_NAME) -> "RedisBloomFilter":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True), name)

    async def reserve(self, error_rate: float, capacity: int) -> bool:
        try:
            await self._redis.execute_command("BF.RESERVE", self.name, error_rate, capacity)
        except ResponseError as e:
            if "exists" in str(e).lower():
                return False
            raise
        return True

    async def add(self, item: str) -> None:
        await self._redis.execute_command("BF.ADD", self.name, item)

    async def add_many(self, items: list[str]) -> None:
        if items:
            await self._redis.execute_command("BF.MADD", self.name, *items)

    async def exists(self, item: str) -> bool:
        return bool(await self._redis.execute_command("BF.EXISTS", self.name, item))

    async def close(self) -> None:
        await self._redis.aclose()


def build_bloom_backend(kind: str) -> BloomBackend:
    if kind == "redis":
        return RedisBloomFilter.from_url()
    return LocalBloomFilter()


class FilterProbe(str, Enum):
    ABSENT = "absent"
    MAYBE_PRESENT = "maybe_present"
    BACKEND_UNAVAILABLE = "backend_unavailable"


class MembershipFilter:
    def __init__(
        self,
        backend: BloomBackend,
        capacity: int = BLOOM_CAPACITY,
        error_rate: float = BLOOM_ERROR_RATE,
        timeout: float = CACHE_TIMEOUT,
    ):
        self.backend = backend
        self.capacity = capacity
        self.error_rate = error_rate
        self.timeout = timeout
        # once a write is lost the filter can no longer prove absence
        self.degraded = False
        self.lost_writes = 0

    def _lose_write(self) -> None:
        self.degraded = True
        self.lost_writes += 1

    async def provision(self) -> bool:
        """Reserve the filter; an already existing filter is left as is."""
        try:
            created = await asyncio.wait_for(
                self.backend.reserve(self.error_rate, self.capacity), self.timeout
            )
        except BACKEND_ERRORS as e:
            logger.warning("Could not provision membership filter: %s", e)
            self._lose_write()
            return False
        if created:
            logger.info(
                "Membership filter provisioned (capacity=%d, error_rate=%s)",
                self.capacity, self.error_rate,
            )
        return True

    async def add(self, key: str) -> bool:
        try:
            await asyncio.wait_for(self.backend.add(key), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Membership filter add failed for %s: %s", key, e)
            self._lose_write()
            return False
        return True

    async def seed(self, keys: Iterable[str], batch_size: int = SEED_BATCH_SIZE) -> int:
        keys = list(keys)
        for start in range(0, len(keys), batch_size):
            batch = keys[start:start + batch_size]
            try:
                await asyncio.wait_for(self.backend.add_many(batch), self.timeout)
            except BACKEND_ERRORS as e:
                logger.warning("Membership filter seeding stopped at %d/%d: %s", start, len(keys), e)
                self._lose_write()
                return start
        logger.info("Membership filter seeded with %d usernames", len(keys))
        return len(keys)

    async def rebuild(self, load_keys: Callable[[], Awaitable[Iterable[str]]]) -> bool:
        """Re-provision and re-seed a degraded filter from ``load_keys()``.

        ``degraded`` is cleared only when every key made it in and no other
        write was lost while the keys were being loaded and added.
        """
        marker = self.lost_writes
        if not await self.provision():
            return False
        keys = list(await load_keys())
        if await self.seed(keys) < len(keys) or self.lost_writes != marker:
            return False
        self.degraded = False
        logger.info("Membership filter recovered (%d usernames)", len(keys))
        return True

    async def probe(self, key: str) -> FilterProbe:
        if self.degraded:
            return FilterProbe.BACKEND_UNAVAILABLE
        try:
            present = await asyncio.wait_for(self.backend.exists(key), self.timeout)
        except BACKEND_ERRORS as e:
            logger.warning("Membership filter check failed for %s: %s", key, e)
            return FilterProbe.BACKEND_UNAVAILABLE
        return FilterProbe.MAYBE_PRESENT if present else FilterProbe.ABSENT

    async def might_contain(self, key: str) -> bool:
        return await self.probe(key) is not FilterProbe.ABSENT

    async def close(self) -> None:
        try:
            await self.backend.close()
        except BACKEND_ERRORS as e:
            logger.warning("Membership filter close failed: %s", e)
