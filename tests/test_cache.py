"""
Tests for the record cache and cache key construction.

Run with: pytest tests/test_cache.py -v
"""

import pytest

from models.user import Role, UserListQuery
from services.errors import TransientUnavailable
from utils.cache import RecordCache, MemoryCacheBackend, CacheStatus
from utils.cache_keys import build_list_key, build_record_key, normalize_list_query
from fakes import BrokenCacheBackend, HangingCacheBackend


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestRecordCache:
    async def test_set_then_get_hits(self, cache):
        assert await cache.set("user:alice", {"username": "alice"}, 60)
        result = await cache.get("user:alice")
        assert result.status is CacheStatus.HIT
        assert result.value == {"username": "alice"}

    async def test_missing_key_is_a_miss(self, cache):
        result = await cache.get("user:nobody")
        assert result.status is CacheStatus.MISS
        assert result.value is None

    async def test_last_write_wins(self, cache):
        await cache.set("k", {"v": 1}, 60)
        await cache.set("k", {"v": 2}, 60)
        assert (await cache.get("k")).value == {"v": 2}

    async def test_delete_absent_key_is_not_an_error(self, cache):
        assert await cache.delete("never-set")
        assert await cache.delete_many([])

    async def test_delete_many(self, cache):
        for key in ("a", "b", "c"):
            await cache.set(key, key, 60)
        await cache.delete_many(["a", "b", "zzz"])
        assert not (await cache.get("a")).hit
        assert not (await cache.get("b")).hit
        assert (await cache.get("c")).hit

    async def test_entries_expire_after_their_own_ttl(self):
        clock = Clock()
        cache = RecordCache(MemoryCacheBackend(timer=clock))
        await cache.set("short", "s", 300)
        await cache.set("long", "l", 3600)
        clock.now += 301
        assert (await cache.get("short")).status is CacheStatus.MISS
        assert (await cache.get("long")).hit
        clock.now += 3300
        assert (await cache.get("long")).status is CacheStatus.MISS

    async def test_counters_survive_lru_eviction(self):
        cache = RecordCache(MemoryCacheBackend(maxsize=2))
        assert await cache.incr("gen") == 1
        for i in range(10):
            await cache.set(f"k{i}", i, 60)
        assert await cache.incr("gen") == 2
        assert (await cache.get("gen")).value == 2

    async def test_undecodable_entry_is_a_miss(self):
        backend = MemoryCacheBackend()
        await backend.set("user:alice", "{not json", 60)
        cache = RecordCache(backend)
        assert (await cache.get("user:alice")).status is CacheStatus.MISS
        assert await backend.get("user:alice") is None

    async def test_unreachable_backend_degrades_to_miss(self):
        cache = RecordCache(BrokenCacheBackend())
        result = await cache.get("user:alice")
        assert result.status is CacheStatus.BACKEND_UNAVAILABLE
        assert not result.hit
        assert isinstance(result.error, TransientUnavailable)

    async def test_unreachable_backend_swallows_writes(self):
        cache = RecordCache(BrokenCacheBackend())
        assert await cache.set("k", {"v": 1}, 60) is False
        assert await cache.delete("k") is False
        assert await cache.delete_many(["k", "j"]) is False
        assert await cache.incr("gen") is None

    async def test_slow_backend_is_cut_off_by_timeout(self):
        cache = RecordCache(HangingCacheBackend(), timeout=0.05)
        assert (await cache.get("k")).status is CacheStatus.BACKEND_UNAVAILABLE
        assert await cache.set("k", 1, 60) is False


class TestCacheKeys:
    def test_record_key(self):
        assert build_record_key("alice") == "user:alice"
        assert build_record_key("Alice") != build_record_key("alice")

    def test_default_list_key(self):
        assert build_list_key(UserListQuery()) == "all_users:v0:1:20:createdAt:desc:all:none"

    def test_equal_queries_share_a_key(self):
        a = UserListQuery(page=2, limit=10, sort="username", order="asc", role=Role.EDITOR, search="Bob")
        b = UserListQuery(page=2, limit=10, sort="username", order="asc", role="editor", search="  bob ")
        assert build_list_key(a) == build_list_key(b)

    def test_defaults_and_explicit_defaults_share_a_key(self):
        explicit = UserListQuery(page=1, limit=20, sort="createdAt", order="desc", search="")
        assert build_list_key(explicit) == build_list_key(UserListQuery())

    @pytest.mark.parametrize("change", [
        {"page": 2},
        {"limit": 50},
        {"sort": "email"},
        {"order": "asc"},
        {"role": Role.VIEWER},
        {"search": "alice"},
    ])
    def test_any_differing_field_changes_the_key(self, change):
        assert build_list_key(UserListQuery(**change)) != build_list_key(UserListQuery())

    def test_literal_none_search_is_not_the_sentinel(self):
        assert build_list_key(UserListQuery(search="none")) != build_list_key(UserListQuery())

    def test_generation_is_part_of_the_key(self):
        assert build_list_key(UserListQuery(), 1) != build_list_key(UserListQuery(), 2)

    def test_normalization_clamps_and_defaults(self):
        q = normalize_list_query(UserListQuery(page=0, limit=1000, sort="password", order="sideways"))
        assert (q.page, q.limit, q.sort, q.order) == (1, 100, "createdAt", "desc")
        assert normalize_list_query(UserListQuery(limit=0)).limit == 1
        assert normalize_list_query(UserListQuery(page=-4)).page == 1
