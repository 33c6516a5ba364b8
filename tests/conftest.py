"""
Shared pytest fixtures for the identity directory tests.

Provides:
- store: FakeUserStore with per-method call counters
- cache / membership: in-process record cache and Bloom filter
- directory: IdentityDirectory wired to the above
"""

import pytest

from fakes import FakeUserStore
from services.directory import IdentityDirectory
from services.invalidation import InvalidationCoordinator
from utils.cache import RecordCache, MemoryCacheBackend
from utils.membership import MembershipFilter, LocalBloomFilter


@pytest.fixture
def store():
    return FakeUserStore()


@pytest.fixture
def cache():
    return RecordCache(MemoryCacheBackend())


@pytest.fixture
def membership():
    return MembershipFilter(LocalBloomFilter(capacity=10_000, error_rate=0.01))


@pytest.fixture
def directory(store, cache, membership):
    return IdentityDirectory(store, cache, membership, InvalidationCoordinator(cache))
