from __future__ import annotations
import logging
from typing import Optional

from utils.cache import RecordCache
from utils.cache_keys import LIST_KEY_PREFIX, build_record_key

logger = logging.getLogger(__name__)

LIST_GENERATION_KEY = f"{LIST_KEY_PREFIX}:generation"


class InvalidationCoordinator:
    """Evicts stale record entries and retires every cached listing page.

    The generation also serves as a mutation stamp for record read-through:
    a reader only keeps what it cached if no mutation started meanwhile.

    Listing keys embed a generation number; bumping it makes all earlier pages
    unreachable in O(1) and lets them age out through their TTL. If a bump
    cannot reach the cache, listing caching stays off in this process until a
    later bump succeeds.
    """

    def __init__(self, cache: RecordCache):
        self.cache = cache
        self.pending_bump = False

    async def list_generation(self) -> Optional[int]:
        """Current listing generation, or None when listings must bypass the cache."""
        if self.pending_bump and not await self._bump():
            return None
        result = await self.cache.get(LIST_GENERATION_KEY)
        if result.hit:
            return int(result.value)
        if result.error is not None:
            return None
        return 0

    async def on_mutation(self, username: Optional[str] = None, *also: str) -> None:
        # bump first: readers that refill a record key re-check the generation
        await self._bump()
        keys = [build_record_key(u) for u in (username, *also) if u]
        if keys:
            await self.cache.delete_many(keys)

    async def _bump(self) -> bool:
        generation = await self.cache.incr(LIST_GENERATION_KEY)
        if generation is None:
            logger.warning("List cache generation bump failed; listing cache disabled until it succeeds")
            self.pending_bump = True
            return False
        self.pending_bump = False
        logger.debug("List cache generation now %d", generation)
        return True
