"""Identity directory: the read and mutation paths around the user store.

Reads go membership filter (availability probes only) -> record cache ->
store. Mutations go to the store first, then evict stale cache entries; the
membership filter is only ever added to.
"""
from __future__ import annotations
import os
import math
import time
import logging
from typing import Optional, List

from pydantic import ValidationError

from models.user import (
    Role, UserCreate, UserUpdate, UserRead, UserInDB, UserListQuery, UserPage, PageMetadata,
    is_valid_username,
)
from services.errors import ValidationFailure, DuplicateConflict, NotFound, StoreUnavailable
from services.invalidation import InvalidationCoordinator
from services.user_repo import UserStore
from utils.cache import RecordCache, USER_CACHE_TTL, LIST_CACHE_TTL
from utils.cache_keys import build_record_key, build_list_key, normalize_list_query
from utils.membership import MembershipFilter

logger = logging.getLogger(__name__)

FILTER_RECOVERY_INTERVAL = float(os.getenv("FILTER_RECOVERY_INTERVAL_SECONDS", "60"))


class IdentityDirectory:
    def __init__(
        self,
        store: UserStore,
        cache: RecordCache,
        membership: MembershipFilter,
        invalidation: Optional[InvalidationCoordinator] = None,
        record_ttl: int = USER_CACHE_TTL,
        list_ttl: int = LIST_CACHE_TTL,
        recovery_interval: float = FILTER_RECOVERY_INTERVAL,
        clock=time.monotonic,
    ):
        self.store = store
        self.cache = cache
        self.membership = membership
        self.invalidation = invalidation or InvalidationCoordinator(cache)
        self.record_ttl = record_ttl
        self.list_ttl = list_ttl
        self.recovery_interval = recovery_interval
        self.clock = clock
        self._next_recovery = 0.0

    async def seed_membership(self) -> int:
        return await self.membership.seed(await self.store.list_usernames())

    async def recover_membership(self) -> bool:
        """Try to bring a degraded filter back; retried at most once per interval."""
        self._next_recovery = self.clock() + self.recovery_interval
        try:
            return await self.membership.rebuild(self.store.list_usernames)
        except StoreUnavailable as e:
            logger.warning("Membership filter recovery skipped: %s", e.message)
            return False

    # ---- reads ----

    async def check_availability(self, username: str) -> bool:
        """True when no record holds ``username``.

        Only a negative filter answer is trusted; a positive one may be a
        false positive or a deleted name, so it is confirmed against the store.
        """
        if not is_valid_username(username):
            raise ValidationFailure("Invalid username", field="username")
        if self.membership.degraded and self.clock() >= self._next_recovery:
            await self.recover_membership()
        if not await self.membership.might_contain(username):
            return True
        return await self.store.find_one(username=username) is None

    async def find_by_username(self, username: str) -> Optional[UserRead]:
        key = build_record_key(username)
        cached = await self.cache.get(key)
        if cached.hit:
            try:
                return UserRead.model_validate(cached.value)
            except ValidationError:
                logger.warning("Dropping malformed cached record %s", key)
                await self.cache.delete(key)

        # every mutation bumps the generation before evicting, so a row read
        # across a concurrent write is never left behind in the cache
        stamp = await self.invalidation.list_generation()
        user = await self.store.find_one(username=username)
        if user is None or stamp is None:
            return user
        if await self.invalidation.list_generation() != stamp:
            return user
        await self.cache.set(key, user.model_dump(mode="json"), self.record_ttl)
        if await self.invalidation.list_generation() != stamp:
            await self.cache.delete(key)
        return user

    async def find_by_email(self, email: str) -> Optional[UserRead]:
        # uniqueness decisions depend on this; never served from cache
        return await self.store.find_one(email=email)

    async def find_by_id(self, user_id: str) -> Optional[UserRead]:
        return await self.store.find_one(user_id=user_id)

    async def find_credentials_by_email(self, email: str) -> Optional[UserInDB]:
        return await self.store.find_credentials_by_email(email)

    async def count(self) -> int:
        return await self.store.count()

    async def list_paginated(self, query: UserListQuery) -> UserPage:
        q = normalize_list_query(query)
        generation = await self.invalidation.list_generation()
        key = build_list_key(q, generation) if generation is not None else None

        if key is not None:
            cached = await self.cache.get(key)
            if cached.hit:
                try:
                    return UserPage.model_validate(cached.value)
                except ValidationError:
                    logger.warning("Dropping malformed cached page %s", key)

        items: List[UserRead] = await self.store.find_many(
            role=q.role,
            search=q.search,
            sort=q.sort,
            order=q.order,
            skip=(q.page - 1) * q.limit,
            limit=q.limit,
        )
        total = await self.store.count(role=q.role, search=q.search)
        page = UserPage(
            items=items,
            metadata=PageMetadata(
                page=q.page,
                limit=q.limit,
                total=total,
                total_pages=math.ceil(total / q.limit),
            ),
        )
        if key is not None:
            await self.cache.set(key, page.model_dump(mode="json"), self.list_ttl)
        return page

    # ---- mutations ----

    async def create_record(self, payload: UserCreate, *, password_hash: str) -> UserRead:
        """Persist a new user. ``payload.role`` is taken as already resolved by
        the caller; ``None`` means viewer."""
        if await self.find_by_email(payload.email) is not None:
            raise DuplicateConflict("email")
        if await self.store.find_one(username=payload.username) is not None:
            raise DuplicateConflict("username")

        user = await self.store.insert({
            "username": payload.username,
            "email": payload.email,
            "full_name": payload.full_name,
            "role": (payload.role or Role.VIEWER).value,
            "password_hash": password_hash,
        })
        await self.membership.add(user.username)
        await self.cache.set(build_record_key(user.username), user.model_dump(mode="json"), self.record_ttl)
        await self.invalidation.on_mutation(None)
        logger.info("Created user %s (id=%s, role=%s)", user.username, user.id, user.role.value)
        return user

    async def update_record(
        self,
        username: str,
        changes: UserUpdate,
        *,
        password_hash: Optional[str] = None,
    ) -> UserRead:
        """Apply the enumerated updatable fields of ``changes``.

        ``changes.password`` is never stored as given; the caller hashes it
        and passes ``password_hash``.
        """
        if changes.is_empty() and password_hash is None:
            raise ValidationFailure("No valid update fields provided")

        current = await self.find_by_username(username)
        if current is None:
            raise NotFound("User not found")

        updates = {}
        if changes.email is not None and changes.email.lower() != current.email:
            if await self.find_by_email(changes.email) is not None:
                raise DuplicateConflict("email")
            updates["email"] = changes.email.lower()
        if changes.username is not None and changes.username != current.username:
            if await self.store.find_one(username=changes.username) is not None:
                raise DuplicateConflict("username")
            updates["username"] = changes.username
        if changes.full_name is not None and changes.full_name != current.full_name:
            updates["full_name"] = changes.full_name
        if changes.role is not None and changes.role != current.role:
            updates["role"] = changes.role.value
        if password_hash is not None:
            updates["password_hash"] = password_hash

        if not updates:
            return current

        updated = await self.store.update_one(username, updates)
        if updated is None:
            # removed between the read and the write
            await self.invalidation.on_mutation(username)
            raise NotFound("User not found")

        if updated.username != username:
            await self.membership.add(updated.username)
            await self.invalidation.on_mutation(username, updated.username)
        else:
            await self.invalidation.on_mutation(username)
        logger.info("Updated user %s (fields=%s)", updated.username, sorted(updates))
        return updated

    async def delete_record(self, username: str) -> bool:
        deleted = await self.store.delete_one(username)
        if deleted is None:
            return False
        # the membership filter keeps the name: it is append-only
        await self.invalidation.on_mutation(username)
        logger.info("Deleted user %s (id=%s)", username, deleted.id)
        return True
