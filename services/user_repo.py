from __future__ import annotations
import os
import re
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Protocol
from uuid import uuid4
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, InterfaceError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine
from models.user import Role, UserRead, UserInDB
from services.errors import DuplicateConflict, StoreUnavailable

logger = logging.getLogger(__name__)

STORE_TIMEOUT = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

SORT_COLUMNS = {"createdAt": "created_at", "username": "username", "email": "email"}
UPDATABLE_COLUMNS = ("username", "email", "full_name", "role", "password_hash")
PUBLIC_COLUMNS = "id, username, email, full_name, role, created_at, updated_at"

CONFLICT_PATTERNS = (
    re.compile(r"for key '(?:\w+\.)?(\w+)'"),  # mysql
    re.compile(r"unique constraint failed: \w+\.(\w+)"),  # sqlite
)


class UserStore(Protocol):
    """What the directory needs from the authoritative store."""

    async def find_one(self, *, username: Optional[str] = None, email: Optional[str] = None,
                       user_id: Optional[str] = None) -> Optional[UserRead]: ...
    async def find_credentials_by_email(self, email: str) -> Optional[UserInDB]: ...
    async def find_many(self, *, role: Optional[Role], search: Optional[str], sort: str,
                        order: str, skip: int, limit: int) -> List[UserRead]: ...
    async def count(self, *, role: Optional[Role] = None, search: Optional[str] = None) -> int: ...
    async def insert(self, record: Dict[str, Any]) -> UserRead: ...
    async def update_one(self, username: str, changes: Dict[str, Any]) -> Optional[UserRead]: ...
    async def delete_one(self, username: str) -> Optional[UserRead]: ...
    async def list_usernames(self) -> List[str]: ...


class UserRepo:
    """SQL-backed store. Uniqueness of username and email is enforced by the
    table's unique indexes; violations surface as ``DuplicateConflict``."""

    def __init__(self, engine: AsyncEngine, timeout: float = STORE_TIMEOUT):
        self.engine = engine
        self.timeout = timeout

    async def _guard(self, coro):
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except IntegrityError as e:
            raise DuplicateConflict(_conflicting_field(e)) from e
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError, asyncio.TimeoutError) as e:
            logger.error("User store unavailable: %s", e)
            raise StoreUnavailable("User store unavailable") from e

    # ---- reads ----

    async def find_one(self, *, username=None, email=None, user_id=None) -> Optional[UserRead]:
        where, params = _lookup_clause(username=username, email=email, user_id=user_id)
        sql = text(f"SELECT {PUBLIC_COLUMNS} FROM users WHERE {where}")
        row = await self._guard(self._first(sql, params))
        return _to_user_read(row) if row else None

    async def find_credentials_by_email(self, email: str) -> Optional[UserInDB]:
        sql = text(f"SELECT {PUBLIC_COLUMNS}, password_hash FROM users WHERE email = :email")
        row = await self._guard(self._first(sql, {"email": email.lower()}))
        if not row:
            return None
        return UserInDB(**_to_user_read(row).model_dump(), password_hash=row["password_hash"])

    async def find_many(self, *, role=None, search=None, sort="createdAt", order="desc",
                        skip=0, limit=20) -> List[UserRead]:
        where, params = _filter_clause(role, search)
        column = SORT_COLUMNS.get(sort, "created_at")
        direction = "ASC" if order == "asc" else "DESC"
        params.update({"limit": limit, "offset": skip})
        sql = text(
            f"SELECT {PUBLIC_COLUMNS} FROM users {where} "
            f"ORDER BY {column} {direction}, id {direction} LIMIT :limit OFFSET :offset"
        )
        rows = await self._guard(self._all(sql, params))
        return [_to_user_read(r) for r in rows]

    async def count(self, *, role=None, search=None) -> int:
        where, params = _filter_clause(role, search)
        sql = text(f"SELECT COUNT(*) AS n FROM users {where}")
        row = await self._guard(self._first(sql, params))
        return int(row["n"])

    async def list_usernames(self) -> List[str]:
        rows = await self._guard(self._all(text("SELECT username FROM users"), {}))
        return [r["username"] for r in rows]

    # ---- writes ----

    async def insert(self, record: Dict[str, Any]) -> UserRead:
        now = _now()
        params = {
            "id": str(uuid4()),
            "username": record["username"],
            "email": record["email"].lower(),
            "full_name": record.get("full_name") or "",
            "role": Role(record.get("role") or Role.VIEWER).value,
            "password_hash": record["password_hash"],
            "created_at": now,
            "updated_at": now,
        }
        sql = text("""
            INSERT INTO users (id, username, email, full_name, role, password_hash, created_at, updated_at)
            VALUES (:id, :username, :email, :full_name, :role, :password_hash, :created_at, :updated_at)
        """)
        row = await self._guard(self._write_then_fetch(sql, params, params["username"]))
        return _to_user_read(row)

    async def update_one(self, username: str, changes: Dict[str, Any]) -> Optional[UserRead]:
        sets = []
        params: Dict[str, Any] = {"current": username, "updated_at": _now()}
        for k in UPDATABLE_COLUMNS:
            if k in changes:
                sets.append(f"{k} = :{k}")
                params[k] = changes[k]
        if "email" in params:
            params["email"] = params["email"].lower()
        if "role" in params:
            params["role"] = Role(params["role"]).value
        sets.append("updated_at = :updated_at")
        sql = text(f"UPDATE users SET {', '.join(sets)} WHERE username = :current")
        row = await self._guard(self._write_then_fetch(sql, params, changes.get("username", username)))
        return _to_user_read(row) if row else None

    async def delete_one(self, username: str) -> Optional[UserRead]:
        row = await self._guard(self._delete(username))
        return _to_user_read(row) if row else None

    # ---- helpers ----

    async def _first(self, sql, params):
        async with self.engine.connect() as conn:
            res = await conn.execute(sql, params)
            return res.mappings().first()

    async def _all(self, sql, params):
        async with self.engine.connect() as conn:
            res = await conn.execute(sql, params)
            return res.mappings().all()

    async def _write_then_fetch(self, sql, params, username: str):
        async with self.engine.begin() as conn:
            await conn.execute(sql, params)
            res = await conn.execute(
                text(f"SELECT {PUBLIC_COLUMNS} FROM users WHERE username = :u"), {"u": username}
            )
            return res.mappings().first()

    async def _delete(self, username: str):
        async with self.engine.begin() as conn:
            res = await conn.execute(
                text(f"SELECT {PUBLIC_COLUMNS} FROM users WHERE username = :u"), {"u": username}
            )
            row = res.mappings().first()
            if row:
                await conn.execute(text("DELETE FROM users WHERE username = :u"), {"u": username})
            return row


def _lookup_clause(*, username=None, email=None, user_id=None):
    if username is not None:
        return "username = :username", {"username": username}
    if email is not None:
        return "email = :email", {"email": email.lower()}
    if user_id is not None:
        return "id = :id", {"id": str(user_id)}
    raise ValueError("find_one needs username, email or user_id")


def _filter_clause(role: Optional[Role], search: Optional[str]):
    clauses = []
    params: Dict[str, Any] = {}
    if role is not None:
        clauses.append("role = :role")
        params["role"] = Role(role).value
    if search:
        clauses.append(
            "(LOWER(username) LIKE :search ESCAPE '!'"
            " OR LOWER(email) LIKE :search ESCAPE '!'"
            " OR LOWER(full_name) LIKE :search ESCAPE '!')"
        )
        escaped = search.lower().replace("!", "!!").replace("%", "!%").replace("_", "!_")
        params["search"] = f"%{escaped}%"
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _conflicting_field(e: IntegrityError) -> str:
    # match the index/column name, never the duplicated value
    message = str(e.orig).lower()
    for pattern in CONFLICT_PATTERNS:
        # the key clause trails the duplicated value in mysql messages
        for token in reversed(pattern.findall(message)):
            for field in ("email", "username"):
                if token == field or token.endswith("_" + field):
                    return field
    return "record"


def _now() -> str:
    # naive UTC text sorts correctly and is accepted by both MySQL and SQLite
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


def _as_utc(value) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_user_read(row) -> UserRead:
    # row is a Mapping with DB columns
    return UserRead(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        full_name=row["full_name"] or "",
        role=row["role"],
        created_at=_as_utc(row["created_at"]),
        updated_at=_as_utc(row["updated_at"]),
    )
