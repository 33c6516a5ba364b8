import os
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

# e.g. mysql+aiomysql://users_svc:secret@/users_db?unix_socket=/cloudsql/project:region:users
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./users.db")

USERS_DDL = """
    CREATE TABLE IF NOT EXISTS users (
        id            CHAR(36)     NOT NULL PRIMARY KEY,
        username      VARCHAR(30)  NOT NULL UNIQUE,
        email         VARCHAR(255) NOT NULL UNIQUE,
        full_name     VARCHAR(255) NOT NULL DEFAULT '',
        role          VARCHAR(16)  NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        created_at    DATETIME     NOT NULL,
        updated_at    DATETIME     NOT NULL
    )
"""


def make_engine(url: str | None = None) -> AsyncEngine:
    return create_async_engine(
        url or DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=1800,  # refresh stale conns
    )


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(USERS_DDL))


async def ping(engine: AsyncEngine) -> bool:
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT 1"))
        return bool(result.scalar())
