from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from postureguard.core.config import get_settings


def engine_options(database_url: str) -> dict[str, Any]:
    """Engine keyword arguments for the configured backend.

    Postgres gets a bounded asyncpg pool tagged with the application name.
    SQLite (tests, local tooling) gets a longer busy timeout so an inline
    evaluation started right after an inventory sync waits for the writer
    instead of failing with "database is locked".
    """
    settings = get_settings()
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    server_settings = {"application_name": "postureguard"}
    if settings.api_db_statement_timeout_ms > 0:
        server_settings["statement_timeout"] = str(int(settings.api_db_statement_timeout_ms))
    return {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "connect_args": {"server_settings": server_settings},
    }


settings = get_settings()
engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def bound_lock_wait(session: AsyncSession, seconds: float) -> None:
    # Caps row-lock waits for the rest of the current transaction; SQLite has no row locks.
    if session.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = max(1, int(seconds * 1000))
    await session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
