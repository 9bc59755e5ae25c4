from __future__ import annotations

import pytest

from postureguard.core.config import get_settings
from postureguard.persistence.db import SessionLocal, bound_lock_wait, engine_options


def test_sqlite_engine_waits_for_busy_writer() -> None:
    options = engine_options("sqlite+aiosqlite:///tmp/postureguard.db")
    assert options == {"connect_args": {"timeout": 30}}


def test_postgres_engine_uses_bounded_pool(monkeypatch) -> None:
    monkeypatch.setenv("API_DB_POOL_SIZE", "4")
    monkeypatch.setenv("API_DB_STATEMENT_TIMEOUT_MS", "15000")
    get_settings.cache_clear()
    options = engine_options("postgresql+asyncpg://db/postureguard")
    assert options["pool_size"] == 4
    assert options["pool_pre_ping"] is True
    server_settings = options["connect_args"]["server_settings"]
    assert server_settings == {"application_name": "postureguard", "statement_timeout": "15000"}


@pytest.mark.asyncio
async def test_lock_wait_bound_is_skipped_on_sqlite() -> None:
    async with SessionLocal() as session:
        await bound_lock_wait(session, 0.5)
        assert not session.in_transaction()
