from __future__ import annotations

import pytest
from redis.exceptions import RedisError
from sqlalchemy.dialects import postgresql

from postureguard.core.errors import ConcurrencyConflictError
from postureguard.persistence.repos.accounts import account_lock_statement
from postureguard.services.compliance import run_lock
from postureguard.services.compliance.run_lock import (
    acquire_run_lock,
    is_locally_held,
    release_run_lock,
    renew_run_lock,
    run_lock_key,
)


class _FakeRedis:
    # Minimal async stand-in for the redis commands the run lock issues.
    def __init__(self, *, down: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.down = down

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None):
        if self.down:
            raise RedisError("connection refused")
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key: str):
        return self.values.get(key)

    async def expire(self, key: str, ttl: int) -> bool:
        self.ttls[key] = ttl
        return True

    async def delete(self, key: str) -> int:
        self.values.pop(key, None)
        return 1


@pytest.mark.asyncio
async def test_redis_lease_is_renewed_only_while_owned(monkeypatch) -> None:
    fake = _FakeRedis()
    monkeypatch.setattr(run_lock, "_get_redis", lambda: fake)
    key = run_lock_key("acct-lease")

    lock = await acquire_run_lock("acct-lease")
    assert lock.local is False
    assert lock.renewal is not None
    assert fake.ttls[key] == 300

    fake.ttls[key] = 1
    assert await renew_run_lock(lock) is True
    assert fake.ttls[key] == 300

    # Lease expired and another worker took the key.
    fake.values[key] = "other-owner"
    assert await renew_run_lock(lock) is False

    await release_run_lock(lock)
    assert lock.renewal is None
    assert fake.values[key] == "other-owner"


@pytest.mark.asyncio
async def test_busy_redis_lease_rejects_second_run(monkeypatch) -> None:
    fake = _FakeRedis()
    monkeypatch.setattr(run_lock, "_get_redis", lambda: fake)
    lock = await acquire_run_lock("acct-busy-lease")
    try:
        with pytest.raises(ConcurrencyConflictError):
            await acquire_run_lock("acct-busy-lease")
    finally:
        await release_run_lock(lock)
    assert run_lock_key("acct-busy-lease") not in fake.values


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_process_lock(monkeypatch) -> None:
    monkeypatch.setattr(run_lock, "_get_redis", lambda: _FakeRedis(down=True))
    lock = await acquire_run_lock("acct-outage")
    try:
        assert lock.local is True
        assert lock.renewal is None
        assert is_locally_held("acct-outage")
        with pytest.raises(ConcurrencyConflictError):
            await acquire_run_lock("acct-outage")
    finally:
        await release_run_lock(lock)
    assert not is_locally_held("acct-outage")


def test_account_row_lock_is_select_for_update() -> None:
    compiled = str(account_lock_statement("acct-1").compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in compiled
    assert "accounts" in compiled
