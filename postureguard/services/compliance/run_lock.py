from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from postureguard.core.config import get_settings
from postureguard.core.errors import ConcurrencyConflictError


logger = logging.getLogger(__name__)

RUN_LOCK_KEY_PREFIX = "postureguard:evaluation:lock"

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_local_locks: dict[str, asyncio.Lock] = {}
_local_owners: dict[str, str] = {}


@dataclass(slots=True)
class RunLock:
    account_id: str
    token: str
    redis: Any | None
    local: bool
    renewal: asyncio.Task | None = None


def run_lock_key(account_id: str) -> str:
    return f"{RUN_LOCK_KEY_PREFIX}:{account_id}"


def _get_redis() -> Redis | None:
    # One client per event loop; tests and scripts may run several loops in a process.
    settings = get_settings()
    if settings.evaluation_lock_backend.lower() != "redis":
        return None
    global _redis_client, _redis_loop
    loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_loop is not loop:
        _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = loop
    return _redis_client


async def _try_local(account_id: str, token: str) -> RunLock | None:
    lock = _local_locks.setdefault(account_id, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_owners[account_id] = token
    return RunLock(account_id=account_id, token=token, redis=None, local=True)


def _lease_ttl_s() -> int:
    return max(5, int(get_settings().evaluation_lock_ttl_s))


async def _try_acquire(account_id: str, token: str) -> RunLock | None:
    redis = _get_redis()
    if redis is not None:
        try:
            acquired = await redis.set(run_lock_key(account_id), token, nx=True, ex=_lease_ttl_s())
        except RedisError as exc:
            # The account row lock taken by the pass still serializes runs across processes.
            logger.warning("evaluation_lock_redis_unavailable account_id=%s", account_id, exc_info=exc)
        else:
            if not acquired:
                return None
            lock = RunLock(account_id=account_id, token=token, redis=redis, local=False)
            lock.renewal = asyncio.create_task(_keep_lease_alive(lock))
            return lock
    return await _try_local(account_id, token)


async def renew_run_lock(lock: RunLock) -> bool:
    """Extend the redis lease while this caller still owns it.

    Returns False once the lease is lost, either to expiry or to another owner.
    """
    if lock.local or lock.redis is None:
        return True
    key = run_lock_key(lock.account_id)
    try:
        current = await lock.redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value != lock.token:
            return False
        await lock.redis.expire(key, _lease_ttl_s())
    except RedisError as exc:
        logger.warning("evaluation_lock_renew_failed account_id=%s", lock.account_id, exc_info=exc)
        return False
    return True


async def _keep_lease_alive(lock: RunLock) -> None:
    # Refresh well before expiry so long passes keep the lease.
    interval = max(1.0, _lease_ttl_s() / 3)
    while True:
        await asyncio.sleep(interval)
        if not await renew_run_lock(lock):
            logger.warning("evaluation_lock_lease_lost account_id=%s", lock.account_id)
            return


async def acquire_run_lock(account_id: str, *, wait: bool = False) -> RunLock:
    """Take the per-account evaluation lock or raise ConcurrencyConflictError.

    With ``wait`` the caller polls until ``evaluation_lock_wait_s`` elapses.
    """
    settings = get_settings()
    token = uuid4().hex
    deadline = time.monotonic() + max(0.0, float(settings.evaluation_lock_wait_s))
    while True:
        lock = await _try_acquire(account_id, token)
        if lock is not None:
            return lock
        if not wait or time.monotonic() >= deadline:
            raise ConcurrencyConflictError(f"An evaluation is already running for account {account_id}")
        await asyncio.sleep(max(0.01, float(settings.evaluation_lock_poll_interval_s)))


async def release_run_lock(lock: RunLock) -> None:
    # Release only while this caller still owns the token.
    if lock.renewal is not None:
        renewal, lock.renewal = lock.renewal, None
        renewal.cancel()
        try:
            await renewal
        except asyncio.CancelledError:
            pass
    if lock.local:
        local = _local_locks.get(lock.account_id)
        if local is not None and local.locked() and _local_owners.get(lock.account_id) == lock.token:
            _local_owners.pop(lock.account_id, None)
            local.release()
        return
    if lock.redis is None:
        return
    key = run_lock_key(lock.account_id)
    try:
        current = await lock.redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(key)
    except RedisError as exc:
        # The TTL frees the key if the delete never lands.
        logger.warning("evaluation_lock_release_failed account_id=%s", lock.account_id, exc_info=exc)


def is_locally_held(account_id: str) -> bool:
    lock = _local_locks.get(account_id)
    return bool(lock is not None and lock.locked() and account_id in _local_owners)
