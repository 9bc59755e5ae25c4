from __future__ import annotations

import asyncio
import logging
from typing import Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from postureguard.core.config import get_settings
from postureguard.core.errors import ConcurrencyConflictError, EvaluationRunError, NotFoundError
from postureguard.persistence.db import SessionLocal
from postureguard.services.compliance.orchestrator import EvaluationSummary, run_evaluation


logger = logging.getLogger(__name__)

EVALUATION_JOB_NAME = "evaluate_account"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # arq's queue naming convention, for depth checks.
    return f"arq:queue:{queue_name}"


class EvaluationJobPayload(BaseModel):
    account_id: str
    trigger: Literal["manual", "sync", "schedule"] = "manual"
    actor_id: str | None = None
    request_id: str | None = None


async def get_redis_pool():
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Pools are loop-bound; drop the stale one.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.evaluation_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals that redis is unreachable.
    settings = get_settings()
    if settings.evaluation_execution_mode.lower() == "inline":
        return 0
    try:
        redis = await get_redis_pool()
        return int(await redis.zcard(_queue_key(settings.evaluation_queue_name)))
    except Exception:  # noqa: BLE001 - health checks report degraded redis
        return None


async def enqueue_evaluation(payload: EvaluationJobPayload) -> str:
    """Queue an account evaluation, or run it immediately in inline mode."""
    settings = get_settings()
    job_id = f"{EVALUATION_JOB_NAME}:{payload.account_id}:{uuid4().hex}"
    if settings.evaluation_execution_mode.lower() == "inline":
        await _run_inline_job(payload, job_id=job_id, max_retries=settings.evaluation_max_retries)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        EVALUATION_JOB_NAME,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.evaluation_queue_name,
    )
    logger.info("evaluation_job_enqueued account_id=%s job_id=%s trigger=%s", payload.account_id, job_id, payload.trigger)
    return job.job_id if job else job_id


async def process_evaluation_job(
    payload: EvaluationJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_retries: int,
) -> EvaluationSummary | None:
    # Shared by the arq worker and inline mode.
    try:
        async with SessionLocal() as session:
            return await run_evaluation(
                session,
                payload.account_id,
                trigger=payload.trigger,
                wait=True,
                actor_id=payload.actor_id,
            )
    except ConcurrencyConflictError as exc:
        if attempt < max_retries:
            # Another run holds the account; try again shortly.
            raise Retry(defer=attempt * 5) from exc
        logger.warning("evaluation_job_gave_up account_id=%s job_id=%s", payload.account_id, job_id)
        return None
    except NotFoundError:
        logger.warning("evaluation_job_account_missing account_id=%s job_id=%s", payload.account_id, job_id)
        return None
    except EvaluationRunError:
        # The run row already records the failure.
        logger.exception("evaluation_job_failed account_id=%s job_id=%s", payload.account_id, job_id)
        return None


async def _run_inline_job(payload: EvaluationJobPayload, *, job_id: str, max_retries: int) -> None:
    # Mimic worker retries without redis.
    attempt = 1
    while True:
        try:
            await process_evaluation_job(payload, job_id=job_id, attempt=attempt, max_retries=max_retries)
            return
        except Retry:
            attempt += 1
