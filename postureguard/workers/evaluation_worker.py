from __future__ import annotations

import logging

from arq.connections import RedisSettings

from postureguard.core.config import get_settings
from postureguard.core.logging import configure_logging
from postureguard.services.compliance.queue import EvaluationJobPayload, process_evaluation_job


logger = logging.getLogger(__name__)


async def evaluate_account(ctx, payload: dict) -> dict | None:
    # Validate payloads in the worker so the API/worker contract is enforced.
    job_payload = EvaluationJobPayload.model_validate(payload)
    settings = get_settings()
    job_id = ctx.get("job_id") or f"evaluate_account:{job_payload.account_id}"
    attempt = ctx.get("job_try", 1)
    summary = await process_evaluation_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_retries=settings.evaluation_max_retries,
    )
    return summary.as_dict() if summary is not None else None


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("evaluation_worker_started queue=%s", get_settings().evaluation_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("evaluation_worker_stopped")


class WorkerSettings:
    # Class attributes keep the arq CLI entrypoint working.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.evaluation_queue_name
    max_tries = settings.evaluation_max_retries
    functions = [evaluate_account]
    on_startup = _startup
    on_shutdown = _shutdown
