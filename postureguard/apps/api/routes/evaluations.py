from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, get_db, load_account, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, get_request_id, success_response
from postureguard.core.config import get_settings
from postureguard.persistence.repos import history as history_repo
from postureguard.services.compliance.orchestrator import TRIGGER_MANUAL, run_evaluation
from postureguard.services.compliance.queue import EvaluationJobPayload, enqueue_evaluation


router = APIRouter(tags=["evaluations"], responses=DEFAULT_ERROR_RESPONSES)


class EvaluationRequest(BaseModel):
    # Wait for a busy account instead of failing with 409.
    wait: bool = False
    # Hand the run to the worker queue and return immediately.
    queued: bool = False


class EvaluationSummaryResponse(BaseModel):
    run_id: str
    account_id: str
    trigger: str
    total: int
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    score: int | None
    rules_evaluated: int
    evaluated_at: str
    errors: list[dict[str, Any]]


class EvaluationQueuedResponse(BaseModel):
    account_id: str
    job_id: str
    status: str = "queued"


class EvaluationRunResponse(BaseModel):
    id: str
    account_id: str
    status: str
    trigger: str
    started_at: str | None
    completed_at: str | None
    summary: dict[str, Any] | None
    error_message: str | None


def _ensure_enabled() -> None:
    if not get_settings().compliance_enabled:
        raise HTTPException(
            status_code=503,
            detail={"code": "COMPLIANCE_DISABLED", "message": "Compliance evaluation is disabled"},
        )


def _run_payload(row) -> EvaluationRunResponse:
    return EvaluationRunResponse(
        id=row.id,
        account_id=row.account_id,
        status=row.status,
        trigger=row.trigger,
        started_at=row.started_at.isoformat() if row.started_at else None,
        completed_at=row.completed_at.isoformat() if row.completed_at else None,
        summary=row.summary_json,
        error_message=row.error_message,
    )


@router.post(
    "/accounts/{account_id}/evaluations",
    response_model=(
        SuccessEnvelope[EvaluationSummaryResponse]
        | SuccessEnvelope[EvaluationQueuedResponse]
        | EvaluationSummaryResponse
        | EvaluationQueuedResponse
    ),
)
async def trigger_evaluation(
    account_id: str,
    request: Request,
    response: Response,
    payload: EvaluationRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ensure_enabled()
    await load_account(db, principal, account_id)
    payload = payload or EvaluationRequest()
    if payload.queued:
        job_id = await enqueue_evaluation(
            EvaluationJobPayload(
                account_id=account_id,
                trigger=TRIGGER_MANUAL,
                actor_id=principal.actor_id,
                request_id=get_request_id(request),
            )
        )
        response.status_code = 202
        return success_response(request=request, data=EvaluationQueuedResponse(account_id=account_id, job_id=job_id))

    summary = await run_evaluation(
        db, account_id, trigger=TRIGGER_MANUAL, wait=payload.wait, actor_id=principal.actor_id
    )
    return success_response(request=request, data=EvaluationSummaryResponse(**summary.as_dict()))


@router.get(
    "/accounts/{account_id}/evaluations",
    response_model=SuccessEnvelope[list[EvaluationRunResponse]] | list[EvaluationRunResponse],
)
async def list_evaluation_runs(
    account_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Newest first.
    await load_account(db, principal, account_id)
    rows = await history_repo.list_runs(db, account_id, limit=limit)
    return success_response(request=request, data=[_run_payload(row) for row in rows])
