from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, audit, get_db, load_account, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.persistence.repos import results as results_repo
from postureguard.services.compliance.findings import (
    acknowledge_result,
    add_result_note,
    unacknowledge_result,
)


router = APIRouter(tags=["results"], responses=DEFAULT_ERROR_RESPONSES)


class ResultResponse(BaseModel):
    id: str
    account_id: str
    rule_id: str
    resource_id: str | None
    status: str
    detail: str | None
    acknowledged: bool
    acknowledged_at: str | None
    acknowledged_by: str | None
    acknowledged_note: str | None
    run_id: str | None
    evaluated_at: str | None


class AcknowledgeRequest(BaseModel):
    note: str | None = Field(default=None, max_length=4000)


class NoteRequest(BaseModel):
    note: str = Field(min_length=1, max_length=4000)


class NoteResponse(BaseModel):
    id: int
    result_id: str
    note: str
    created_by: str | None
    created_at: str | None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_payload(row) -> ResultResponse:
    return ResultResponse(
        id=row.id,
        account_id=row.account_id,
        rule_id=row.rule_id,
        resource_id=row.resource_id,
        status=row.status,
        detail=row.detail,
        acknowledged=row.acknowledged,
        acknowledged_at=_iso(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        acknowledged_note=row.acknowledged_note,
        run_id=row.run_id,
        evaluated_at=_iso(row.evaluated_at),
    )


def _note_payload(row) -> NoteResponse:
    return NoteResponse(
        id=row.id,
        result_id=row.result_id,
        note=row.note,
        created_by=row.created_by,
        created_at=_iso(row.created_at),
    )


async def _load_result(db: AsyncSession, principal: Principal, result_id: str):
    result = await results_repo.get_result(db, result_id)
    if result is None or not principal.can_access(result.account_id):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Result not found"})
    return result


@router.get(
    "/accounts/{account_id}/results",
    response_model=SuccessEnvelope[list[ResultResponse]] | list[ResultResponse],
)
async def list_results(
    account_id: str,
    request: Request,
    status: Literal["compliant", "non_compliant", "not_applicable"] | None = Query(default=None),
    acknowledged: bool | None = Query(default=None),
    rule_id: str | None = Query(default=None),
    resource_id: str | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    rows = await results_repo.list_results(
        db,
        account_id,
        status=status,
        acknowledged=acknowledged,
        rule_id=rule_id,
        resource_id=resource_id,
    )
    return success_response(request=request, data=[_to_payload(row) for row in rows])


@router.post(
    "/results/{result_id}/acknowledge",
    response_model=SuccessEnvelope[ResultResponse] | ResultResponse,
)
async def acknowledge(
    result_id: str,
    request: Request,
    payload: AcknowledgeRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Acknowledged findings stop counting against the score until resolved.
    result = await _load_result(db, principal, result_id)
    note = payload.note if payload is not None else None
    await acknowledge_result(db, result, actor_id=principal.actor_id, note=note)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=result.account_id, event_type="result.acknowledged", resource_type="result",
        resource_id=result_id, metadata={"rule_id": result.rule_id, "has_note": bool(note)},
    )
    return success_response(request=request, data=_to_payload(result))


@router.delete(
    "/results/{result_id}/acknowledge",
    response_model=SuccessEnvelope[ResultResponse] | ResultResponse,
)
async def unacknowledge(
    result_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await _load_result(db, principal, result_id)
    await unacknowledge_result(db, result)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=result.account_id, event_type="result.unacknowledged", resource_type="result",
        resource_id=result_id,
    )
    return success_response(request=request, data=_to_payload(result))


@router.get(
    "/results/{result_id}/notes",
    response_model=SuccessEnvelope[list[NoteResponse]] | list[NoteResponse],
)
async def list_notes(
    result_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _load_result(db, principal, result_id)
    rows = await results_repo.list_notes(db, result_id)
    return success_response(request=request, data=[_note_payload(row) for row in rows])


@router.post(
    "/results/{result_id}/notes",
    status_code=201,
    response_model=SuccessEnvelope[NoteResponse] | NoteResponse,
)
async def create_note(
    result_id: str,
    payload: NoteRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await _load_result(db, principal, result_id)
    row = await add_result_note(db, result, note=payload.note, actor_id=principal.actor_id)
    await db.commit()
    await db.refresh(row)
    await audit(
        request, db, principal,
        account_id=result.account_id, event_type="result.note.added", resource_type="result",
        resource_id=result_id,
    )
    return success_response(request=request, data=_note_payload(row))
