from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, get_db, load_account, load_resource, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.core.config import get_settings
from postureguard.persistence.repos import history as history_repo
from postureguard.persistence.repos import resources as resources_repo
from postureguard.persistence.repos import results as results_repo
from postureguard.persistence.repos import rules as rules_repo
from postureguard.services.scoring import (
    DIMENSIONS,
    ResourceTimeline,
    ScoreTimeline,
    drill_down,
    rule_breakdown,
    score_trend,
    tally,
)


router = APIRouter(tags=["reports"], responses=DEFAULT_ERROR_RESPONSES)


class ScoreFrameResponse(BaseModel):
    run_id: str
    evaluated_at: str
    score: int | None
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    total: int


class ScoreResponse(BaseModel):
    account_id: str
    latest: ScoreFrameResponse | None
    previous_score: int | None
    delta: int | None
    # Tally of the live results, which reflects acknowledgements made since the last run.
    current: dict[str, Any]
    rule_breakdown: list[dict[str, Any]]


class DrillDownResponse(BaseModel):
    key: str
    label: str
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    total: int
    score: int | None


class ResourceFrameResponse(BaseModel):
    run_id: str
    evaluated_at: str
    results: list[dict[str, Any]]


class ResourceHistoryResponse(BaseModel):
    resource_id: str
    frames: list[ResourceFrameResponse]
    transitions: list[dict[str, Any]]


class ScoreTimelineResponse(BaseModel):
    account_id: str
    at: str
    frame: ScoreFrameResponse | None
    previous: ScoreFrameResponse | None
    changes: dict[str, int | None] | None


def _score_frame(frame) -> ScoreFrameResponse:
    payload = asdict(frame)
    payload["evaluated_at"] = frame.evaluated_at.isoformat()
    return ScoreFrameResponse(**payload)


@router.get("/accounts/{account_id}/score", response_model=SuccessEnvelope[ScoreResponse] | ScoreResponse)
async def get_score(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    points = list(reversed(await history_repo.latest_score_points(db, account_id, limit=2)))
    trend = score_trend(points)
    timeline = ScoreTimeline.from_history(points)
    latest = timeline.latest()
    results = await results_repo.list_results(db, account_id)
    rules = {rule.id: rule for rule in await rules_repo.list_rules_for_account(db, account_id)}
    data = ScoreResponse(
        account_id=account_id,
        latest=_score_frame(latest) if latest is not None else None,
        previous_score=trend.previous,
        delta=trend.delta,
        current=tally(results).as_dict(),
        rule_breakdown=rule_breakdown(results, rules),
    )
    return success_response(request=request, data=data)


@router.get(
    "/accounts/{account_id}/score-history",
    response_model=SuccessEnvelope[list[ScoreFrameResponse]] | list[ScoreFrameResponse],
)
async def get_score_history(
    account_id: str,
    request: Request,
    days: int | None = Query(default=None, ge=1, le=3650),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Oldest first, one frame per evaluation run.
    await load_account(db, principal, account_id)
    window_days = days or get_settings().score_history_default_days
    since = datetime.now(timezone.utc) - timedelta(days=window_days)
    rows = await history_repo.list_score_history(db, account_id, since=since)
    timeline = ScoreTimeline.from_history(rows)
    return success_response(request=request, data=[_score_frame(frame) for frame in timeline])


@router.get(
    "/accounts/{account_id}/drilldown",
    response_model=SuccessEnvelope[list[DrillDownResponse]] | list[DrillDownResponse],
)
async def get_drilldown(
    account_id: str,
    request: Request,
    dimension: str = Query(default="resource_type"),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Worst groups first.
    if dimension not in DIMENSIONS:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "INVALID_DIMENSION",
                "message": f"Unsupported drill-down dimension: {dimension}",
                "allowed": list(DIMENSIONS),
            },
        )
    await load_account(db, principal, account_id)
    results = await results_repo.list_results(db, account_id)
    resources = {row.id: row for row in await resources_repo.list_resources(db, account_id)}
    rules = {row.id: row for row in await rules_repo.list_rules_for_account(db, account_id)}
    groups = drill_down(results, resources, rules, dimension)
    return success_response(request=request, data=[DrillDownResponse(**asdict(group)) for group in groups])


@router.get(
    "/resources/{resource_id}/compliance-history",
    response_model=SuccessEnvelope[ResourceHistoryResponse] | ResourceHistoryResponse,
)
async def get_resource_history(
    resource_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_resource(db, principal, resource_id)
    rows = await history_repo.list_resource_history(db, resource_id, limit=limit)
    timeline = ResourceTimeline.from_history(rows)
    data = ResourceHistoryResponse(
        resource_id=resource_id,
        frames=[
            ResourceFrameResponse(
                run_id=frame.run_id,
                evaluated_at=frame.evaluated_at.isoformat(),
                results=list(frame.results),
            )
            for frame in timeline
        ],
        transitions=[
            {"evaluated_at": item["evaluated_at"].isoformat(), "changes": item["changes"]}
            for item in timeline.transitions()
        ],
    )
    return success_response(request=request, data=data)


@router.get(
    "/accounts/{account_id}/score-timeline",
    response_model=SuccessEnvelope[ScoreTimelineResponse] | ScoreTimelineResponse,
)
async def get_score_timeline(
    account_id: str,
    request: Request,
    at: datetime | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Scrub to the last run at or before ``at`` and compare with the run before it.
    await load_account(db, principal, account_id)
    moment = at or datetime.now(timezone.utc)
    timeline = ScoreTimeline.from_history(await history_repo.list_score_history(db, account_id))
    index = timeline.index_at(moment)
    frame = previous = changes = None
    if index is not None:
        frame = _score_frame(timeline.frame(index))
        if index > 0:
            previous = _score_frame(timeline.frame(index - 1))
            changes = timeline.changes_between(index - 1, index)
    data = ScoreTimelineResponse(
        account_id=account_id,
        at=moment.isoformat(),
        frame=frame,
        previous=previous,
        changes=changes,
    )
    return success_response(request=request, data=data)
