from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, audit, get_db, load_account, load_resource, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.core.config import get_settings
from postureguard.persistence.repos import resources as resources_repo
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services.inventory import ObservedResource, record_inventory_sync


router = APIRouter(tags=["inventory"], responses=DEFAULT_ERROR_RESPONSES)


class InventorySyncRequest(BaseModel):
    resources: list[ObservedResource] = Field(default_factory=list)
    # Limit removal detection to these types for partial collector runs.
    resource_types: list[str] | None = None
    trigger_evaluation: bool = True


class SyncReportResponse(BaseModel):
    account_id: str
    created: int
    changed: int
    unchanged: int
    removed: int
    change_events: list[dict[str, Any]]
    evaluation_job_id: str | None


class ResourceResponse(BaseModel):
    id: str
    account_id: str
    resource_id: str
    resource_type: str
    label: str
    region: str | None
    status: str | None
    plan_type: str | None
    monthly_cost: float | None
    specs: dict[str, Any]
    last_synced_at: str | None


class SnapshotResponse(BaseModel):
    id: int
    resource_id: str
    resource_type: str
    label: str
    region: str | None
    status: str | None
    plan_type: str | None
    monthly_cost: float | None
    specs: dict[str, Any]
    diff: dict[str, Any] | None
    synced_at: str | None


def _resource_payload(row) -> ResourceResponse:
    return ResourceResponse(
        id=row.id,
        account_id=row.account_id,
        resource_id=row.resource_id,
        resource_type=row.resource_type,
        label=row.label,
        region=row.region,
        status=row.status,
        plan_type=row.plan_type,
        monthly_cost=row.monthly_cost,
        specs=row.specs or {},
        last_synced_at=row.last_synced_at.isoformat() if row.last_synced_at else None,
    )


def _snapshot_payload(row) -> SnapshotResponse:
    return SnapshotResponse(
        id=row.id,
        resource_id=row.resource_id,
        resource_type=row.resource_type,
        label=row.label,
        region=row.region,
        status=row.status,
        plan_type=row.plan_type,
        monthly_cost=row.monthly_cost,
        specs=row.specs or {},
        diff=row.diff,
        synced_at=row.synced_at.isoformat() if row.synced_at else None,
    )


def _limit(value: int | None) -> int:
    cap = get_settings().snapshot_list_limit
    return min(value or cap, cap)


@router.post(
    "/accounts/{account_id}/inventory/sync",
    response_model=SuccessEnvelope[SyncReportResponse] | SyncReportResponse,
)
async def sync_inventory(
    account_id: str,
    payload: InventorySyncRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    report = await record_inventory_sync(
        db,
        account_id,
        payload.resources,
        resource_types=payload.resource_types,
        trigger_evaluation=payload.trigger_evaluation,
    )
    await audit(
        request, db, principal,
        account_id=account_id, event_type="inventory.synced", resource_type="account", resource_id=account_id,
        metadata={
            "created": report.created,
            "changed": report.changed,
            "removed": report.removed,
            "evaluation_job_id": report.evaluation_job_id,
        },
    )
    return success_response(request=request, data=SyncReportResponse(**report.as_dict()))


@router.get(
    "/accounts/{account_id}/resources",
    response_model=SuccessEnvelope[list[ResourceResponse]] | list[ResourceResponse],
)
async def list_resources(
    account_id: str,
    request: Request,
    resource_type: str | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    rows = await resources_repo.list_resources(db, account_id, resource_type=resource_type)
    return success_response(request=request, data=[_resource_payload(row) for row in rows])


@router.get(
    "/accounts/{account_id}/snapshots",
    response_model=SuccessEnvelope[list[SnapshotResponse]] | list[SnapshotResponse],
)
async def list_account_snapshots(
    account_id: str,
    request: Request,
    changes_only: bool = Query(default=False),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Newest first; changes_only hides first-seen snapshots.
    await load_account(db, principal, account_id)
    rows = await snapshots_repo.list_account_snapshots(
        db, account_id, changes_only=changes_only, limit=_limit(limit)
    )
    return success_response(request=request, data=[_snapshot_payload(row) for row in rows])


@router.get(
    "/resources/{resource_id}/snapshots",
    response_model=SuccessEnvelope[list[SnapshotResponse]] | list[SnapshotResponse],
)
async def list_resource_snapshots(
    resource_id: str,
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_resource(db, principal, resource_id)
    rows = await snapshots_repo.list_resource_snapshots(db, resource_id, limit=_limit(limit))
    return success_response(request=request, data=[_snapshot_payload(row) for row in rows])


@router.delete("/resources/{resource_id}", status_code=204)
async def delete_resource(
    resource_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> None:
    # Removes the resource with its results, snapshots and history.
    resource = await load_resource(db, principal, resource_id)
    account_id = resource.account_id
    await resources_repo.delete_resource_cascade(db, resource)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="resource.deleted", resource_type="resource", resource_id=resource_id,
    )
