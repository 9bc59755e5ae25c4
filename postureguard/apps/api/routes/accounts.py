from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, audit, get_db, load_account, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.persistence.repos import accounts as accounts_repo


router = APIRouter(prefix="/accounts", tags=["accounts"], responses=DEFAULT_ERROR_RESPONSES)


class AccountUser(BaseModel):
    username: str
    user_type: str | None = None
    tfa_enabled: bool = False


class AccountLogin(BaseModel):
    username: str
    ip: str
    datetime: str | None = None


class AccountCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    settings: dict[str, Any] = Field(default_factory=dict)


class AccountSettingsPatch(BaseModel):
    # Only the keys that are present replace the stored ones.
    users: list[AccountUser] | None = None
    logins: list[AccountLogin] | None = None


class AccountResponse(BaseModel):
    id: str
    name: str
    settings: dict[str, Any]
    last_sync_at: str | None
    last_evaluated_at: str | None
    created_at: str | None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_payload(row) -> AccountResponse:
    return AccountResponse(
        id=row.id,
        name=row.name,
        settings=row.settings_json or {},
        last_sync_at=_iso(row.last_sync_at),
        last_evaluated_at=_iso(row.last_evaluated_at),
        created_at=_iso(row.created_at),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[AccountResponse] | AccountResponse)
async def create_account(
    payload: AccountCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account_id = payload.id or str(uuid4())
    if await accounts_repo.get_account(db, account_id) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "ACCOUNT_EXISTS", "message": f"Account {account_id} already exists"},
        )
    row = await accounts_repo.create_account(
        db, account_id=account_id, name=payload.name, settings_json=payload.settings
    )
    await db.commit()
    await db.refresh(row)
    await audit(
        request, db, principal,
        account_id=row.id, event_type="account.created", resource_type="account", resource_id=row.id,
    )
    return success_response(request=request, data=_to_payload(row))


@router.get("", response_model=SuccessEnvelope[list[AccountResponse]] | list[AccountResponse])
async def list_accounts(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await accounts_repo.list_accounts(db)
    visible = [row for row in rows if principal.can_access(row.id)]
    return success_response(request=request, data=[_to_payload(row) for row in visible])


@router.get("/{account_id}", response_model=SuccessEnvelope[AccountResponse] | AccountResponse)
async def get_account(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await load_account(db, principal, account_id)
    return success_response(request=request, data=_to_payload(row))


@router.patch("/{account_id}/settings", response_model=SuccessEnvelope[AccountResponse] | AccountResponse)
async def patch_settings(
    account_id: str,
    payload: AccountSettingsPatch,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await load_account(db, principal, account_id)
    patch = payload.model_dump(exclude_unset=True, exclude_none=True)
    await accounts_repo.update_settings(db, row, patch)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="account.settings.updated", resource_type="account",
        resource_id=account_id, metadata={"keys": sorted(patch)},
    )
    return success_response(request=request, data=_to_payload(row))
