from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, audit, get_db, load_account, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.persistence.repos import profiles as profiles_repo
from postureguard.services.compliance.activation import clear_active_profile, set_active_profile


router = APIRouter(tags=["profiles"], responses=DEFAULT_ERROR_RESPONSES)


class ProfileResponse(BaseModel):
    id: str
    slug: str
    name: str
    description: str
    tier: str
    version: int
    rule_condition_types: list[str]
    is_builtin: bool


class AccountProfileResponse(BaseModel):
    account_id: str
    profile: ProfileResponse | None
    activated_by: str | None = None
    activated_at: str | None = None


class ProfileActivationRequest(BaseModel):
    # Profile id or slug.
    profile_id: str


class ActivationCountsResponse(BaseModel):
    enabled: int
    disabled: int


def _to_payload(row) -> ProfileResponse:
    return ProfileResponse(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description or "",
        tier=row.tier,
        version=row.version,
        rule_condition_types=list(row.rule_condition_types or []),
        is_builtin=row.is_builtin,
    )


@router.get("/profiles", response_model=SuccessEnvelope[list[ProfileResponse]] | list[ProfileResponse])
async def list_profiles(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await profiles_repo.list_profiles(db)
    return success_response(request=request, data=[_to_payload(row) for row in rows])


@router.get(
    "/accounts/{account_id}/profile",
    response_model=SuccessEnvelope[AccountProfileResponse] | AccountProfileResponse,
)
async def get_account_profile(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    assignment = await profiles_repo.get_account_profile(db, account_id)
    profile = await profiles_repo.get_active_profile(db, account_id)
    data = AccountProfileResponse(
        account_id=account_id,
        profile=_to_payload(profile) if profile is not None else None,
        activated_by=assignment.activated_by if assignment is not None else None,
        activated_at=assignment.activated_at.isoformat() if assignment is not None and assignment.activated_at else None,
    )
    return success_response(request=request, data=data)


@router.put(
    "/accounts/{account_id}/profile",
    response_model=SuccessEnvelope[ActivationCountsResponse] | ActivationCountsResponse,
)
async def put_account_profile(
    account_id: str,
    payload: ProfileActivationRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Replaces any previous profile; overrides are kept and still win.
    await load_account(db, principal, account_id)
    counts = await set_active_profile(
        db, account_id=account_id, profile_id=payload.profile_id, actor_id=principal.actor_id
    )
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="profile.activated", resource_type="profile",
        resource_id=payload.profile_id, metadata=counts,
    )
    return success_response(request=request, data=ActivationCountsResponse(**counts))


@router.delete(
    "/accounts/{account_id}/profile",
    response_model=SuccessEnvelope[ActivationCountsResponse] | ActivationCountsResponse,
)
async def delete_account_profile(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Rules fall back to their own defaults.
    await load_account(db, principal, account_id)
    counts = await clear_active_profile(db, account_id=account_id)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="profile.cleared", resource_type="profile", metadata=counts,
    )
    return success_response(request=request, data=ActivationCountsResponse(**counts))
