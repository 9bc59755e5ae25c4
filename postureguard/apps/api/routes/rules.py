from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import Principal, audit, get_db, load_account, require_role
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.domain.conditions import COMPOSITE_CONDITION_TYPE
from postureguard.persistence.repos import rules as rules_repo
from postureguard.services.compliance.activation import (
    ActivationDecision,
    clear_rule_override,
    load_account_rule_set,
    toggle_rule,
)
from postureguard.services.compliance.registry import registered_specs
from postureguard.services.compliance.rules import (
    check_composite_config,
    create_rule,
    delete_rule,
    get_rule_for_account,
    update_rule,
)


router = APIRouter(tags=["rules"], responses=DEFAULT_ERROR_RESPONSES)


class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    description: str = ""
    condition_type: str
    condition_config: dict[str, Any] = Field(default_factory=dict)
    resource_types: list[str] | None = None
    severity: str = "warning"
    is_active: bool = True


class RulePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    description: str | None = None
    condition_type: str | None = None
    condition_config: dict[str, Any] | None = None
    resource_types: list[str] | None = None
    severity: str | None = None
    is_active: bool | None = None


class RuleResponse(BaseModel):
    id: str
    account_id: str | None
    name: str
    description: str
    resource_types: list[str]
    condition_type: str
    condition_config: dict[str, Any]
    severity: str
    is_active: bool
    is_builtin: bool
    # Effective state for the requesting account; absent outside an account view.
    effective_active: bool | None = None
    activation_source: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ToggleRequest(BaseModel):
    is_active: bool


class OverrideResponse(BaseModel):
    account_id: str
    rule_id: str
    is_active: bool
    applied_by_profile_id: str | None
    updated_by: str | None


class CompositeValidationRequest(BaseModel):
    account_id: str
    rule_id: str | None = None
    condition_config: dict[str, Any]


class CompositeValidationResponse(BaseModel):
    valid: bool
    error: str | None = None


class ConditionTypeResponse(BaseModel):
    condition_type: str
    applies_to: list[str] | None
    account_wide: bool


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_payload(row, decision: ActivationDecision | None = None) -> RuleResponse:
    return RuleResponse(
        id=row.id,
        account_id=row.account_id,
        name=row.name,
        description=row.description or "",
        resource_types=list(row.resource_types or []),
        condition_type=row.condition_type,
        condition_config=row.condition_config or {},
        severity=row.severity,
        is_active=row.is_active,
        is_builtin=row.is_builtin,
        effective_active=decision.is_active if decision is not None else None,
        activation_source=decision.source if decision is not None else None,
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


async def _load_rule(db: AsyncSession, principal: Principal, rule_id: str):
    rule = await rules_repo.get_rule(db, rule_id)
    if rule is None or (rule.account_id is not None and not principal.can_access(rule.account_id)):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Rule not found"})
    return rule


@router.get(
    "/accounts/{account_id}/rules",
    response_model=SuccessEnvelope[list[RuleResponse]] | list[RuleResponse],
)
async def list_rules(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Built-ins and custom rules with their effective activation for this account.
    await load_account(db, principal, account_id)
    rule_set = await load_account_rule_set(db, account_id)
    data = [_to_payload(rule, rule_set.plan.decision_for(rule.id)) for rule in rule_set.rules]
    return success_response(request=request, data=data)


@router.post(
    "/accounts/{account_id}/rules",
    status_code=201,
    response_model=SuccessEnvelope[RuleResponse] | RuleResponse,
)
async def create_account_rule(
    account_id: str,
    payload: RuleCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, account_id)
    rule = await create_rule(
        db,
        account_id=account_id,
        name=payload.name,
        description=payload.description,
        condition_type=payload.condition_type,
        condition_config=payload.condition_config,
        resource_types=payload.resource_types,
        severity=payload.severity,
        is_active=payload.is_active,
    )
    await db.commit()
    await db.refresh(rule)
    await audit(
        request, db, principal,
        account_id=account_id, event_type="rule.created", resource_type="rule", resource_id=rule.id,
        metadata={"condition_type": rule.condition_type},
    )
    return success_response(request=request, data=_to_payload(rule))


@router.get(
    "/rules/condition-types",
    response_model=SuccessEnvelope[list[ConditionTypeResponse]] | list[ConditionTypeResponse],
)
async def list_condition_types(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    data = [
        ConditionTypeResponse(
            condition_type=spec.condition_type,
            applies_to=sorted(spec.applies_to) if spec.applies_to is not None else None,
            account_wide=spec.account_wide,
        )
        for spec in registered_specs()
    ]
    data.append(ConditionTypeResponse(condition_type=COMPOSITE_CONDITION_TYPE, applies_to=None, account_wide=False))
    return success_response(request=request, data=data)


@router.post(
    "/rules/validate-composite",
    response_model=SuccessEnvelope[CompositeValidationResponse] | CompositeValidationResponse,
)
async def validate_composite(
    payload: CompositeValidationRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await load_account(db, principal, payload.account_id)
    error = await check_composite_config(
        db,
        account_id=payload.account_id,
        rule_id=payload.rule_id,
        condition_config=payload.condition_config,
    )
    return success_response(request=request, data=CompositeValidationResponse(valid=error is None, error=error))


@router.patch("/rules/{rule_id}", response_model=SuccessEnvelope[RuleResponse] | RuleResponse)
async def patch_rule(
    rule_id: str,
    payload: RulePatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rule = await _load_rule(db, principal, rule_id)
    changes = payload.model_dump(exclude_unset=True)
    await update_rule(db, rule, changes=changes, actor_role=principal.role)
    await db.commit()
    await db.refresh(rule)
    await audit(
        request, db, principal,
        account_id=rule.account_id, event_type="rule.updated", resource_type="rule", resource_id=rule.id,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_to_payload(rule))


@router.delete("/rules/{rule_id}", status_code=204)
async def remove_rule(
    rule_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> None:
    rule = await _load_rule(db, principal, rule_id)
    account_id = rule.account_id
    await delete_rule(db, rule, actor_role=principal.role)
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="rule.deleted", resource_type="rule", resource_id=rule_id,
    )


@router.post(
    "/accounts/{account_id}/rules/{rule_id}/toggle",
    response_model=SuccessEnvelope[OverrideResponse] | OverrideResponse,
)
async def toggle_account_rule(
    account_id: str,
    rule_id: str,
    payload: ToggleRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Overrides win over the rule default and the active profile.
    await load_account(db, principal, account_id)
    override = await toggle_rule(
        db, account_id=account_id, rule_id=rule_id, is_active=payload.is_active, actor_id=principal.actor_id
    )
    await db.commit()
    data = OverrideResponse(
        account_id=override.account_id,
        rule_id=override.rule_id,
        is_active=override.is_active,
        applied_by_profile_id=override.applied_by_profile_id,
        updated_by=override.updated_by,
    )
    await audit(
        request, db, principal,
        account_id=account_id, event_type="rule.override.set", resource_type="rule", resource_id=rule_id,
        metadata={"is_active": payload.is_active},
    )
    return success_response(request=request, data=data)


@router.delete("/accounts/{account_id}/rules/{rule_id}/override", status_code=204)
async def delete_account_rule_override(
    account_id: str,
    rule_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> None:
    await load_account(db, principal, account_id)
    await get_rule_for_account(db, account_id, rule_id)
    if not await clear_rule_override(db, account_id=account_id, rule_id=rule_id):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Override not found"})
    await db.commit()
    await audit(
        request, db, principal,
        account_id=account_id, event_type="rule.override.cleared", resource_type="rule", resource_id=rule_id,
    )
