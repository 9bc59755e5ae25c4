from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.conditions import COMPOSITE_CONDITION_TYPE
from postureguard.domain.models import ComplianceRule, EvaluationResult, ResultNote, RuleOverride
from postureguard.persistence.guards import account_predicate, visible_to_account


async def list_rules_for_account(session: AsyncSession, account_id: str) -> list[ComplianceRule]:
    # Built-ins plus the account's own custom rules, in a stable order.
    result = await session.execute(
        select(ComplianceRule)
        .where(visible_to_account(ComplianceRule, account_id))
        .order_by(ComplianceRule.is_builtin.desc(), ComplianceRule.created_at, ComplianceRule.id)
    )
    return list(result.scalars().all())


async def list_builtin_rules(session: AsyncSession) -> list[ComplianceRule]:
    result = await session.execute(
        select(ComplianceRule)
        .where(ComplianceRule.is_builtin.is_(True))
        .order_by(ComplianceRule.created_at, ComplianceRule.id)
    )
    return list(result.scalars().all())


async def get_rule(session: AsyncSession, rule_id: str) -> ComplianceRule | None:
    return await session.get(ComplianceRule, rule_id)


async def list_composite_rules(session: AsyncSession, account_id: str | None) -> list[ComplianceRule]:
    # account_id=None scans composites of every account (used when guarding global rules).
    stmt = select(ComplianceRule).where(ComplianceRule.condition_type == COMPOSITE_CONDITION_TYPE)
    if account_id is not None:
        stmt = stmt.where(visible_to_account(ComplianceRule, account_id))
    result = await session.execute(stmt.order_by(ComplianceRule.created_at, ComplianceRule.id))
    return list(result.scalars().all())


async def list_overrides(session: AsyncSession, account_id: str) -> list[RuleOverride]:
    result = await session.execute(
        select(RuleOverride).where(account_predicate(RuleOverride, account_id)).order_by(RuleOverride.id)
    )
    return list(result.scalars().all())


async def get_override(session: AsyncSession, account_id: str, rule_id: str) -> RuleOverride | None:
    result = await session.execute(
        select(RuleOverride).where(
            account_predicate(RuleOverride, account_id),
            RuleOverride.rule_id == rule_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_override(
    session: AsyncSession,
    *,
    account_id: str,
    rule_id: str,
    is_active: bool,
    applied_by_profile_id: str | None,
    updated_by: str | None,
) -> RuleOverride:
    override = await get_override(session, account_id, rule_id)
    if override is None:
        override = RuleOverride(account_id=account_id, rule_id=rule_id, is_active=is_active)
        session.add(override)
    override.is_active = is_active
    override.applied_by_profile_id = applied_by_profile_id
    override.updated_by = updated_by
    await session.flush()
    return override


async def delete_override(session: AsyncSession, account_id: str, rule_id: str) -> bool:
    result = await session.execute(
        delete(RuleOverride).where(
            account_predicate(RuleOverride, account_id),
            RuleOverride.rule_id == rule_id,
        )
    )
    return bool(result.rowcount)


async def delete_rule_cascade(session: AsyncSession, rule: ComplianceRule) -> None:
    # Live results, notes and overrides go with the rule; history rows are kept as written.
    result_ids = select(EvaluationResult.id).where(EvaluationResult.rule_id == rule.id)
    await session.execute(delete(ResultNote).where(ResultNote.result_id.in_(result_ids)))
    await session.execute(delete(EvaluationResult).where(EvaluationResult.rule_id == rule.id))
    await session.execute(delete(RuleOverride).where(RuleOverride.rule_id == rule.id))
    await session.delete(rule)
    await session.flush()
