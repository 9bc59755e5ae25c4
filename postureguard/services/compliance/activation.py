from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import NotFoundError
from postureguard.domain.models import ComplianceProfile, ComplianceRule, RuleOverride
from postureguard.persistence.repos import profiles as profiles_repo
from postureguard.persistence.repos import rules as rules_repo


SOURCE_DEFAULT = "default"
SOURCE_PROFILE = "profile"
SOURCE_OVERRIDE = "override"


@dataclass(frozen=True)
class ActivationDecision:
    rule_id: str
    is_active: bool
    source: str


@dataclass(frozen=True)
class ActivationPlan:
    profile_id: str | None
    decisions: tuple[ActivationDecision, ...]

    def active_rule_ids(self) -> list[str]:
        return [decision.rule_id for decision in self.decisions if decision.is_active]

    def decision_for(self, rule_id: str) -> ActivationDecision | None:
        return next((decision for decision in self.decisions if decision.rule_id == rule_id), None)

    def as_map(self) -> dict[str, bool]:
        return {decision.rule_id: decision.is_active for decision in self.decisions}


def resolve_activation(
    rules: Iterable[Any],
    profile: Any | None,
    overrides: Mapping[str, bool] | Iterable[Any],
) -> ActivationPlan:
    """Compute each rule's effective activation.

    Rule default, then the active profile (enables exactly its condition types,
    disables everything else), then the per-account override, which always wins.
    ``overrides`` is either ``{rule_id: is_active}`` or a list of override rows.
    """
    if isinstance(overrides, Mapping):
        override_map = dict(overrides)
    else:
        override_map = {row.rule_id: bool(row.is_active) for row in overrides}
    profile_types = set(profile.rule_condition_types or []) if profile is not None else None

    decisions: list[ActivationDecision] = []
    for rule in rules:
        is_active = bool(rule.is_active)
        source = SOURCE_DEFAULT
        if profile_types is not None:
            is_active = rule.condition_type in profile_types
            source = SOURCE_PROFILE
        if rule.id in override_map:
            is_active = override_map[rule.id]
            source = SOURCE_OVERRIDE
        decisions.append(ActivationDecision(rule_id=rule.id, is_active=is_active, source=source))
    return ActivationPlan(profile_id=profile.id if profile is not None else None, decisions=tuple(decisions))


@dataclass(frozen=True)
class AccountRuleSet:
    rules: tuple[ComplianceRule, ...]
    profile: ComplianceProfile | None
    plan: ActivationPlan

    def active_rules(self) -> list[ComplianceRule]:
        active = set(self.plan.active_rule_ids())
        return [rule for rule in self.rules if rule.id in active]


async def load_account_rule_set(session: AsyncSession, account_id: str) -> AccountRuleSet:
    rules = await rules_repo.list_rules_for_account(session, account_id)
    profile = await profiles_repo.get_active_profile(session, account_id)
    overrides = await rules_repo.list_overrides(session, account_id)
    plan = resolve_activation(rules, profile, overrides)
    return AccountRuleSet(rules=tuple(rules), profile=profile, plan=plan)


async def resolve_active_rules(session: AsyncSession, account_id: str) -> list[ComplianceRule]:
    rule_set = await load_account_rule_set(session, account_id)
    return rule_set.active_rules()


def _counts(before: Mapping[str, bool], after: Mapping[str, bool]) -> dict[str, int]:
    enabled = sum(1 for rule_id, active in after.items() if active and not before.get(rule_id, False))
    disabled = sum(1 for rule_id, active in after.items() if not active and before.get(rule_id, False))
    return {"enabled": enabled, "disabled": disabled}


async def set_active_profile(
    session: AsyncSession,
    *,
    account_id: str,
    profile_id: str,
    actor_id: str | None,
) -> dict[str, int]:
    # Returns how many rules changed state relative to the previous effective set.
    profile = await profiles_repo.get_profile(session, profile_id)
    if profile is None:
        profile = await profiles_repo.get_profile_by_slug(session, profile_id)
    if profile is None:
        raise NotFoundError(f"Profile {profile_id} not found")
    before = (await load_account_rule_set(session, account_id)).plan.as_map()
    await profiles_repo.set_account_profile(
        session, account_id=account_id, profile_id=profile.id, activated_by=actor_id
    )
    after = (await load_account_rule_set(session, account_id)).plan.as_map()
    return _counts(before, after)


async def clear_active_profile(session: AsyncSession, *, account_id: str) -> dict[str, int]:
    before = (await load_account_rule_set(session, account_id)).plan.as_map()
    await profiles_repo.clear_account_profile(session, account_id)
    await session.flush()
    after = (await load_account_rule_set(session, account_id)).plan.as_map()
    return _counts(before, after)


async def toggle_rule(
    session: AsyncSession,
    *,
    account_id: str,
    rule_id: str,
    is_active: bool,
    actor_id: str | None,
) -> RuleOverride:
    rule = await rules_repo.get_rule(session, rule_id)
    if rule is None or (rule.account_id is not None and rule.account_id != account_id):
        raise NotFoundError(f"Rule {rule_id} not found")
    profile = await profiles_repo.get_active_profile(session, account_id)
    return await rules_repo.upsert_override(
        session,
        account_id=account_id,
        rule_id=rule_id,
        is_active=is_active,
        applied_by_profile_id=profile.id if profile is not None else None,
        updated_by=actor_id,
    )


async def clear_rule_override(session: AsyncSession, *, account_id: str, rule_id: str) -> bool:
    return await rules_repo.delete_override(session, account_id, rule_id)
