from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import (
    ConfigurationError,
    NotFoundError,
    PermissionDeniedError,
    ReferentialError,
)
from postureguard.domain.conditions import (
    ALL_RESOURCE_TYPES,
    COMPOSITE_CONDITION_TYPE,
    SEVERITIES,
    CompositeCondition,
    parse_condition,
)
from postureguard.domain.models import ComplianceRule
from postureguard.persistence.repos import profiles as profiles_repo
from postureguard.persistence.repos import rules as rules_repo
from postureguard.services.auth.roles import role_allows
from postureguard.services.compliance.composite import composite_config_error, validate_composite_config
from postureguard.services.compliance.leaf import condition_spec


logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = (
    "name",
    "description",
    "resource_types",
    "condition_type",
    "condition_config",
    "severity",
    "is_active",
)


@dataclass(frozen=True)
class RuleDefinition:
    condition_type: str
    condition_config: dict[str, Any]
    resource_types: list[str]


async def _visible_rule_map(
    session: AsyncSession, account_id: str | None
) -> dict[str, tuple[str, dict[str, Any] | None]]:
    # Global rules may only reference other global rules.
    if account_id is None:
        rules = await rules_repo.list_builtin_rules(session)
    else:
        rules = await rules_repo.list_rules_for_account(session, account_id)
    return {rule.id: (rule.condition_type, rule.condition_config) for rule in rules}


async def validate_rule_definition(
    session: AsyncSession,
    *,
    account_id: str | None,
    rule_id: str | None,
    condition_type: str,
    condition_config: dict[str, Any] | None,
    resource_types: list[str] | None,
) -> RuleDefinition:
    """Parse and normalize a rule's condition before it is persisted.

    Raises ConfigurationError for unknown condition types, invalid configs,
    unknown resource types and composite cycles or missing sub-rules.
    """
    unknown_types = sorted(set(resource_types or []) - ALL_RESOURCE_TYPES)
    if unknown_types:
        raise ConfigurationError(f"Unknown resource type(s): {', '.join(unknown_types)}")

    if condition_type == COMPOSITE_CONDITION_TYPE:
        rules = await _visible_rule_map(session, account_id)
        condition = validate_composite_config(condition_config, rule_id=rule_id, rules=rules)
        return RuleDefinition(condition_type, condition.to_storage(), [])

    condition = parse_condition(condition_type, condition_config)
    spec = condition_spec(condition)
    if spec.applies_to is None:
        return RuleDefinition(condition_type, condition.to_storage(), [])
    if not resource_types:
        # Default the scope to every type the condition understands.
        return RuleDefinition(condition_type, condition.to_storage(), sorted(spec.applies_to))
    unsupported = sorted(set(resource_types) - spec.applies_to)
    if len(unsupported) == len(set(resource_types)):
        raise ConfigurationError(
            f"{condition_type} does not apply to {', '.join(unsupported)}; "
            f"supported types: {', '.join(sorted(spec.applies_to))}"
        )
    return RuleDefinition(condition_type, condition.to_storage(), sorted(set(resource_types)))


def _check_severity(severity: str) -> None:
    if severity not in SEVERITIES:
        raise ConfigurationError(f"Unknown severity: {severity}")


async def create_rule(
    session: AsyncSession,
    *,
    account_id: str | None,
    name: str,
    condition_type: str,
    condition_config: dict[str, Any] | None = None,
    resource_types: list[str] | None = None,
    description: str = "",
    severity: str = "warning",
    is_active: bool = True,
    is_builtin: bool = False,
    rule_id: str | None = None,
) -> ComplianceRule:
    _check_severity(severity)
    definition = await validate_rule_definition(
        session,
        account_id=account_id,
        rule_id=rule_id,
        condition_type=condition_type,
        condition_config=condition_config,
        resource_types=resource_types,
    )
    rule = ComplianceRule(
        id=rule_id or str(uuid4()),
        account_id=account_id,
        name=name,
        description=description,
        resource_types=definition.resource_types,
        condition_type=definition.condition_type,
        condition_config=definition.condition_config,
        severity=severity,
        is_active=is_active,
        is_builtin=is_builtin,
    )
    session.add(rule)
    await session.flush()
    return rule


async def get_rule_for_account(session: AsyncSession, account_id: str, rule_id: str) -> ComplianceRule:
    # Other accounts' rules are reported as missing.
    rule = await rules_repo.get_rule(session, rule_id)
    if rule is None or (rule.account_id is not None and rule.account_id != account_id):
        raise NotFoundError(f"Rule {rule_id} not found")
    return rule


def _require_builtin_admin(rule: ComplianceRule, actor_role: str | None, action: str) -> None:
    if rule.is_builtin and not role_allows(role=actor_role, minimum_role="admin"):
        raise PermissionDeniedError(f"Only admins can {action} built-in rules")


async def update_rule(
    session: AsyncSession,
    rule: ComplianceRule,
    *,
    changes: dict[str, Any],
    actor_role: str | None,
) -> ComplianceRule:
    _require_builtin_admin(rule, actor_role, "edit")
    updates = {key: value for key, value in changes.items() if key in _MUTABLE_FIELDS and value is not None}
    if "severity" in updates:
        _check_severity(updates["severity"])
    condition_keys = {"condition_type", "condition_config", "resource_types"}
    if condition_keys.intersection(updates):
        definition = await validate_rule_definition(
            session,
            account_id=rule.account_id,
            rule_id=rule.id,
            condition_type=updates.get("condition_type", rule.condition_type),
            condition_config=updates.get("condition_config", rule.condition_config),
            resource_types=updates.get("resource_types", rule.resource_types),
        )
        updates["condition_type"] = definition.condition_type
        updates["condition_config"] = definition.condition_config
        updates["resource_types"] = definition.resource_types
    for key, value in updates.items():
        setattr(rule, key, value)
    await session.flush()
    return rule


async def _ensure_not_referenced(session: AsyncSession, rule: ComplianceRule) -> None:
    # Composite references hold for global rules across every account.
    for composite in await rules_repo.list_composite_rules(session, rule.account_id):
        if composite.id == rule.id:
            continue
        try:
            condition = parse_condition(COMPOSITE_CONDITION_TYPE, composite.condition_config)
        except ConfigurationError:
            continue
        if isinstance(condition, CompositeCondition) and rule.id in condition.referenced_rule_ids():
            raise ReferentialError(f"Rule {rule.id} is referenced by composite rule {composite.name}")


async def _ensure_not_in_active_profile(session: AsyncSession, rule: ComplianceRule) -> None:
    if rule.account_id is not None:
        profile = await profiles_repo.get_active_profile(session, rule.account_id)
        if profile is not None and rule.condition_type in (profile.rule_condition_types or []):
            raise ReferentialError(
                f"Rule {rule.name} is enabled by the active profile {profile.name}; switch profiles first"
            )
        return
    for account_id, profile in await profiles_repo.list_active_assignments(session):
        if rule.condition_type in (profile.rule_condition_types or []):
            raise ReferentialError(
                f"Rule {rule.name} is enabled by profile {profile.name} active on account {account_id}"
            )


async def delete_rule(session: AsyncSession, rule: ComplianceRule, *, actor_role: str | None) -> None:
    _require_builtin_admin(rule, actor_role, "delete")
    await _ensure_not_in_active_profile(session, rule)
    await _ensure_not_referenced(session, rule)
    await rules_repo.delete_rule_cascade(session, rule)
    logger.info("compliance_rule_deleted rule_id=%s account_id=%s", rule.id, rule.account_id)


async def check_composite_config(
    session: AsyncSession,
    *,
    account_id: str,
    rule_id: str | None,
    condition_config: dict[str, Any] | None,
) -> str | None:
    # Dry run used by editors before saving; None means the config would be accepted.
    rules = await _visible_rule_map(session, account_id)
    return composite_config_error(condition_config, rule_id=rule_id, rules=rules)
