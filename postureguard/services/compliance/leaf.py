from __future__ import annotations

from typing import Any, Iterable

from postureguard.core.errors import ConfigurationError
from postureguard.domain.conditions import CompositeCondition, ConditionConfig, parse_condition
from postureguard.services.compliance import checks  # noqa: F401 - registers leaf checks
from postureguard.services.compliance.registry import ConditionSpec, spec_for
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    not_applicable,
)


def condition_spec(condition: ConditionConfig) -> ConditionSpec:
    if isinstance(condition, CompositeCondition):
        raise ConfigurationError("Composite rules are resolved from sub-rule verdicts, not by a leaf check")
    spec = spec_for(type(condition))
    if spec is None:
        raise ConfigurationError(f"No leaf check registered for {condition.condition_type}")
    return spec


def applicable_resource_types(condition: ConditionConfig, resource_types: Iterable[str] | None) -> list[str]:
    # The rule's own scope narrowed to the types its condition understands.
    spec = condition_spec(condition)
    if spec.applies_to is None:
        return []
    if resource_types is None:
        return sorted(spec.applies_to)
    return sorted(spec.applies_to.intersection(resource_types))


def evaluate_condition(
    condition: ConditionConfig,
    resource: ResourceRecord | None,
    context: EvaluationContext,
    *,
    resource_types: Iterable[str] | None = None,
) -> Verdict:
    spec = condition_spec(condition)
    if spec.account_wide:
        return spec.evaluator(condition, None, context)
    if resource is None:
        return not_applicable("Rule is evaluated per resource; no resource in scope.")
    if resource.resource_type not in applicable_resource_types(condition, resource_types):
        return not_applicable(f"Rule does not apply to {resource.resource_type} resources.")
    return spec.evaluator(condition, resource, context)


def evaluate_leaf(
    condition_type: str,
    condition_config: dict[str, Any] | None,
    resource: ResourceRecord | None,
    context: EvaluationContext,
    *,
    resource_types: Iterable[str] | None = None,
) -> Verdict:
    # Unknown condition types raise ConfigurationError rather than passing silently.
    condition = parse_condition(condition_type, condition_config)
    return evaluate_condition(condition, resource, context, resource_types=resource_types)
