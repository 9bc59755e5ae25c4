from __future__ import annotations

from graphlib import CycleError, TopologicalSorter
from typing import Any, Mapping, Sequence

from postureguard.core.errors import ConfigurationError
from postureguard.domain.conditions import COMPOSITE_CONDITION_TYPE, CompositeCondition, parse_condition
from postureguard.services.compliance.verdicts import (
    STATUS_COMPLIANT,
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    Verdict,
)


# Scope key for one composite verdict: a resource id, or None for account level.
ScopeKey = str | None


def combine_and(statuses: Sequence[str]) -> str:
    if any(status == STATUS_NON_COMPLIANT for status in statuses):
        return STATUS_NON_COMPLIANT
    if statuses and all(status == STATUS_COMPLIANT for status in statuses):
        return STATUS_COMPLIANT
    return STATUS_NOT_APPLICABLE


def combine_or(statuses: Sequence[str]) -> str:
    if any(status == STATUS_COMPLIANT for status in statuses):
        return STATUS_COMPLIANT
    if all(status == STATUS_NOT_APPLICABLE for status in statuses):
        return STATUS_NOT_APPLICABLE
    return STATUS_NON_COMPLIANT


def negate(status: str) -> str:
    if status == STATUS_COMPLIANT:
        return STATUS_NON_COMPLIANT
    if status == STATUS_NON_COMPLIANT:
        return STATUS_COMPLIANT
    return STATUS_NOT_APPLICABLE


def if_then(if_status: str, then_status: str) -> str:
    # A non_compliant antecedent means its condition was detected; otherwise the rule is vacuous.
    if if_status != STATUS_NON_COMPLIANT:
        return STATUS_NOT_APPLICABLE
    return then_status


def _status_list(names: Sequence[str], statuses: Sequence[str]) -> str:
    return "; ".join(f"{name}: {status}" for name, status in zip(names, statuses))


def resolve_composite(
    condition: CompositeCondition,
    sub_verdicts: Mapping[str, Verdict | None],
    rule_names: Mapping[str, str],
) -> Verdict:
    """Combine sub-rule verdicts for a single scope.

    ``sub_verdicts`` maps each referenced rule id to its verdict for the scope;
    a missing or ``None`` entry counts as not_applicable.
    """

    def status_of(rule_id: str) -> str:
        verdict = sub_verdicts.get(rule_id)
        return verdict.status if verdict is not None else STATUS_NOT_APPLICABLE

    def name_of(rule_id: str) -> str:
        return rule_names.get(rule_id, rule_id)

    if condition.operator == "IF_THEN":
        if_id = condition.if_rule_id or ""
        then_id = condition.then_rule_id or ""
        status = if_then(status_of(if_id), status_of(then_id))
        if status == STATUS_NOT_APPLICABLE and status_of(if_id) != STATUS_NON_COMPLIANT:
            return Verdict(status, f"IF condition ({name_of(if_id)}) not triggered, so the rule does not apply.")
        if status == STATUS_COMPLIANT:
            return Verdict(
                status,
                f"IF condition ({name_of(if_id)}) triggered and THEN condition ({name_of(then_id)}) is satisfied.",
            )
        if status == STATUS_NON_COMPLIANT:
            return Verdict(
                status,
                f"IF condition ({name_of(if_id)}) triggered but THEN condition ({name_of(then_id)}) failed.",
            )
        return Verdict(
            status,
            f"IF condition ({name_of(if_id)}) triggered but THEN condition ({name_of(then_id)}) does not apply.",
        )

    if condition.operator == "NOT":
        target = condition.rule_ids[0]
        verdict = sub_verdicts.get(target)
        inner = verdict.detail if verdict is not None else "no result"
        return Verdict(negate(status_of(target)), f"NOT({name_of(target)}): {inner}")

    names = [name_of(rule_id) for rule_id in condition.rule_ids]
    statuses = [status_of(rule_id) for rule_id in condition.rule_ids]
    if condition.operator == "AND":
        status = combine_and(statuses)
        if status == STATUS_COMPLIANT:
            return Verdict(status, f"All conditions passed: {', '.join(names)}")
        return Verdict(status, f"AND {'failed' if status == STATUS_NON_COMPLIANT else 'not applicable'}: "
                       f"{_status_list(names, statuses)}")
    status = combine_or(statuses)
    if status == STATUS_COMPLIANT:
        return Verdict(status, f"OR passed, at least one condition met: {', '.join(names)}")
    return Verdict(status, f"OR {'failed' if status == STATUS_NON_COMPLIANT else 'not applicable'}: "
                   f"{_status_list(names, statuses)}")


def composite_scopes(
    condition: CompositeCondition,
    verdicts_by_rule: Mapping[str, Mapping[ScopeKey, Verdict]],
) -> list[ScopeKey]:
    # Union of resource scopes seen in any sub-rule; account level only when no sub-rule is per-resource.
    resource_scopes: set[str] = set()
    account_level = False
    for rule_id in condition.referenced_rule_ids():
        for scope in verdicts_by_rule.get(rule_id, {}):
            if scope is None:
                account_level = True
            else:
                resource_scopes.add(scope)
    if resource_scopes:
        return sorted(resource_scopes)
    return [None] if account_level else []


def evaluation_order(
    composites: Mapping[str, CompositeCondition],
    known_rule_ids: set[str],
) -> tuple[list[str], dict[str, str]]:
    """Return composites in post-order plus the ones that cannot be evaluated.

    Cycles and missing references fail the affected composite and every
    composite that depends on it; nothing here recurses.
    """
    failures: dict[str, str] = {}
    for rule_id, condition in composites.items():
        missing = [ref for ref in condition.referenced_rule_ids() if ref not in known_rule_ids]
        if missing:
            failures[rule_id] = f"Composite references missing sub-rule(s): {', '.join(missing)}"

    graph = {
        rule_id: {ref for ref in condition.referenced_rule_ids() if ref in composites}
        for rule_id, condition in composites.items()
    }
    remaining = dict(graph)
    order: list[str] = []
    while True:
        try:
            order = list(TopologicalSorter(remaining).static_order())
            break
        except CycleError as exc:
            cycle = list(dict.fromkeys(exc.args[1]))
            for rule_id in cycle:
                failures[rule_id] = f"Composite reference cycle: {' -> '.join(exc.args[1])}"
                remaining.pop(rule_id, None)
            remaining = {
                rule_id: {ref for ref in refs if ref in remaining} for rule_id, refs in remaining.items()
            }

    # Dependents of failed composites cannot be evaluated either.
    for rule_id in order:
        if rule_id in failures:
            continue
        broken = [ref for ref in graph.get(rule_id, set()) if ref in failures]
        if broken:
            failures[rule_id] = f"Composite depends on invalid composite rule(s): {', '.join(sorted(broken))}"
    return [rule_id for rule_id in order if rule_id not in failures], failures


def validate_composite_config(
    config: dict[str, Any] | None,
    *,
    rule_id: str | None,
    rules: Mapping[str, tuple[str, dict[str, Any] | None]],
) -> CompositeCondition:
    """Validate a composite config before it is saved.

    ``rules`` maps every rule id visible to the account to its
    ``(condition_type, condition_config)``; ``rule_id`` is the rule being
    edited (None on create).
    """
    condition = parse_condition(COMPOSITE_CONDITION_TYPE, config)
    if not isinstance(condition, CompositeCondition):
        raise ConfigurationError("Composite rule configuration did not parse as a composite condition")
    referenced = condition.referenced_rule_ids()
    if rule_id is not None and rule_id in referenced:
        raise ConfigurationError("Composite rule cannot reference itself")
    if len(set(referenced)) != len(referenced):
        raise ConfigurationError("Composite rule references the same sub-rule more than once")
    missing = [ref for ref in referenced if ref not in rules]
    if missing:
        raise ConfigurationError(f"Composite references missing sub-rule(s): {', '.join(missing)}")

    composites: dict[str, CompositeCondition] = {}
    for other_id, (condition_type, other_config) in rules.items():
        if condition_type != COMPOSITE_CONDITION_TYPE or other_id == rule_id:
            continue
        try:
            other = parse_condition(condition_type, other_config)
        except ConfigurationError:
            continue
        if isinstance(other, CompositeCondition):
            composites[other_id] = other
    candidate_id = rule_id or "__candidate__"
    composites[candidate_id] = condition
    graph = {
        key: {ref for ref in value.referenced_rule_ids() if ref in composites}
        for key, value in composites.items()
    }
    try:
        TopologicalSorter(graph).prepare()
    except CycleError as exc:
        if candidate_id in exc.args[1]:
            raise ConfigurationError(
                f"Composite reference cycle: {' -> '.join(exc.args[1])}"
            ) from exc
    return condition


def composite_config_error(
    config: dict[str, Any] | None,
    *,
    rule_id: str | None,
    rules: Mapping[str, tuple[str, dict[str, Any] | None]],
) -> str | None:
    try:
        validate_composite_config(config, rule_id=rule_id, rules=rules)
    except ConfigurationError as exc:
        return str(exc)
    return None
