from __future__ import annotations

import pytest

from postureguard.core.errors import ConfigurationError
from postureguard.domain.conditions import CompositeCondition, parse_condition
from postureguard.services.compliance import composite
from postureguard.services.compliance import (
    STATUS_COMPLIANT,
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    Verdict,
    combine_and,
    combine_or,
    evaluation_order,
    if_then,
    negate,
    resolve_composite,
    validate_composite_config,
)


C, N, NA = STATUS_COMPLIANT, STATUS_NON_COMPLIANT, STATUS_NOT_APPLICABLE


def _composite(**config) -> CompositeCondition:
    condition = parse_condition("composite", config)
    assert isinstance(condition, CompositeCondition)
    return condition


def test_and_truth_table() -> None:
    assert combine_and([C, C]) == C
    assert combine_and([C, N]) == N
    assert combine_and([NA, N]) == N
    assert combine_and([C, NA]) == NA
    assert combine_and([NA, NA]) == NA


def test_or_truth_table() -> None:
    assert combine_or([N, C]) == C
    assert combine_or([NA, C]) == C
    assert combine_or([N, N]) == N
    assert combine_or([N, NA]) == N
    assert combine_or([NA, NA]) == NA


def test_not_is_an_involution_on_compliance() -> None:
    for status in (C, N, NA):
        assert negate(negate(status)) == status
    assert negate(NA) == NA


def test_if_then_only_applies_when_antecedent_detected() -> None:
    assert if_then(C, N) == NA
    assert if_then(NA, N) == NA
    assert if_then(N, C) == C
    assert if_then(N, N) == N
    assert if_then(N, NA) == NA


def test_resolve_and_detail_names_sub_rules() -> None:
    condition = _composite(operator="AND", rule_ids=["r1", "r2"])
    verdict = resolve_composite(
        condition,
        {"r1": Verdict(C, "tagged"), "r2": Verdict(N, "no firewall")},
        {"r1": "Has tags", "r2": "Has firewall"},
    )
    assert verdict.status == N
    assert "Has tags: compliant" in verdict.detail
    assert "Has firewall: non_compliant" in verdict.detail


def test_resolve_missing_sub_verdict_counts_as_not_applicable() -> None:
    condition = _composite(operator="OR", rule_ids=["r1", "r2"])
    verdict = resolve_composite(condition, {"r1": Verdict(N, "x")}, {})
    assert verdict.status == N

    condition = _composite(operator="NOT", rule_ids=["r1"])
    assert resolve_composite(condition, {}, {}).status == NA


def test_resolve_if_then_detail() -> None:
    condition = _composite(operator="IF_THEN", if_rule_id="public", then_rule_id="firewall")
    names = {"public": "Public IP", "firewall": "Firewall"}
    vacuous = resolve_composite(condition, {"public": Verdict(C, ""), "firewall": Verdict(N, "")}, names)
    assert vacuous.status == NA
    assert "not triggered" in vacuous.detail
    failed = resolve_composite(condition, {"public": Verdict(N, ""), "firewall": Verdict(N, "")}, names)
    assert failed.status == N


@pytest.mark.parametrize(
    "config",
    [
        {"operator": "AND", "rule_ids": []},
        {"operator": "NOT", "rule_ids": ["a", "b"]},
        {"operator": "IF_THEN", "if_rule_id": "a"},
        {"operator": "XOR", "rule_ids": ["a"]},
    ],
)
def test_malformed_composite_shapes_are_rejected(config: dict) -> None:
    with pytest.raises(ConfigurationError):
        parse_condition("composite", config)


def test_evaluation_order_is_post_order() -> None:
    composites = {
        "outer": _composite(operator="OR", rule_ids=["inner", "leaf-a"]),
        "inner": _composite(operator="AND", rule_ids=["leaf-a", "leaf-b"]),
    }
    order, failures = evaluation_order(composites, {"outer", "inner", "leaf-a", "leaf-b"})
    assert failures == {}
    assert order.index("inner") < order.index("outer")


def test_evaluation_order_fails_cycles_and_dependents() -> None:
    composites = {
        "a": _composite(operator="AND", rule_ids=["b"]),
        "b": _composite(operator="AND", rule_ids=["a"]),
        "c": _composite(operator="NOT", rule_ids=["a"]),
        "d": _composite(operator="NOT", rule_ids=["leaf"]),
    }
    order, failures = evaluation_order(composites, {"a", "b", "c", "d", "leaf"})
    assert order == ["d"]
    assert "cycle" in failures["a"]
    assert "cycle" in failures["b"]
    assert "invalid composite" in failures["c"]


def test_evaluation_order_reports_missing_references() -> None:
    composites = {"a": _composite(operator="AND", rule_ids=["gone"])}
    order, failures = evaluation_order(composites, {"a"})
    assert order == []
    assert "gone" in failures["a"]


def _rules(**entries: tuple[str, dict]) -> dict[str, tuple[str, dict]]:
    return dict(entries)


def test_validate_rejects_self_reference() -> None:
    rules = _rules(x=("has_tags", {}), me=("composite", {"operator": "NOT", "rule_ids": ["x"]}))
    with pytest.raises(ConfigurationError, match="itself"):
        validate_composite_config({"operator": "AND", "rule_ids": ["x", "me"]}, rule_id="me", rules=rules)


def test_validate_rejects_missing_sub_rule() -> None:
    with pytest.raises(ConfigurationError, match="missing"):
        validate_composite_config(
            {"operator": "AND", "rule_ids": ["nope"]}, rule_id=None, rules=_rules(x=("has_tags", {}))
        )


def test_validate_rejects_cycle_through_existing_composite() -> None:
    rules = _rules(
        leaf=("has_tags", {}),
        a=("composite", {"operator": "AND", "rule_ids": ["leaf", "b"]}),
        b=("composite", {"operator": "NOT", "rule_ids": ["leaf"]}),
    )
    # Editing b to reference a closes the loop a -> b -> a.
    with pytest.raises(ConfigurationError, match="cycle"):
        validate_composite_config({"operator": "NOT", "rule_ids": ["a"]}, rule_id="b", rules=rules)


def test_validate_accepts_nested_composite() -> None:
    rules = _rules(
        leaf=("has_tags", {}),
        other=("firewall_attached", {}),
        inner=("composite", {"operator": "AND", "rule_ids": ["leaf", "other"]}),
    )
    condition = validate_composite_config(
        {"operator": "OR", "rule_ids": ["inner", "leaf"]}, rule_id=None, rules=rules
    )
    assert condition.referenced_rule_ids() == ["inner", "leaf"]


def test_validate_rejects_config_that_is_not_composite(monkeypatch) -> None:
    leaf = parse_condition("has_tags", {})
    monkeypatch.setattr(composite, "parse_condition", lambda condition_type, config: leaf)
    with pytest.raises(ConfigurationError, match="composite condition"):
        validate_composite_config(
            {"operator": "NOT", "rule_ids": ["x"]}, rule_id=None, rules=_rules(x=("has_tags", {}))
        )
