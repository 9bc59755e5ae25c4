from __future__ import annotations

from types import SimpleNamespace

from postureguard.services.compliance import resolve_activation


def _rule(rule_id: str, condition_type: str, *, is_active: bool = True) -> SimpleNamespace:
    return SimpleNamespace(id=rule_id, condition_type=condition_type, is_active=is_active)


RULES = [
    _rule("r-tags", "has_tags"),
    _rule("r-fw", "firewall_attached"),
    _rule("r-tfa", "tfa_users", is_active=False),
    _rule("r-combo", "composite"),
]


def test_defaults_apply_without_profile() -> None:
    plan = resolve_activation(RULES, None, {})
    assert plan.profile_id is None
    assert plan.active_rule_ids() == ["r-tags", "r-fw", "r-combo"]
    assert plan.decision_for("r-tfa").source == "default"


def test_profile_enables_exactly_its_condition_types() -> None:
    profile = SimpleNamespace(id="profile-x", rule_condition_types=["tfa_users", "has_tags"])
    plan = resolve_activation(RULES, profile, {})
    assert sorted(plan.active_rule_ids()) == ["r-tags", "r-tfa"]
    # Composites are outside every profile unless an override turns them on.
    assert plan.decision_for("r-combo").is_active is False
    assert all(decision.source == "profile" for decision in plan.decisions)


def test_override_wins_over_profile() -> None:
    profile = SimpleNamespace(id="profile-x", rule_condition_types=["has_tags"])
    overrides = [
        SimpleNamespace(rule_id="r-tags", is_active=False),
        SimpleNamespace(rule_id="r-combo", is_active=True),
    ]
    plan = resolve_activation(RULES, profile, overrides)
    assert plan.active_rule_ids() == ["r-combo"]
    assert plan.decision_for("r-tags").source == "override"


def test_resolution_is_idempotent() -> None:
    profile = SimpleNamespace(id="profile-x", rule_condition_types=["firewall_attached"])
    first = resolve_activation(RULES, profile, {"r-tfa": True})
    second = resolve_activation(RULES, profile, {"r-tfa": True})
    assert first == second
    assert first.as_map() == {"r-tags": False, "r-fw": True, "r-tfa": True, "r-combo": False}
