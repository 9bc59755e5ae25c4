from __future__ import annotations

from types import SimpleNamespace

import pytest

from postureguard.services.scoring import compute_score, drill_down, rule_breakdown, score_trend, tally


def _result(rule_id: str, status: str, resource_id: str | None = None, *, acknowledged: bool = False):
    return SimpleNamespace(rule_id=rule_id, status=status, resource_id=resource_id, acknowledged=acknowledged)


def _resource(resource_id: str, resource_type: str, *, region: str | None = "us-east", tags=None):
    return SimpleNamespace(
        id=resource_id,
        resource_id=f"ext-{resource_id}",
        resource_type=resource_type,
        region=region,
        label=resource_id,
        specs={"tags": list(tags or [])},
    )


@pytest.mark.parametrize(
    ("compliant", "non_compliant", "expected"),
    [
        (8, 2, 80),
        (2, 1, 67),
        (1, 2, 33),
        (1, 7, 13),
        (1, 0, 100),
        (0, 3, 0),
        (0, 0, None),
    ],
)
def test_compute_score_rounds_half_up(compliant: int, non_compliant: int, expected: int | None) -> None:
    assert compute_score(compliant, non_compliant) == expected


def test_tally_excludes_acknowledged_and_not_applicable_from_score() -> None:
    results = (
        [_result("r", "compliant")] * 8
        + [_result("r", "non_compliant")] * 2
        + [_result("r", "not_applicable")] * 5
        + [_result("r", "non_compliant", acknowledged=True)] * 3
    )
    counts = tally(results)
    assert counts.compliant == 8
    assert counts.non_compliant == 2
    assert counts.not_applicable == 5
    assert counts.acknowledged == 3
    assert counts.total == 18
    assert counts.score == 80


def test_tally_with_nothing_scoreable() -> None:
    counts = tally([_result("r", "not_applicable")])
    assert counts.score is None
    assert counts.as_dict()["score"] is None


def test_drill_down_by_resource_type_orders_worst_first() -> None:
    resources = {
        "l1": _resource("l1", "linode"),
        "v1": _resource("v1", "volume"),
        "d1": _resource("d1", "database"),
    }
    results = [
        _result("r1", "compliant", "l1"),
        _result("r2", "non_compliant", "l1"),
        _result("r1", "compliant", "v1"),
        _result("r1", "not_applicable", "d1"),
        _result("tfa", "non_compliant", None),
    ]
    groups = drill_down(results, resources, {}, "resource_type")
    assert [group.key for group in groups] == ["account", "linode", "volume", "database"]
    assert groups[0].score == 0
    assert groups[1].score == 50
    assert groups[-1].score is None


def test_drill_down_by_tag_fans_out() -> None:
    resources = {
        "l1": _resource("l1", "linode", tags=["env:prod", "team:core"]),
        "l2": _resource("l2", "linode"),
    }
    results = [_result("r1", "non_compliant", "l1"), _result("r1", "compliant", "l2")]
    groups = {group.key: group for group in drill_down(results, resources, {}, "tag")}
    assert groups["env:prod"].non_compliant == 1
    assert groups["team:core"].non_compliant == 1
    assert groups["__untagged__"].compliant == 1


def test_drill_down_by_tag_keeps_account_results_apart_from_untagged() -> None:
    resources = {"l2": _resource("l2", "linode")}
    results = [_result("r1", "compliant", "l2"), _result("tfa", "non_compliant", None)]
    groups = {group.key: group for group in drill_down(results, resources, {}, "tag")}
    assert set(groups) == {"__untagged__", "account"}
    assert groups["__untagged__"].compliant == 1
    assert groups["__untagged__"].non_compliant == 0
    assert groups["account"].non_compliant == 1
    assert groups["account"].label == "Account"


def test_drill_down_by_region_groups_account_results_as_global() -> None:
    resources = {"l1": _resource("l1", "linode", region="eu-west")}
    results = [_result("r1", "compliant", "l1"), _result("tfa", "compliant", None)]
    keys = {group.key for group in drill_down(results, resources, {}, "region")}
    assert keys == {"eu-west", "global"}


def test_drill_down_rejects_unknown_dimension() -> None:
    with pytest.raises(ValueError):
        drill_down([], {}, {}, "colour")


def test_rule_breakdown_sorts_by_open_findings() -> None:
    rules = {
        "r1": SimpleNamespace(name="Tags", severity="info"),
        "r2": SimpleNamespace(name="Firewall", severity="critical"),
    }
    results = [
        _result("r1", "non_compliant", "a"),
        _result("r2", "non_compliant", "a"),
        _result("r2", "non_compliant", "b"),
        _result("r1", "compliant", "b"),
    ]
    breakdown = rule_breakdown(results, rules)
    assert [item["rule_name"] for item in breakdown] == ["Firewall", "Tags"]
    assert breakdown[0]["non_compliant"] == 2


def test_score_trend() -> None:
    assert score_trend([]).latest is None
    single = score_trend([SimpleNamespace(compliance_score=70)])
    assert single.latest == 70 and single.delta is None
    trend = score_trend([SimpleNamespace(compliance_score=70), SimpleNamespace(compliance_score=82)])
    assert trend.previous == 70
    assert trend.delta == 12
