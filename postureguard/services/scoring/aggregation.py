from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Mapping, Sequence

from postureguard.services.compliance.verdicts import (
    STATUS_COMPLIANT,
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    resource_tags,
)


DIMENSIONS: tuple[str, ...] = ("resource", "resource_type", "region", "tag", "rule")
UNTAGGED_KEY = "__untagged__"
ACCOUNT_KEY = "account"
GLOBAL_REGION_KEY = "global"


def compute_score(compliant: int, non_compliant: int) -> int | None:
    """Percentage of compliant results, rounded half-up.

    ``non_compliant`` counts only unacknowledged findings. Returns None when
    nothing is scoreable.
    """
    denominator = compliant + non_compliant
    if denominator <= 0:
        return None
    # Integer half-up rounding of compliant * 100 / denominator.
    return (200 * compliant + denominator) // (2 * denominator)


@dataclass(frozen=True)
class ScoreTally:
    compliant: int = 0
    non_compliant: int = 0
    not_applicable: int = 0
    acknowledged: int = 0

    @property
    def total(self) -> int:
        return self.compliant + self.non_compliant + self.not_applicable + self.acknowledged

    @property
    def score(self) -> int | None:
        return compute_score(self.compliant, self.non_compliant)

    def as_dict(self) -> dict[str, Any]:
        return {**asdict(self), "total": self.total, "score": self.score}


def tally(results: Iterable[Any]) -> ScoreTally:
    # Acknowledged non_compliant results count as acknowledged, not as findings.
    compliant = non_compliant = not_applicable = acknowledged = 0
    for result in results:
        if result.status == STATUS_COMPLIANT:
            compliant += 1
        elif result.status == STATUS_NON_COMPLIANT:
            if result.acknowledged:
                acknowledged += 1
            else:
                non_compliant += 1
        elif result.status == STATUS_NOT_APPLICABLE:
            not_applicable += 1
    return ScoreTally(
        compliant=compliant,
        non_compliant=non_compliant,
        not_applicable=not_applicable,
        acknowledged=acknowledged,
    )


@dataclass(frozen=True)
class DrillDownGroup:
    key: str
    label: str
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    total: int
    score: int | None


def _group_keys(
    result: Any,
    resources: Mapping[str, Any],
    rules: Mapping[str, Any],
    dimension: str,
) -> list[tuple[str, str]]:
    # (key, label) pairs the result contributes to; tags fan out.
    if dimension == "rule":
        rule = rules.get(result.rule_id)
        return [(result.rule_id, rule.name if rule is not None else result.rule_id)]

    resource = resources.get(result.resource_id) if result.resource_id else None
    if dimension == "tag":
        if result.resource_id is None:
            return [(ACCOUNT_KEY, "Account")]
        tags = resource_tags(resource.specs) if resource is not None else []
        if not tags:
            return [(UNTAGGED_KEY, UNTAGGED_KEY)]
        return [(tag, tag) for tag in dict.fromkeys(tags)]
    if dimension == "region":
        region = resource.region if resource is not None else None
        key = region or GLOBAL_REGION_KEY
        return [(key, key)]
    if result.resource_id is None:
        return [(ACCOUNT_KEY, "Account")]
    if dimension == "resource_type":
        key = resource.resource_type if resource is not None else "unknown"
        return [(key, key)]
    if dimension == "resource":
        if resource is None:
            return [(result.resource_id, result.resource_id)]
        return [(resource.id, resource.label or resource.resource_id)]
    raise ValueError(f"Unsupported drill-down dimension: {dimension}")


def drill_down(
    results: Iterable[Any],
    resources: Mapping[str, Any],
    rules: Mapping[str, Any],
    dimension: str,
) -> list[DrillDownGroup]:
    """Group results by one dimension and score each group independently.

    Groups are ordered worst first: score ascending, unscored groups last,
    then by label.
    """
    if dimension not in DIMENSIONS:
        raise ValueError(f"Unsupported drill-down dimension: {dimension}")
    buckets: dict[str, list[Any]] = {}
    labels: dict[str, str] = {}
    for result in results:
        for key, label in _group_keys(result, resources, rules, dimension):
            buckets.setdefault(key, []).append(result)
            labels.setdefault(key, label)

    groups: list[DrillDownGroup] = []
    for key, members in buckets.items():
        counts = tally(members)
        groups.append(
            DrillDownGroup(
                key=key,
                label=labels[key],
                compliant=counts.compliant,
                non_compliant=counts.non_compliant,
                not_applicable=counts.not_applicable,
                acknowledged=counts.acknowledged,
                total=counts.total,
                score=counts.score,
            )
        )
    groups.sort(key=lambda group: (group.score is None, group.score or 0, group.label))
    return groups


def rule_breakdown(results: Iterable[Any], rules: Mapping[str, Any]) -> list[dict[str, Any]]:
    by_rule: dict[str, list[Any]] = {}
    for result in results:
        by_rule.setdefault(result.rule_id, []).append(result)
    breakdown: list[dict[str, Any]] = []
    for rule_id, members in by_rule.items():
        rule = rules.get(rule_id)
        counts = tally(members)
        breakdown.append(
            {
                "rule_id": rule_id,
                "rule_name": rule.name if rule is not None else rule_id,
                "severity": rule.severity if rule is not None else None,
                "compliant": counts.compliant,
                "non_compliant": counts.non_compliant,
                "not_applicable": counts.not_applicable,
                "acknowledged": counts.acknowledged,
            }
        )
    breakdown.sort(key=lambda item: (-item["non_compliant"], item["rule_name"]))
    return breakdown


@dataclass(frozen=True)
class ScoreTrend:
    latest: int | None
    previous: int | None
    delta: int | None


def score_trend(points: Sequence[Any]) -> ScoreTrend:
    # ``points`` are score history rows oldest first.
    if not points:
        return ScoreTrend(latest=None, previous=None, delta=None)
    latest = points[-1].compliance_score
    if len(points) < 2:
        return ScoreTrend(latest=latest, previous=None, delta=None)
    previous = points[-2].compliance_score
    if latest is None or previous is None:
        return ScoreTrend(latest=latest, previous=previous, delta=None)
    return ScoreTrend(latest=latest, previous=previous, delta=latest - previous)
