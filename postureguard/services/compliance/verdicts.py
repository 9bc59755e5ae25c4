from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


STATUS_COMPLIANT = "compliant"
STATUS_NON_COMPLIANT = "non_compliant"
STATUS_NOT_APPLICABLE = "not_applicable"
STATUSES = (STATUS_COMPLIANT, STATUS_NON_COMPLIANT, STATUS_NOT_APPLICABLE)


@dataclass(frozen=True)
class Verdict:
    status: str
    detail: str


@dataclass(frozen=True)
class ResourceRecord:
    # Detached, read-only view of a resource handed to leaf checks.
    id: str
    account_id: str
    resource_id: str
    resource_type: str
    label: str = ""
    region: str | None = None
    status: str | None = None
    plan_type: str | None = None
    monthly_cost: float | None = None
    specs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def tags(self) -> list[str]:
        return resource_tags(self.specs)

    @classmethod
    def from_model(cls, row: Any) -> "ResourceRecord":
        return cls(
            id=row.id,
            account_id=row.account_id,
            resource_id=row.resource_id,
            resource_type=row.resource_type,
            label=row.label or "",
            region=row.region,
            status=row.status,
            plan_type=row.plan_type,
            monthly_cost=row.monthly_cost,
            specs=dict(row.specs or {}),
        )


@dataclass(frozen=True)
class EvaluationContext:
    # Everything a leaf check may look at beyond its own resource.
    account_id: str
    settings: Mapping[str, Any] = field(default_factory=dict)
    resources_by_type: Mapping[str, tuple[ResourceRecord, ...]] = field(default_factory=dict)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def resources_of(self, resource_type: str) -> tuple[ResourceRecord, ...]:
        return tuple(self.resources_by_type.get(resource_type, ()))

    @classmethod
    def build(
        cls,
        *,
        account_id: str,
        settings: Mapping[str, Any] | None,
        resources: list[ResourceRecord],
        now: datetime | None = None,
    ) -> "EvaluationContext":
        grouped: dict[str, list[ResourceRecord]] = {}
        for record in resources:
            grouped.setdefault(record.resource_type, []).append(record)
        return cls(
            account_id=account_id,
            settings=dict(settings or {}),
            resources_by_type={key: tuple(value) for key, value in grouped.items()},
            now=now or datetime.now(timezone.utc),
        )


def resource_tags(specs: Mapping[str, Any] | None) -> list[str]:
    # Tags are plain strings; "key:value" encodes key/value pairs.
    raw = (specs or {}).get("tags") or []
    if not isinstance(raw, list):
        return []
    return [str(tag) for tag in raw if str(tag).strip()]


def compliant(detail: str) -> Verdict:
    return Verdict(STATUS_COMPLIANT, detail)


def non_compliant(detail: str) -> Verdict:
    return Verdict(STATUS_NON_COMPLIANT, detail)


def not_applicable(detail: str) -> Verdict:
    return Verdict(STATUS_NOT_APPLICABLE, detail)
