from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import get_settings
from postureguard.core.errors import NotFoundError
from postureguard.domain.conditions import ALL_RESOURCE_TYPES
from postureguard.domain.models import Resource, ResourceSnapshot
from postureguard.persistence.repos import accounts as accounts_repo
from postureguard.persistence.repos import resources as resources_repo
from postureguard.services.compliance.queue import EvaluationJobPayload, enqueue_evaluation


logger = logging.getLogger(__name__)

DIFF_FIELDS: tuple[str, ...] = ("label", "status", "region", "plan_type", "monthly_cost")

EVENT_CREATED = "created"
EVENT_CHANGED = "changed"
EVENT_REMOVED = "removed"


class ObservedResource(BaseModel):
    # One normalized inventory record as delivered by the collector.
    resource_id: str = Field(min_length=1)
    resource_type: str
    label: str = ""
    region: str | None = None
    status: str | None = None
    plan_type: str | None = None
    monthly_cost: float | None = None
    specs: dict[str, Any] = Field(default_factory=dict)
    resource_created_at: datetime | None = None

    @field_validator("resource_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in ALL_RESOURCE_TYPES:
            raise ValueError(f"Unknown resource type: {value}")
        return value


@dataclass(frozen=True)
class SyncReport:
    account_id: str
    created: int = 0
    changed: int = 0
    unchanged: int = 0
    removed: int = 0
    change_events: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    evaluation_job_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "created": self.created,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "change_events": list(self.change_events),
            "evaluation_job_id": self.evaluation_job_id,
        }


def _state(value: Any) -> dict[str, Any]:
    # Accept ORM rows, pydantic records or plain mappings.
    if isinstance(value, Mapping):
        return {name: value.get(name) for name in (*DIFF_FIELDS, "specs")}
    return {name: getattr(value, name, None) for name in (*DIFF_FIELDS, "specs")}


_MISSING = object()


def _diff_specs(before: Any, after: Any, prefix: str, out: dict[str, Any]) -> None:
    # Walk nested dicts; anything else (lists included) compares as a whole value.
    if isinstance(before, Mapping) and isinstance(after, Mapping):
        for key in sorted(set(before) | set(after), key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            _diff_specs(before.get(key, _MISSING), after.get(key, _MISSING), path, out)
        return
    if before is _MISSING and after is _MISSING:
        return
    if before != after:
        out[prefix] = {
            "from": None if before is _MISSING else before,
            "to": None if after is _MISSING else after,
        }


def diff_resource(previous: Any | None, current: Any) -> dict[str, Any] | None:
    """Field-level changes between two observations of a resource.

    Returns None when there is no previous observation and ``{}`` when nothing
    changed. Spec changes are reported as dotted leaf paths under ``specs``.
    """
    if previous is None:
        return None
    before = _state(previous)
    after = _state(current)
    changes: dict[str, Any] = {}
    for name in DIFF_FIELDS:
        if before[name] != after[name]:
            changes[name] = {"from": before[name], "to": after[name]}
    spec_changes: dict[str, Any] = {}
    _diff_specs(before["specs"] or {}, after["specs"] or {}, "", spec_changes)
    if spec_changes:
        changes["specs"] = spec_changes
    return changes


def _snapshot(resource: Resource, *, diff: dict[str, Any] | None, synced_at: datetime) -> ResourceSnapshot:
    return ResourceSnapshot(
        account_id=resource.account_id,
        resource_id=resource.id,
        resource_type=resource.resource_type,
        label=resource.label,
        region=resource.region,
        status=resource.status,
        plan_type=resource.plan_type,
        monthly_cost=resource.monthly_cost,
        specs=dict(resource.specs or {}),
        diff=diff,
        synced_at=synced_at,
    )


def _apply(resource: Resource, record: ObservedResource, synced_at: datetime) -> None:
    resource.label = record.label
    resource.region = record.region
    resource.status = record.status
    resource.plan_type = record.plan_type
    resource.monthly_cost = record.monthly_cost
    resource.specs = dict(record.specs)
    if record.resource_created_at is not None:
        resource.resource_created_at = record.resource_created_at
    resource.last_synced_at = synced_at


async def record_inventory_sync(
    session: AsyncSession,
    account_id: str,
    observed: list[ObservedResource],
    *,
    resource_types: list[str] | None = None,
    trigger_evaluation: bool = True,
    synced_at: datetime | None = None,
) -> SyncReport:
    """Upsert one account's observed inventory and snapshot what changed.

    Resources of the synced types that were not observed are removed. Any
    change event queues a re-evaluation of the account once the sync commits.
    """
    account = await accounts_repo.get_account(session, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    now = synced_at or datetime.now(timezone.utc)
    scope = set(resource_types) if resource_types else None

    existing = {
        (row.resource_type, row.resource_id): row
        for row in await resources_repo.list_resources(session, account_id)
        if scope is None or row.resource_type in scope
    }
    events: list[dict[str, Any]] = []
    created = changed = unchanged = 0
    seen: set[tuple[str, str]] = set()

    for record in observed:
        key = (record.resource_type, record.resource_id)
        if key in seen or (scope is not None and record.resource_type not in scope):
            continue
        seen.add(key)
        resource = existing.get(key)
        if resource is None:
            resource = Resource(
                id=str(uuid4()),
                account_id=account_id,
                resource_id=record.resource_id,
                resource_type=record.resource_type,
            )
            _apply(resource, record, now)
            session.add(resource)
            session.add(_snapshot(resource, diff=None, synced_at=now))
            created += 1
            events.append(
                {"event": EVENT_CREATED, "resource_id": resource.id, "external_id": record.resource_id,
                 "resource_type": record.resource_type}
            )
            continue

        diff = diff_resource(resource, record)
        resource.last_synced_at = now
        if not diff:
            unchanged += 1
            continue
        _apply(resource, record, now)
        session.add(_snapshot(resource, diff=diff, synced_at=now))
        changed += 1
        events.append(
            {"event": EVENT_CHANGED, "resource_id": resource.id, "external_id": record.resource_id,
             "resource_type": record.resource_type, "fields": sorted(diff)}
        )

    removed = 0
    for key, resource in existing.items():
        if key in seen:
            continue
        events.append(
            {"event": EVENT_REMOVED, "resource_id": resource.id, "external_id": resource.resource_id,
             "resource_type": resource.resource_type}
        )
        await resources_repo.delete_resource_cascade(session, resource)
        removed += 1

    account.last_sync_at = now
    await session.commit()
    logger.info(
        "inventory_sync_recorded account_id=%s created=%s changed=%s unchanged=%s removed=%s",
        account_id,
        created,
        changed,
        unchanged,
        removed,
    )

    job_id: str | None = None
    if events and trigger_evaluation and get_settings().evaluate_on_sync:
        job_id = await enqueue_evaluation(EvaluationJobPayload(account_id=account_id, trigger="sync"))

    return SyncReport(
        account_id=account_id,
        created=created,
        changed=changed,
        unchanged=unchanged,
        removed=removed,
        change_events=tuple(events),
        evaluation_job_id=job_id,
    )
