from __future__ import annotations

from typing import Any

from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import accounts as accounts_repo
from postureguard.services.compliance.rules import create_rule
from postureguard.services.inventory.snapshots import ObservedResource, record_inventory_sync


def headers(role: str = "admin", *, actor_id: str = "user-1", account_id: str | None = None) -> dict[str, str]:
    # Identity headers as the gateway would set them.
    values = {"X-Actor-Id": actor_id, "X-Role": role}
    if account_id is not None:
        values["X-Account-Id"] = account_id
    return values


def linode(
    resource_id: str,
    *,
    label: str | None = None,
    tags: list[str] | None = None,
    region: str = "us-east",
    **specs: Any,
) -> ObservedResource:
    return ObservedResource(
        resource_id=resource_id,
        resource_type="linode",
        label=label or f"linode-{resource_id}",
        region=region,
        status="running",
        plan_type="g6-standard-2",
        monthly_cost=24.0,
        specs={"tags": list(tags or []), **specs},
    )


def firewall(resource_id: str, *, entities: list[str] | None = None, **specs: Any) -> ObservedResource:
    return ObservedResource(
        resource_id=resource_id,
        resource_type="firewall",
        label=f"fw-{resource_id}",
        region=None,
        status="enabled",
        specs={"entities": [{"id": entity, "type": "linode"} for entity in entities or []], **specs},
    )


async def create_test_account(
    account_id: str,
    *,
    name: str | None = None,
    settings_json: dict[str, Any] | None = None,
    resources: list[ObservedResource] | None = None,
) -> None:
    # Provision an account and, optionally, its inventory without triggering an evaluation.
    async with SessionLocal() as session:
        await accounts_repo.create_account(
            session, account_id=account_id, name=name or account_id, settings_json=settings_json
        )
        await session.commit()
        if resources:
            await record_inventory_sync(session, account_id, resources, trigger_evaluation=False)


async def create_test_rule(account_id: str | None, name: str, condition_type: str, **kwargs: Any) -> str:
    async with SessionLocal() as session:
        rule = await create_rule(
            session, account_id=account_id, name=name, condition_type=condition_type, **kwargs
        )
        await session.commit()
        return rule.id
