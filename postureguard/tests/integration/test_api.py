from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from postureguard.apps.api.main import create_app
from postureguard.tests.utils.fixtures import headers


def _client() -> AsyncClient:
    app = create_app()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _linode(resource_id: str, *, tags: list[str] | None = None, status: str = "running", **specs) -> dict:
    return {
        "resource_id": resource_id,
        "resource_type": "linode",
        "label": f"web-{resource_id}",
        "region": "us-east",
        "status": status,
        "plan_type": "g6-standard-2",
        "monthly_cost": 24.0,
        "specs": {"tags": list(tags or []), **specs},
    }


async def _create_account(client: AsyncClient, account_id: str) -> None:
    resp = await client.post("/v1/accounts", headers=headers("admin"), json={"id": account_id, "name": account_id})
    assert resp.status_code == 201


async def _create_rule(client: AsyncClient, account_id: str, **body) -> str:
    resp = await client.post(f"/v1/accounts/{account_id}/rules", headers=headers("editor"), json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["id"]


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    async with _client() as client:
        resp = await client.get("/v1/health")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "ok"
    assert data["evaluation_mode"] == "inline"
    assert resp.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_identity_headers_are_required() -> None:
    async with _client() as client:
        missing = await client.get("/v1/accounts")
        bad_role = await client.get("/v1/accounts", headers={"X-Actor-Id": "u", "X-Role": "owner"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert bad_role.status_code == 400
    assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"


@pytest.mark.asyncio
async def test_account_create_conflict_and_scope() -> None:
    async with _client() as client:
        await _create_account(client, "acct-a")
        await _create_account(client, "acct-b")
        duplicate = await client.post("/v1/accounts", headers=headers("admin"), json={"id": "acct-a", "name": "A"})
        scoped = await client.get("/v1/accounts", headers=headers("reader", account_id="acct-a"))
        other = await client.get("/v1/accounts/acct-b", headers=headers("reader", account_id="acct-a"))
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "ACCOUNT_EXISTS"
    assert [item["id"] for item in scoped.json()["data"]] == ["acct-a"]
    assert other.status_code == 404


@pytest.mark.asyncio
async def test_reader_cannot_mutate() -> None:
    async with _client() as client:
        await _create_account(client, "acct-reader")
        resp = await client.post(
            "/v1/accounts/acct-reader/rules",
            headers=headers("reader"),
            json={"name": "Tags", "condition_type": "has_tags"},
        )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_rule_crud_and_validation() -> None:
    async with _client() as client:
        await _create_account(client, "acct-rules")
        rule_id = await _create_rule(client, "acct-rules", name="Tags", condition_type="has_tags")

        invalid = await client.post(
            "/v1/accounts/acct-rules/rules",
            headers=headers("editor"),
            json={"name": "Broken", "condition_type": "min_node_count", "condition_config": {"min_count": 0}},
        )
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "RULE_CONFIGURATION_INVALID"

        patched = await client.patch(
            f"/v1/rules/{rule_id}", headers=headers("editor"), json={"severity": "critical"}
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["severity"] == "critical"

        listed = await client.get("/v1/accounts/acct-rules/rules", headers=headers("reader"))
        [rule] = listed.json()["data"]
        assert rule["effective_active"] is True
        assert rule["activation_source"] == "default"

        toggled = await client.post(
            f"/v1/accounts/acct-rules/rules/{rule_id}/toggle", headers=headers("editor"), json={"is_active": False}
        )
        assert toggled.status_code == 200
        assert toggled.json()["data"]["is_active"] is False
        listed = await client.get("/v1/accounts/acct-rules/rules", headers=headers("reader"))
        assert listed.json()["data"][0]["activation_source"] == "override"

        cleared = await client.delete(
            f"/v1/accounts/acct-rules/rules/{rule_id}/override", headers=headers("editor")
        )
        assert cleared.status_code == 204
        again = await client.delete(f"/v1/accounts/acct-rules/rules/{rule_id}/override", headers=headers("editor"))
        assert again.status_code == 404

        deleted = await client.delete(f"/v1/rules/{rule_id}", headers=headers("editor"))
        assert deleted.status_code == 204
        gone = await client.patch(f"/v1/rules/{rule_id}", headers=headers("editor"), json={"name": "x"})
        assert gone.status_code == 404


@pytest.mark.asyncio
async def test_validate_composite_and_referential_delete() -> None:
    async with _client() as client:
        await _create_account(client, "acct-composite")
        leaf_id = await _create_rule(client, "acct-composite", name="Tags", condition_type="has_tags")

        check = await client.post(
            "/v1/rules/validate-composite",
            headers=headers("editor"),
            json={"account_id": "acct-composite", "condition_config": {"operator": "AND", "rule_ids": ["nope"]}},
        )
        assert check.status_code == 200
        assert check.json()["data"]["valid"] is False
        assert "nope" in check.json()["data"]["error"]

        await _create_rule(
            client,
            "acct-composite",
            name="Untagged",
            condition_type="composite",
            condition_config={"operator": "NOT", "rule_ids": [leaf_id]},
        )
        blocked = await client.delete(f"/v1/rules/{leaf_id}", headers=headers("editor"))
    assert blocked.status_code == 409
    assert blocked.json()["error"]["code"] == "RULE_IN_USE"


@pytest.mark.asyncio
async def test_condition_types_catalog() -> None:
    async with _client() as client:
        resp = await client.get("/v1/rules/condition-types", headers=headers("reader"))
    types = {item["condition_type"]: item for item in resp.json()["data"]}
    assert types["tfa_users"]["account_wide"] is True
    assert types["firewall_attached"]["applies_to"] == ["linode"]
    assert "composite" in types


@pytest.mark.asyncio
async def test_sync_evaluate_acknowledge_and_report() -> None:
    async with _client() as client:
        await _create_account(client, "acct-flow")
        tags_id = await _create_rule(
            client, "acct-flow", name="Tags", condition_type="has_tags", resource_types=["linode"]
        )

        sync = await client.post(
            "/v1/accounts/acct-flow/inventory/sync",
            headers=headers("editor"),
            json={"resources": [_linode("101", tags=["env:prod"]), _linode("102")], "trigger_evaluation": False},
        )
        assert sync.status_code == 200, sync.text
        assert sync.json()["data"]["created"] == 2
        assert sync.json()["data"]["evaluation_job_id"] is None

        run = await client.post("/v1/accounts/acct-flow/evaluations", headers=headers("editor"))
        assert run.status_code == 200, run.text
        summary = run.json()["data"]
        assert summary["compliant"] == 1
        assert summary["non_compliant"] == 1
        assert summary["score"] == 50

        findings = await client.get(
            "/v1/accounts/acct-flow/results?status=non_compliant", headers=headers("reader")
        )
        [finding] = findings.json()["data"]
        assert findings.json()["meta"]["account_id"] == "acct-flow"
        assert findings.json()["meta"]["count"] == 1
        assert finding["rule_id"] == tags_id

        compliant = await client.get("/v1/accounts/acct-flow/results?status=compliant", headers=headers("reader"))
        [passing] = compliant.json()["data"]
        rejected = await client.post(f"/v1/results/{passing['id']}/acknowledge", headers=headers("editor"))
        assert rejected.status_code == 400

        ack = await client.post(
            f"/v1/results/{finding['id']}/acknowledge",
            headers=headers("editor"),
            json={"note": "Legacy host, tagging next sprint"},
        )
        assert ack.status_code == 200
        assert ack.json()["data"]["acknowledged"] is True

        note = await client.post(
            f"/v1/results/{finding['id']}/notes", headers=headers("editor"), json={"note": "Owner confirmed"}
        )
        assert note.status_code == 201
        notes = await client.get(f"/v1/results/{finding['id']}/notes", headers=headers("reader"))
        assert [item["note"] for item in notes.json()["data"]] == [
            "Legacy host, tagging next sprint",
            "Owner confirmed",
        ]
        assert notes.json()["meta"]["count"] == 2
        assert notes.json()["meta"].get("account_id") is None

        score = await client.get("/v1/accounts/acct-flow/score", headers=headers("reader"))
        data = score.json()["data"]
        assert data["latest"]["score"] == 50
        assert data["current"]["score"] == 100
        assert data["current"]["acknowledged"] == 1

        drill = await client.get("/v1/accounts/acct-flow/drilldown?dimension=resource", headers=headers("reader"))
        labels = [group["label"] for group in drill.json()["data"]]
        assert set(labels) == {"web-101", "web-102"}

        bad_dimension = await client.get("/v1/accounts/acct-flow/drilldown?dimension=colour", headers=headers("reader"))
        assert bad_dimension.status_code == 400
        assert bad_dimension.json()["error"]["code"] == "INVALID_DIMENSION"

        history = await client.get("/v1/accounts/acct-flow/score-history", headers=headers("reader"))
        assert [frame["score"] for frame in history.json()["data"]] == [50]

        runs = await client.get("/v1/accounts/acct-flow/evaluations", headers=headers("reader"))
        assert runs.json()["data"][0]["status"] == "succeeded"


@pytest.mark.asyncio
async def test_sync_with_changes_triggers_inline_evaluation_and_snapshots() -> None:
    async with _client() as client:
        await _create_account(client, "acct-sync")
        await _create_rule(client, "acct-sync", name="Tags", condition_type="has_tags")

        first = await client.post(
            "/v1/accounts/acct-sync/inventory/sync",
            headers=headers("editor"),
            json={"resources": [_linode("101")]},
        )
        assert first.json()["data"]["evaluation_job_id"] is not None

        second = await client.post(
            "/v1/accounts/acct-sync/inventory/sync",
            headers=headers("editor"),
            json={"resources": [_linode("101", status="offline")]},
        )
        events = second.json()["data"]["change_events"]
        assert events[0]["event"] == "changed"
        assert events[0]["fields"] == ["status"]

        resources = await client.get("/v1/accounts/acct-sync/resources", headers=headers("reader"))
        [resource] = resources.json()["data"]

        snapshots = await client.get(f"/v1/resources/{resource['id']}/snapshots", headers=headers("reader"))
        diffs = [item["diff"] for item in snapshots.json()["data"]]
        assert None in diffs
        assert {"status": {"from": "running", "to": "offline"}} in diffs

        changes = await client.get(
            "/v1/accounts/acct-sync/snapshots?changes_only=true", headers=headers("reader")
        )
        assert len(changes.json()["data"]) == 1

        runs = await client.get("/v1/accounts/acct-sync/evaluations", headers=headers("reader"))
        assert {item["trigger"] for item in runs.json()["data"]} == {"sync"}

        history = await client.get(
            f"/v1/resources/{resource['id']}/compliance-history", headers=headers("reader")
        )
        assert len(history.json()["data"]["frames"]) == 2


@pytest.mark.asyncio
async def test_profile_activation_over_api() -> None:
    from postureguard.persistence.db import SessionLocal
    from postureguard.services.compliance.catalog import seed_catalog

    async with SessionLocal() as session:
        await seed_catalog(session)
        await session.commit()

    async with _client() as client:
        await _create_account(client, "acct-profiles")
        profiles = await client.get("/v1/profiles", headers=headers("reader"))
        slugs = {item["slug"] for item in profiles.json()["data"]}
        assert {"cis-l1", "minimal-dev", "all-rules"} <= slugs

        activated = await client.put(
            "/v1/accounts/acct-profiles/profile", headers=headers("editor"), json={"profile_id": "minimal-dev"}
        )
        assert activated.status_code == 200
        assert activated.json()["data"]["disabled"] > 0

        current = await client.get("/v1/accounts/acct-profiles/profile", headers=headers("reader"))
        assert current.json()["data"]["profile"]["slug"] == "minimal-dev"

        missing = await client.put(
            "/v1/accounts/acct-profiles/profile", headers=headers("editor"), json={"profile_id": "nope"}
        )
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_evaluation_disabled_returns_503(monkeypatch) -> None:
    from postureguard.core.config import get_settings

    async with _client() as client:
        await _create_account(client, "acct-off")
        monkeypatch.setenv("COMPLIANCE_ENABLED", "false")
        get_settings.cache_clear()
        resp = await client.post("/v1/accounts/acct-off/evaluations", headers=headers("editor"))
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "COMPLIANCE_DISABLED"
