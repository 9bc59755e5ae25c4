from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import DBAPIError

from postureguard.core.errors import ConcurrencyConflictError, NotFoundError
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import accounts as accounts_repo
from postureguard.persistence.repos import history as history_repo
from postureguard.persistence.repos import results as results_repo
from postureguard.services.compliance.activation import toggle_rule
from postureguard.services.compliance.findings import acknowledge_result
from postureguard.services.compliance.orchestrator import run_evaluation
from postureguard.services.compliance.run_lock import acquire_run_lock, is_locally_held, release_run_lock
from postureguard.services.inventory.snapshots import record_inventory_sync
from postureguard.services.scoring import ScoreTimeline
from postureguard.tests.utils.fixtures import create_test_account, create_test_rule, firewall, linode


T0 = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)


async def _setup_tagged_linode_without_firewall(account_id: str) -> dict[str, str]:
    await create_test_account(account_id, resources=[linode("101", tags=["env:prod"])])
    tags_id = await create_test_rule(account_id, "Has tags", "has_tags", resource_types=["linode"])
    firewall_id = await create_test_rule(account_id, "Has firewall", "firewall_attached")
    combo_id = await create_test_rule(
        account_id,
        "Tagged and protected",
        "composite",
        condition_config={"operator": "AND", "rule_ids": [tags_id, firewall_id]},
    )
    return {"tags": tags_id, "firewall": firewall_id, "combo": combo_id}


async def _statuses(account_id: str) -> dict[str, tuple[str, bool]]:
    async with SessionLocal() as session:
        rows = await results_repo.list_results(session, account_id)
    return {row.rule_id: (row.status, row.acknowledged) for row in rows}


@pytest.mark.asyncio
async def test_composite_combines_leaf_verdicts_per_resource() -> None:
    rules = await _setup_tagged_linode_without_firewall("acct-eval")

    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-eval", now=T0)

    assert summary.total == 3
    assert summary.compliant == 1
    assert summary.non_compliant == 2
    assert summary.score == 33
    assert summary.rules_evaluated == 3
    assert summary.errors == ()

    statuses = await _statuses("acct-eval")
    assert statuses[rules["tags"]] == ("compliant", False)
    assert statuses[rules["firewall"]] == ("non_compliant", False)
    assert statuses[rules["combo"]] == ("non_compliant", False)


@pytest.mark.asyncio
async def test_acknowledgement_survives_until_finding_resolves() -> None:
    rules = await _setup_tagged_linode_without_firewall("acct-ack")

    async with SessionLocal() as session:
        await run_evaluation(session, "acct-ack", now=T0)
        [finding] = await results_repo.list_results(session, "acct-ack", rule_id=rules["firewall"])
        await acknowledge_result(session, finding, actor_id="ops", note="Firewall rollout scheduled")
        await session.commit()

    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-ack", now=T0 + timedelta(hours=1))
    assert summary.acknowledged == 1
    assert summary.non_compliant == 1
    assert summary.score == 50
    assert (await _statuses("acct-ack"))[rules["firewall"]] == ("non_compliant", True)

    # A firewall now lists the Linode, so the finding resolves and loses its acknowledgement.
    async with SessionLocal() as session:
        await record_inventory_sync(
            session,
            "acct-ack",
            [linode("101", tags=["env:prod"]), firewall("9001", entities=["101"])],
            trigger_evaluation=False,
        )
    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-ack", now=T0 + timedelta(hours=2))
    statuses = await _statuses("acct-ack")
    assert statuses[rules["firewall"]] == ("compliant", False)
    assert statuses[rules["combo"]] == ("compliant", False)
    assert summary.score == 100


@pytest.mark.asyncio
async def test_deactivated_rule_results_are_removed_but_still_feed_composites() -> None:
    rules = await _setup_tagged_linode_without_firewall("acct-stale")
    async with SessionLocal() as session:
        await run_evaluation(session, "acct-stale", now=T0)
        await toggle_rule(
            session, account_id="acct-stale", rule_id=rules["firewall"], is_active=False, actor_id="ops"
        )
        await session.commit()

    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-stale", now=T0 + timedelta(minutes=5))

    statuses = await _statuses("acct-stale")
    assert rules["firewall"] not in statuses
    assert statuses[rules["combo"]] == ("non_compliant", False)
    assert summary.total == 2


@pytest.mark.asyncio
async def test_history_is_appended_per_run() -> None:
    await _setup_tagged_linode_without_firewall("acct-history")
    async with SessionLocal() as session:
        await run_evaluation(session, "acct-history", now=T0)
        await run_evaluation(session, "acct-history", now=T0 + timedelta(days=1))

    async with SessionLocal() as session:
        rows = await history_repo.list_score_history(session, "acct-history")
        runs = await history_repo.list_runs(session, "acct-history")
    assert len(rows) == 2
    assert [row.compliance_score for row in rows] == [33, 33]
    assert {run.status for run in runs} == {"succeeded"}
    timeline = ScoreTimeline.from_history(rows)
    assert timeline.at(T0 + timedelta(hours=12)).run_id == rows[0].run_id


@pytest.mark.asyncio
async def test_resource_history_records_rule_statuses() -> None:
    rules = await _setup_tagged_linode_without_firewall("acct-resource-history")
    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-resource-history", now=T0)
        [finding] = await results_repo.list_results(session, "acct-resource-history", rule_id=rules["tags"])
        rows = await history_repo.list_resource_history(session, finding.resource_id)
    assert len(rows) == 1
    assert rows[0].run_id == summary.run_id
    statuses = {entry["rule_id"]: entry["status"] for entry in rows[0].results}
    assert statuses == {
        rules["tags"]: "compliant",
        rules["firewall"]: "non_compliant",
        rules["combo"]: "non_compliant",
    }


@pytest.mark.asyncio
async def test_account_wide_rule_yields_one_result() -> None:
    await create_test_account(
        "acct-tfa",
        settings_json={"users": [{"username": "alice", "tfa_enabled": False}]},
        resources=[linode("101"), linode("102")],
    )
    rule_id = await create_test_rule("acct-tfa", "TFA", "tfa_users")
    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-tfa", now=T0)
        rows = await results_repo.list_results(session, "acct-tfa")
    assert summary.total == 1
    assert rows[0].rule_id == rule_id
    assert rows[0].resource_id is None
    assert rows[0].status == "non_compliant"


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected_while_lock_held() -> None:
    await create_test_account("acct-busy", resources=[linode("101")])
    lock = await acquire_run_lock("acct-busy")
    try:
        assert is_locally_held("acct-busy")
        async with SessionLocal() as session:
            with pytest.raises(ConcurrencyConflictError):
                await run_evaluation(session, "acct-busy")
    finally:
        await release_run_lock(lock)
    assert not is_locally_held("acct-busy")

    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-busy")
    assert summary.total == 0
    assert summary.score is None


@pytest.mark.asyncio
async def test_unknown_account_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await run_evaluation(session, "missing")


async def _resync(account_id: str, last_backup: str) -> None:
    async with SessionLocal() as session:
        await record_inventory_sync(
            session,
            account_id,
            [linode("101", tags=["env:prod"], backups_enabled=True, backups_last_successful=last_backup)],
            trigger_evaluation=False,
        )


@pytest.mark.asyncio
async def test_failing_check_keeps_last_known_status_without_aborting_run() -> None:
    await create_test_account(
        "acct-broken",
        resources=[
            linode("101", tags=["env:prod"], backups_enabled=True, backups_last_successful="not-a-date")
        ],
    )
    recency_id = await create_test_rule("acct-broken", "Recent backup", "linode_backup_recency")
    tags_id = await create_test_rule("acct-broken", "Has tags", "has_tags", resource_types=["linode"])

    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-broken", now=T0)
        [broken] = await results_repo.list_results(session, "acct-broken", rule_id=recency_id)
    assert len(summary.errors) == 1
    assert summary.errors[0]["rule_id"] == recency_id
    assert summary.errors[0]["resource_id"] == broken.resource_id
    assert broken.status == "not_applicable"
    assert broken.detail.startswith("Evaluation error:")
    assert (await _statuses("acct-broken"))[tags_id] == ("compliant", False)

    # A readable but stale backup yields a real verdict.
    await _resync("acct-broken", (T0 - timedelta(days=30)).isoformat())
    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-broken", now=T0 + timedelta(hours=1))
    assert summary.errors == ()
    assert (await _statuses("acct-broken"))[recency_id] == ("non_compliant", False)

    # The check breaks again; the finding keeps its last persisted status.
    await _resync("acct-broken", "not-a-date")
    async with SessionLocal() as session:
        summary = await run_evaluation(session, "acct-broken", now=T0 + timedelta(hours=2))
        [broken] = await results_repo.list_results(session, "acct-broken", rule_id=recency_id)
    assert len(summary.errors) == 1
    assert broken.status == "non_compliant"
    assert broken.detail.startswith("Evaluation error:")
    assert summary.compliant == 1
    assert summary.non_compliant == 1


class _LockTimeout(Exception):
    sqlstate = "55P03"


@pytest.mark.asyncio
async def test_account_row_lock_timeout_is_a_concurrency_conflict(monkeypatch) -> None:
    await create_test_account("acct-row-lock", resources=[linode("101")])

    async def _held_elsewhere(session, account_id):
        raise DBAPIError("SELECT ... FOR UPDATE", {}, _LockTimeout("canceling statement due to lock timeout"))

    monkeypatch.setattr(accounts_repo, "lock_account", _held_elsewhere)
    async with SessionLocal() as session:
        with pytest.raises(ConcurrencyConflictError):
            await run_evaluation(session, "acct-row-lock", now=T0)
    monkeypatch.undo()

    async with SessionLocal() as session:
        [run] = await history_repo.list_runs(session, "acct-row-lock")
        assert await history_repo.list_score_history(session, "acct-row-lock") == []
    assert run.status == "failed"
    assert not is_locally_held("acct-row-lock")
