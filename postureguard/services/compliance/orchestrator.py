from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import get_settings
from postureguard.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    EvaluationError,
    EvaluationRunError,
    NotFoundError,
)
from postureguard.domain.conditions import COMPOSITE_CONDITION_TYPE, CompositeCondition, ConditionConfig, parse_condition
from postureguard.domain.models import (
    Account,
    ComplianceRule,
    ComplianceScoreHistory,
    EvaluationResult,
    EvaluationRun,
    ResourceComplianceHistory,
    ResultNote,
)
from postureguard.persistence.db import bound_lock_wait
from postureguard.persistence.repos import accounts as accounts_repo
from postureguard.persistence.repos import resources as resources_repo
from postureguard.persistence.repos import results as results_repo
from postureguard.services.audit import record_event
from postureguard.services.compliance.activation import load_account_rule_set
from postureguard.services.compliance.composite import (
    ScopeKey,
    composite_scopes,
    evaluation_order,
    resolve_composite,
)
from postureguard.services.compliance.leaf import applicable_resource_types, condition_spec, evaluate_condition
from postureguard.services.compliance.run_lock import acquire_run_lock, release_run_lock
from postureguard.services.compliance.verdicts import (
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    EvaluationContext,
    ResourceRecord,
    Verdict,
    not_applicable,
)
from postureguard.services.scoring.aggregation import rule_breakdown, tally


logger = logging.getLogger(__name__)

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCEEDED = "succeeded"
RUN_STATUS_FAILED = "failed"

TRIGGER_MANUAL = "manual"
TRIGGER_SYNC = "sync"
TRIGGER_SCHEDULE = "schedule"
TRIGGERS = (TRIGGER_MANUAL, TRIGGER_SYNC, TRIGGER_SCHEDULE)

# Postgres lock_not_available, raised when lock_timeout expires.
_LOCK_NOT_AVAILABLE = "55P03"


@dataclass(frozen=True)
class EvaluationSummary:
    run_id: str
    account_id: str
    trigger: str
    total: int
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    score: int | None
    rules_evaluated: int
    evaluated_at: datetime
    errors: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["errors"] = list(self.errors)
        payload["evaluated_at"] = self.evaluated_at.isoformat()
        return payload


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Pass:
    """Verdicts computed in one evaluation pass, before anything is written."""

    def __init__(
        self,
        *,
        rules: dict[str, ComplianceRule],
        records: list[ResourceRecord],
        context: EvaluationContext,
        previous: dict[tuple[str, str], EvaluationResult],
    ) -> None:
        self.rules = rules
        self.records = records
        self.context = context
        self.previous = previous
        self.verdicts: dict[str, dict[ScopeKey, Verdict]] = {}
        self.errors: list[dict[str, Any]] = []

    def fallback(self, rule_id: str, scope: ScopeKey, message: str) -> Verdict:
        # Keep the last known status so a broken check does not flip a finding.
        self.errors.append({"rule_id": rule_id, "resource_id": scope, "message": message})
        previous = self.previous.get((rule_id, scope or ""))
        status = previous.status if previous is not None else STATUS_NOT_APPLICABLE
        return Verdict(status, f"Evaluation error: {message}")

    def leaf_scopes(self, rule: ComplianceRule, condition: ConditionConfig | None) -> list[ResourceRecord | None]:
        if condition is not None and condition_spec(condition).account_wide:
            return [None]
        if not rule.resource_types:
            return [None]
        if condition is None:
            types = set(rule.resource_types)
        else:
            types = set(applicable_resource_types(condition, rule.resource_types))
        return [record for record in self.records if record.resource_type in types]

    def evaluate_leaf_rule(self, rule: ComplianceRule) -> None:
        verdicts: dict[ScopeKey, Verdict] = {}
        try:
            condition = parse_condition(rule.condition_type, rule.condition_config)
            condition_spec(condition)
        except ConfigurationError as exc:
            for record in self.leaf_scopes(rule, None):
                scope = record.id if record is not None else None
                verdicts[scope] = self.fallback(rule.id, scope, str(exc))
            self.verdicts[rule.id] = verdicts
            return

        for record in self.leaf_scopes(rule, condition):
            scope = record.id if record is not None else None
            try:
                verdicts[scope] = evaluate_condition(
                    condition, record, self.context, resource_types=rule.resource_types or None
                )
            except Exception as exc:  # noqa: BLE001
                error = EvaluationError(str(exc), rule_id=rule.id, resource_id=scope)
                logger.warning(
                    "compliance_leaf_failed rule_id=%s resource_id=%s", rule.id, scope, exc_info=exc
                )
                verdicts[scope] = self.fallback(error.rule_id or rule.id, scope, str(error))
        self.verdicts[rule.id] = verdicts

    def evaluate_composites(self, composite_ids: list[str]) -> None:
        composites: dict[str, CompositeCondition] = {}
        for rule_id in composite_ids:
            rule = self.rules[rule_id]
            try:
                condition = parse_condition(rule.condition_type, rule.condition_config)
            except ConfigurationError as exc:
                self.verdicts[rule_id] = {None: self.fallback(rule_id, None, str(exc))}
                continue
            if isinstance(condition, CompositeCondition):
                composites[rule_id] = condition

        order, failures = evaluation_order(composites, set(self.rules))
        for rule_id, message in failures.items():
            self.errors.append({"rule_id": rule_id, "resource_id": None, "message": message})
            self.verdicts[rule_id] = {None: not_applicable(f"Configuration error: {message}")}

        names = {rule_id: rule.name for rule_id, rule in self.rules.items()}
        for rule_id in order:
            condition = composites[rule_id]
            scopes = composite_scopes(condition, self.verdicts)
            if not scopes:
                self.verdicts[rule_id] = {None: not_applicable("No sub-rule results to combine.")}
                continue
            self.verdicts[rule_id] = {
                scope: resolve_composite(
                    condition,
                    {ref: self.verdicts.get(ref, {}).get(scope) for ref in condition.referenced_rule_ids()},
                    names,
                )
                for scope in scopes
            }


def _required_rule_ids(active: list[ComplianceRule], rules: dict[str, ComplianceRule]) -> set[str]:
    # Active rules plus every rule reachable through composite references.
    required: set[str] = set()
    stack = [rule.id for rule in active]
    while stack:
        rule_id = stack.pop()
        if rule_id in required or rule_id not in rules:
            continue
        required.add(rule_id)
        rule = rules[rule_id]
        if rule.condition_type != COMPOSITE_CONDITION_TYPE:
            continue
        try:
            condition = parse_condition(rule.condition_type, rule.condition_config)
        except ConfigurationError:
            continue
        if isinstance(condition, CompositeCondition):
            stack.extend(condition.referenced_rule_ids())
    return required


def _apply_verdict(row: EvaluationResult, verdict: Verdict, *, run_id: str, now: datetime) -> None:
    # Acknowledgement survives only while the finding stays non_compliant.
    if row.acknowledged and verdict.status != STATUS_NON_COMPLIANT:
        row.acknowledged = False
        row.acknowledged_at = None
        row.acknowledged_by = None
        row.acknowledged_note = None
    row.status = verdict.status
    row.detail = verdict.detail
    row.run_id = run_id
    row.evaluated_at = now


async def _lock_account_row(session: AsyncSession, account_id: str) -> Account:
    # Held until the pass commits, so history appends stay serialized even when
    # the redis lease is unavailable or lapses.
    await bound_lock_wait(session, get_settings().evaluation_lock_wait_s)
    try:
        account = await accounts_repo.lock_account(session, account_id)
    except DBAPIError as exc:
        if getattr(exc.orig, "sqlstate", None) == _LOCK_NOT_AVAILABLE:
            raise ConcurrencyConflictError(
                f"An evaluation is already running for account {account_id}"
            ) from exc
        raise
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return account


async def _evaluate_pass(
    session: AsyncSession,
    account: Account,
    *,
    run: EvaluationRun,
    now: datetime,
) -> EvaluationSummary:
    account = await _lock_account_row(session, account.id)
    rule_set = await load_account_rule_set(session, account.id)
    rules = {rule.id: rule for rule in rule_set.rules}
    active = rule_set.active_rules()
    resources = await resources_repo.list_resources(session, account.id)
    records = [ResourceRecord.from_model(row) for row in resources]
    context = EvaluationContext.build(
        account_id=account.id, settings=account.settings_json, resources=records, now=now
    )
    previous_rows = await results_repo.list_results(session, account.id)
    previous = {(row.rule_id, row.resource_key): row for row in previous_rows}

    evaluation = _Pass(rules=rules, records=records, context=context, previous=previous)
    required = _required_rule_ids(active, rules)
    ordered = [rule for rule in rule_set.rules if rule.id in required]
    for rule in ordered:
        if rule.condition_type != COMPOSITE_CONDITION_TYPE:
            evaluation.evaluate_leaf_rule(rule)
    evaluation.evaluate_composites(
        [rule.id for rule in ordered if rule.condition_type == COMPOSITE_CONDITION_TYPE]
    )

    # Persist live results for active rules only.
    live: list[EvaluationResult] = []
    produced: set[tuple[str, str]] = set()
    for rule in active:
        for scope, verdict in evaluation.verdicts.get(rule.id, {}).items():
            key = (rule.id, scope or "")
            produced.add(key)
            row = previous.get(key)
            if row is None:
                row = EvaluationResult(
                    id=str(uuid4()),
                    account_id=account.id,
                    rule_id=rule.id,
                    resource_id=scope,
                    resource_key=scope or "",
                    acknowledged=False,
                )
                session.add(row)
            _apply_verdict(row, verdict, run_id=run.id, now=now)
            live.append(row)

    stale_ids = [row.id for key, row in previous.items() if key not in produced]
    if stale_ids:
        await session.execute(delete(ResultNote).where(ResultNote.result_id.in_(stale_ids)))
        await session.execute(delete(EvaluationResult).where(EvaluationResult.id.in_(stale_ids)))

    per_resource: dict[str, list[dict[str, Any]]] = {}
    for row in live:
        if row.resource_id is None:
            continue
        rule = rules[row.rule_id]
        per_resource.setdefault(row.resource_id, []).append(
            {
                "rule_id": rule.id,
                "rule_name": rule.name,
                "severity": rule.severity,
                "status": row.status,
                "detail": row.detail,
                "acknowledged": bool(row.acknowledged),
            }
        )
    for resource_id, entries in per_resource.items():
        session.add(
            ResourceComplianceHistory(
                account_id=account.id,
                resource_id=resource_id,
                run_id=run.id,
                evaluated_at=now,
                results=entries,
            )
        )

    counts = tally(live)
    rules_evaluated = len({row.rule_id for row in live})
    session.add(
        ComplianceScoreHistory(
            account_id=account.id,
            run_id=run.id,
            evaluated_at=now,
            total_results=counts.total,
            compliant_count=counts.compliant,
            non_compliant_count=counts.non_compliant,
            not_applicable_count=counts.not_applicable,
            acknowledged_count=counts.acknowledged,
            compliance_score=counts.score,
            total_rules_evaluated=rules_evaluated,
            rule_breakdown=rule_breakdown(live, rules),
        )
    )

    summary = EvaluationSummary(
        run_id=run.id,
        account_id=account.id,
        trigger=run.trigger,
        total=counts.total,
        compliant=counts.compliant,
        non_compliant=counts.non_compliant,
        not_applicable=counts.not_applicable,
        acknowledged=counts.acknowledged,
        score=counts.score,
        rules_evaluated=rules_evaluated,
        evaluated_at=now,
        errors=tuple(evaluation.errors),
    )
    account.last_evaluated_at = now
    run.status = RUN_STATUS_SUCCEEDED
    run.completed_at = _utc_now()
    run.summary_json = summary.as_dict()
    return summary


async def run_evaluation(
    session: AsyncSession,
    account_id: str,
    *,
    trigger: str = TRIGGER_MANUAL,
    wait: bool = False,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> EvaluationSummary:
    """Evaluate every active rule for one account and commit the pass atomically.

    Raises ConcurrencyConflictError when another run holds the account lock and
    EvaluationRunError when the pass fails outside per-item evaluation.
    """
    account = await accounts_repo.get_account(session, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    lock = await acquire_run_lock(account_id, wait=wait)
    try:
        evaluated_at = now or _utc_now()
        run_id = str(uuid4())
        run = EvaluationRun(
            id=run_id,
            account_id=account_id,
            status=RUN_STATUS_RUNNING,
            trigger=trigger,
            started_at=evaluated_at,
        )
        session.add(run)
        await session.commit()

        try:
            summary = await _evaluate_pass(session, account, run=run, now=evaluated_at)
            await record_event(
                session=session,
                account_id=account_id,
                actor_type="user" if actor_id else "system",
                actor_id=actor_id,
                actor_role=None,
                event_type="evaluation.run.completed",
                outcome="success",
                resource_type="evaluation_run",
                resource_id=run_id,
                metadata={
                    "trigger": trigger,
                    "total": summary.total,
                    "score": summary.score,
                    "errors": len(summary.errors),
                },
            )
            await session.commit()
        except ConcurrencyConflictError as exc:
            # Another worker holds the account row; nothing from this pass was written.
            await session.rollback()
            await _mark_failed(session, run_id, str(exc))
            raise
        except Exception as exc:
            await session.rollback()
            await _mark_failed(session, run_id, str(exc))
            logger.exception("evaluation_run_failed account_id=%s run_id=%s", account_id, run_id)
            raise EvaluationRunError(f"Evaluation run {run_id} failed: {exc}", run_id=run_id) from exc

        logger.info(
            "evaluation_run_completed account_id=%s run_id=%s trigger=%s total=%s score=%s errors=%s",
            account_id,
            run_id,
            trigger,
            summary.total,
            summary.score,
            len(summary.errors),
        )
        return summary
    finally:
        await release_run_lock(lock)


async def _mark_failed(session: AsyncSession, run_id: str, message: str) -> None:
    run = await session.get(EvaluationRun, run_id)
    if run is None:
        return
    run.status = RUN_STATUS_FAILED
    run.completed_at = _utc_now()
    run.error_message = message
    await session.commit()
