from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import EvaluationResult, ResultNote
from postureguard.persistence.guards import account_predicate


async def list_results(
    session: AsyncSession,
    account_id: str,
    *,
    status: str | None = None,
    acknowledged: bool | None = None,
    rule_id: str | None = None,
    resource_id: str | None = None,
) -> list[EvaluationResult]:
    stmt = select(EvaluationResult).where(account_predicate(EvaluationResult, account_id))
    if status is not None:
        stmt = stmt.where(EvaluationResult.status == status)
    if acknowledged is not None:
        stmt = stmt.where(EvaluationResult.acknowledged.is_(acknowledged))
    if rule_id is not None:
        stmt = stmt.where(EvaluationResult.rule_id == rule_id)
    if resource_id is not None:
        stmt = stmt.where(EvaluationResult.resource_id == resource_id)
    result = await session.execute(
        stmt.order_by(EvaluationResult.rule_id, EvaluationResult.resource_key, EvaluationResult.id)
    )
    return list(result.scalars().all())


async def get_result(session: AsyncSession, result_id: str) -> EvaluationResult | None:
    return await session.get(EvaluationResult, result_id)


async def add_note(
    session: AsyncSession,
    *,
    result: EvaluationResult,
    note: str,
    created_by: str | None,
) -> ResultNote:
    row = ResultNote(result_id=result.id, account_id=result.account_id, note=note, created_by=created_by)
    session.add(row)
    await session.flush()
    return row


async def list_notes(session: AsyncSession, result_id: str) -> list[ResultNote]:
    result = await session.execute(
        select(ResultNote).where(ResultNote.result_id == result_id).order_by(ResultNote.id)
    )
    return list(result.scalars().all())
