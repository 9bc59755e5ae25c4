from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import ComplianceScoreHistory, EvaluationRun, ResourceComplianceHistory
from postureguard.persistence.guards import account_predicate


async def list_score_history(
    session: AsyncSession,
    account_id: str,
    *,
    since: datetime | None = None,
) -> list[ComplianceScoreHistory]:
    # Oldest first so callers can build timelines without re-sorting.
    stmt = select(ComplianceScoreHistory).where(account_predicate(ComplianceScoreHistory, account_id))
    if since is not None:
        stmt = stmt.where(ComplianceScoreHistory.evaluated_at >= since)
    result = await session.execute(
        stmt.order_by(ComplianceScoreHistory.evaluated_at, ComplianceScoreHistory.id)
    )
    return list(result.scalars().all())


async def latest_score_points(
    session: AsyncSession, account_id: str, *, limit: int = 2
) -> list[ComplianceScoreHistory]:
    # Newest first.
    result = await session.execute(
        select(ComplianceScoreHistory)
        .where(account_predicate(ComplianceScoreHistory, account_id))
        .order_by(ComplianceScoreHistory.evaluated_at.desc(), ComplianceScoreHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_resource_history(
    session: AsyncSession, resource_id: str, *, limit: int | None = None
) -> list[ResourceComplianceHistory]:
    # Oldest first; with a limit, keep the most recent rows.
    stmt = (
        select(ResourceComplianceHistory)
        .where(ResourceComplianceHistory.resource_id == resource_id)
        .order_by(ResourceComplianceHistory.evaluated_at.desc(), ResourceComplianceHistory.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(reversed(result.scalars().all()))


async def list_runs(session: AsyncSession, account_id: str, *, limit: int = 20) -> list[EvaluationRun]:
    result = await session.execute(
        select(EvaluationRun)
        .where(account_predicate(EvaluationRun, account_id))
        .order_by(EvaluationRun.started_at.desc(), EvaluationRun.id)
        .limit(limit)
    )
    return list(result.scalars().all())
