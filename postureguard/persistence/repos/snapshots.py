from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import ResourceSnapshot
from postureguard.persistence.guards import account_predicate


async def latest_snapshot(session: AsyncSession, resource_id: str) -> ResourceSnapshot | None:
    result = await session.execute(
        select(ResourceSnapshot)
        .where(ResourceSnapshot.resource_id == resource_id)
        .order_by(ResourceSnapshot.synced_at.desc(), ResourceSnapshot.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_resource_snapshots(
    session: AsyncSession, resource_id: str, *, limit: int
) -> list[ResourceSnapshot]:
    result = await session.execute(
        select(ResourceSnapshot)
        .where(ResourceSnapshot.resource_id == resource_id)
        .order_by(ResourceSnapshot.synced_at.desc(), ResourceSnapshot.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_account_snapshots(
    session: AsyncSession,
    account_id: str,
    *,
    changes_only: bool = False,
    limit: int,
) -> list[ResourceSnapshot]:
    stmt = select(ResourceSnapshot).where(account_predicate(ResourceSnapshot, account_id))
    if changes_only:
        stmt = stmt.where(ResourceSnapshot.diff.is_not(None))
    result = await session.execute(
        stmt.order_by(ResourceSnapshot.synced_at.desc(), ResourceSnapshot.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
