from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import (
    EvaluationResult,
    Resource,
    ResourceComplianceHistory,
    ResourceSnapshot,
    ResultNote,
)
from postureguard.persistence.guards import account_predicate


async def list_resources(
    session: AsyncSession,
    account_id: str,
    *,
    resource_type: str | None = None,
) -> list[Resource]:
    stmt = select(Resource).where(account_predicate(Resource, account_id))
    if resource_type:
        stmt = stmt.where(Resource.resource_type == resource_type)
    result = await session.execute(stmt.order_by(Resource.resource_type, Resource.label, Resource.id))
    return list(result.scalars().all())


async def get_resource(session: AsyncSession, resource_id: str) -> Resource | None:
    return await session.get(Resource, resource_id)


async def get_resource_for_account(
    session: AsyncSession, account_id: str, resource_id: str
) -> Resource | None:
    # Return None for account mismatch to keep 404 semantics.
    result = await session.execute(
        select(Resource).where(account_predicate(Resource, account_id), Resource.id == resource_id)
    )
    return result.scalar_one_or_none()


async def delete_resource_cascade(session: AsyncSession, resource: Resource) -> None:
    # Remove dependents explicitly so the cascade also holds where FK enforcement is off.
    result_ids = select(EvaluationResult.id).where(EvaluationResult.resource_id == resource.id)
    await session.execute(delete(ResultNote).where(ResultNote.result_id.in_(result_ids)))
    await session.execute(delete(EvaluationResult).where(EvaluationResult.resource_id == resource.id))
    await session.execute(delete(ResourceSnapshot).where(ResourceSnapshot.resource_id == resource.id))
    await session.execute(
        delete(ResourceComplianceHistory).where(ResourceComplianceHistory.resource_id == resource.id)
    )
    await session.delete(resource)
    await session.flush()
