from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import AccountProfile, ComplianceProfile


async def list_profiles(session: AsyncSession) -> list[ComplianceProfile]:
    result = await session.execute(
        select(ComplianceProfile).order_by(ComplianceProfile.is_builtin.desc(), ComplianceProfile.slug)
    )
    return list(result.scalars().all())


async def get_profile(session: AsyncSession, profile_id: str) -> ComplianceProfile | None:
    return await session.get(ComplianceProfile, profile_id)


async def get_profile_by_slug(session: AsyncSession, slug: str) -> ComplianceProfile | None:
    result = await session.execute(select(ComplianceProfile).where(ComplianceProfile.slug == slug))
    return result.scalar_one_or_none()


async def get_account_profile(session: AsyncSession, account_id: str) -> AccountProfile | None:
    return await session.get(AccountProfile, account_id)


async def get_active_profile(session: AsyncSession, account_id: str) -> ComplianceProfile | None:
    result = await session.execute(
        select(ComplianceProfile)
        .join(AccountProfile, AccountProfile.profile_id == ComplianceProfile.id)
        .where(AccountProfile.account_id == account_id)
    )
    return result.scalar_one_or_none()


async def list_active_assignments(session: AsyncSession) -> list[tuple[str, ComplianceProfile]]:
    # Every (account, active profile) pair; used to guard deletes of global rules.
    result = await session.execute(
        select(AccountProfile.account_id, ComplianceProfile)
        .join(ComplianceProfile, AccountProfile.profile_id == ComplianceProfile.id)
        .order_by(AccountProfile.account_id)
    )
    return [(account_id, profile) for account_id, profile in result.all()]


async def set_account_profile(
    session: AsyncSession,
    *,
    account_id: str,
    profile_id: str,
    activated_by: str | None,
) -> AccountProfile:
    row = await session.get(AccountProfile, account_id)
    if row is None:
        row = AccountProfile(account_id=account_id, profile_id=profile_id)
        session.add(row)
    row.profile_id = profile_id
    row.activated_by = activated_by
    await session.flush()
    return row


async def clear_account_profile(session: AsyncSession, account_id: str) -> bool:
    result = await session.execute(delete(AccountProfile).where(AccountProfile.account_id == account_id))
    return bool(result.rowcount)
