from __future__ import annotations

from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import Account


async def create_account(
    session: AsyncSession,
    *,
    account_id: str,
    name: str,
    settings_json: dict[str, Any] | None = None,
) -> Account:
    account = Account(id=account_id, name=name, settings_json=dict(settings_json or {}))
    session.add(account)
    return account


async def get_account(session: AsyncSession, account_id: str) -> Account | None:
    return await session.get(Account, account_id)


def account_lock_statement(account_id: str) -> Select:
    # Row lock that serializes evaluation passes for one account across processes.
    return (
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


async def lock_account(session: AsyncSession, account_id: str) -> Account | None:
    result = await session.execute(account_lock_statement(account_id))
    return result.scalar_one_or_none()


async def list_accounts(session: AsyncSession) -> list[Account]:
    result = await session.execute(select(Account).order_by(Account.created_at, Account.id))
    return list(result.scalars().all())


async def update_settings(session: AsyncSession, account: Account, patch: dict[str, Any]) -> Account:
    # Shallow-merge so callers can replace users or logins independently.
    merged = dict(account.settings_json or {})
    merged.update(patch)
    account.settings_json = merged
    await session.flush()
    return account
