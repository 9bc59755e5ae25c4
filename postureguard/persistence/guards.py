from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import or_

from postureguard.core.config import get_settings


@dataclass(frozen=True)
class AccountPredicateError(RuntimeError):
    # Surface missing account predicates when guard enforcement is enabled.
    message: str


def require_account_id(account_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_account_predicate:
        return
    if not account_id:
        raise AccountPredicateError("Account predicate required but account_id is missing")


def account_predicate(model, account_id: str) -> object:
    # Build account predicates through a single helper to guarantee guard coverage.
    require_account_id(account_id)
    return model.account_id == account_id


def visible_to_account(model, account_id: str) -> object:
    # Global rows (null account) are visible to every account alongside its own rows.
    require_account_id(account_id)
    return or_(model.account_id.is_(None), model.account_id == account_id)
