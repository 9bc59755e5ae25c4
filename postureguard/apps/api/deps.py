from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import get_settings
from postureguard.domain.models import Account, Resource
from postureguard.persistence.db import get_session
from postureguard.persistence.repos import accounts as accounts_repo
from postureguard.persistence.repos import resources as resources_repo
from postureguard.services.audit import get_request_id, record_event
from postureguard.services.auth.roles import normalize_role, role_allows


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway.
    actor_id: str
    role: str
    # None means the caller may reach every account (operator tooling).
    account_id: str | None = None

    def can_access(self, account_id: str) -> bool:
        return self.account_id is None or self.account_id == account_id


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for identified principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _principal_from_headers(request: Request) -> Principal:
    settings = get_settings()
    actor_id = request.headers.get("X-Actor-Id")
    if not actor_id:
        raise _auth_error("X-Actor-Id header is required")
    role_header = request.headers.get("X-Role") or settings.auth_default_role
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(actor_id=actor_id, role=role, account_id=request.headers.get("X-Account-Id") or None)


async def get_current_principal(request: Request) -> Principal:
    if not get_settings().auth_trusted_headers:
        raise _auth_error("Identity headers are not trusted by this deployment")
    return _principal_from_headers(request)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            # Log RBAC denials before raising a 403 response.
            await record_event(
                session=db,
                account_id=principal.account_id,
                actor_type="user",
                actor_id=principal.actor_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=get_request_id(request),
                metadata={**_request_metadata(request), "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
                commit=True,
                best_effort=True,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


async def load_account(db: AsyncSession, principal: Principal, account_id: str) -> Account:
    # Accounts outside the principal's scope look exactly like missing ones.
    account = None
    if principal.can_access(account_id):
        account = await accounts_repo.get_account(db, account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Account not found"},
        )
    return account


async def load_resource(db: AsyncSession, principal: Principal, resource_id: str) -> Resource:
    resource = await resources_repo.get_resource(db, resource_id)
    if resource is None or not principal.can_access(resource.account_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Resource not found"},
        )
    return resource


async def audit(
    request: Request,
    db: AsyncSession,
    principal: Principal,
    *,
    account_id: str | None,
    event_type: str,
    resource_type: str,
    resource_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    # Route-level success events commit on the request session.
    await record_event(
        session=db,
        account_id=account_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome="success",
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=get_request_id(request),
        metadata=metadata,
        commit=True,
        best_effort=True,
    )
