from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Account the route was scoped to, echoed so UI clients can cache per account.
    account_id: str | None = None
    # Number of items when ``data`` is a list (results, snapshots, drill-down groups).
    count: int | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the middleware-assigned id so envelopes, logs and audit rows agree.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request, *, count: int | None = None) -> dict[str, Any]:
    meta = ResponseMeta(
        request_id=get_request_id(request),
        account_id=request.path_params.get("account_id"),
        count=count,
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> Any:
    """Wrap ``data`` in the v1 envelope; unversioned paths get the bare payload."""
    if not is_versioned_request(request):
        return data
    count = len(data) if isinstance(data, list) else None
    return {"data": data, "meta": _meta(request, count=count)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
