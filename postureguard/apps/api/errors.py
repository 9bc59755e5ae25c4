from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from postureguard.apps.api.response import error_response, is_versioned_request
from postureguard.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    EvaluationError,
    EvaluationRunError,
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    PostureGuardError,
    ReferentialError,
)
from postureguard.persistence.guards import AccountPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[PostureGuardError], int, str], ...] = (
    (ConfigurationError, 422, "RULE_CONFIGURATION_INVALID"),
    (ConcurrencyConflictError, 409, "EVALUATION_IN_PROGRESS"),
    (ReferentialError, 409, "RULE_IN_USE"),
    (NotFoundError, 404, "NOT_FOUND"),
    (PermissionDeniedError, 403, "AUTH_FORBIDDEN"),
    (InvalidRequestError, 400, "INVALID_REQUEST"),
    (EvaluationRunError, 500, "EVALUATION_FAILED"),
    (EvaluationError, 500, "EVALUATION_FAILED"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail is either {"code", "message", ...extra} or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(request: Request, status_code: int, detail: Any, headers: dict[str, str] | None = None) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": detail}, status_code=status_code, headers=headers)
    code, message, details = _split_detail(detail, status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _envelope(request, exc.status_code, exc.detail, exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _envelope(request, exc.status_code, exc.detail, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


def domain_error_status(exc: PostureGuardError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def domain_exception_handler(request: Request, exc: PostureGuardError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    detail: dict[str, Any] = {"code": code, "message": str(exc)}
    if isinstance(exc, EvaluationRunError) and exc.run_id:
        detail["run_id"] = exc.run_id
    if status_code >= 500:
        logger.error("domain_error code=%s path=%s message=%s", code, request.url.path, exc)
    return _envelope(request, status_code, detail)


async def account_predicate_exception_handler(request: Request, exc: AccountPredicateError) -> JSONResponse:
    # A missing account predicate is a server bug; never return unscoped rows.
    logger.error("account_predicate_missing path=%s", request.url.path)
    return _envelope(
        request,
        500,
        {"code": "ACCOUNT_PREDICATE_REQUIRED", "message": exc.message},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
