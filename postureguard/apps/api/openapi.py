from __future__ import annotations

from typing import Any

from postureguard.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "INVALID_REQUEST", "Only non_compliant results can be acknowledged"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Identity headers are required"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Insufficient role for this operation"),
    404: _response("Not found", "NOT_FOUND", "Rule not found"),
    409: _response(
        "Conflict",
        "RULE_IN_USE",
        "Rule is enabled by the active profile Level 1 - Foundation; switch profiles first",
    ),
    422: _response(
        "Invalid rule configuration",
        "RULE_CONFIGURATION_INVALID",
        "Composite reference cycle: rule-a -> rule-b -> rule-a",
    ),
    500: _response(
        "Evaluation failed",
        "EVALUATION_FAILED",
        "Evaluation run failed",
        details={"run_id": "4f7c1f1e-2d1b-4a53-a7a5-0c3f5a2e9d10"},
    ),
    503: _response("Service unavailable", "COMPLIANCE_DISABLED", "Compliance evaluation is disabled"),
}
