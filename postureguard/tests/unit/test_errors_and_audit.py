from __future__ import annotations

import pytest

from postureguard.apps.api.errors import domain_error_status
from postureguard.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    EvaluationRunError,
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    PostureGuardError,
    ReferentialError,
)
from postureguard.services.audit import sanitize_metadata
from postureguard.services.auth.roles import normalize_role, role_allows


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConfigurationError("bad"), (422, "RULE_CONFIGURATION_INVALID")),
        (ConcurrencyConflictError("busy"), (409, "EVALUATION_IN_PROGRESS")),
        (ReferentialError("in use"), (409, "RULE_IN_USE")),
        (NotFoundError("gone"), (404, "NOT_FOUND")),
        (PermissionDeniedError("no"), (403, "AUTH_FORBIDDEN")),
        (InvalidRequestError("nope"), (400, "INVALID_REQUEST")),
        (EvaluationRunError("boom", run_id="run-1"), (500, "EVALUATION_FAILED")),
        (PostureGuardError("other"), (500, "INTERNAL_ERROR")),
    ],
)
def test_domain_errors_map_to_http(error: PostureGuardError, expected: tuple[int, str]) -> None:
    assert domain_error_status(error) == expected


def test_sanitize_metadata_redacts_nested_credentials() -> None:
    payload = {
        "rule_id": "r1",
        "headers": {"Authorization": "Bearer abc", "x-trace": "t"},
        "items": [{"api_key": "k"}, {"name": "ok"}],
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["rule_id"] == "r1"
    assert sanitized["headers"]["Authorization"] == "[REDACTED]"
    assert sanitized["headers"]["x-trace"] == "t"
    assert sanitized["items"][0]["api_key"] == "[REDACTED]"
    assert sanitized["items"][1] == {"name": "ok"}


def test_role_hierarchy() -> None:
    assert role_allows(role="admin", minimum_role="editor")
    assert role_allows(role="editor", minimum_role="editor")
    assert not role_allows(role="reader", minimum_role="editor")
    assert not role_allows(role=None, minimum_role="reader")


def test_normalize_role() -> None:
    assert normalize_role(" Editor ") == "editor"
    with pytest.raises(ValueError):
        normalize_role("owner")
