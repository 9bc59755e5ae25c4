from __future__ import annotations


class PostureGuardError(Exception):
    """Base error for PostureGuard."""


class ConfigurationError(PostureGuardError):
    """Invalid rule configuration: unknown condition type, bad config, composite cycle or missing sub-rule."""


class EvaluationError(PostureGuardError):
    """A leaf check failed for a specific rule/resource pair."""

    def __init__(self, message: str, *, rule_id: str | None = None, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.rule_id = rule_id
        self.resource_id = resource_id


class EvaluationRunError(PostureGuardError):
    """An evaluation pass failed outside per-item evaluation and was rolled back."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class ConcurrencyConflictError(PostureGuardError):
    """Another evaluation run already holds the account's run lock."""


class ReferentialError(PostureGuardError):
    """The requested delete would break a reference (active profile or composite rule)."""


class NotFoundError(PostureGuardError):
    """Requested entity does not exist or is outside the caller's account scope."""


class PermissionDeniedError(PostureGuardError):
    """Caller role is insufficient for the requested mutation."""


class InvalidRequestError(PostureGuardError):
    """The request is well-formed but not valid for the entity's current state."""
