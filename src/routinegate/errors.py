"""Error taxonomy shared by every RoutineGate component.

Each error carries a stable ``code`` for callers that dispatch on failure
kind, and a human-readable ``reason`` that doubles as the exception message.
"""

from __future__ import annotations

from typing import Any


class RoutineGateError(Exception):
    """Base class for failures surfaced to callers."""

    code = "INTERNAL_ERROR"

    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}


class ValidationError(RoutineGateError):
    """Statement or request rejected before anything was executed."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        reason: str,
        *,
        reasons: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(reason, details=details)
        self.reasons = reasons or [reason]


class NotFoundError(RoutineGateError):
    """Unknown transaction, missing draft or missing version."""

    code = "NOT_FOUND"


class PoolExhaustedError(RoutineGateError):
    """No pooled connection became available within the wait bound."""

    code = "POOL_EXHAUSTED"


class EngineError(RoutineGateError):
    """The database rejected or failed a statement."""

    code = "ENGINE_ERROR"


class LimitExceededError(RoutineGateError):
    """A write affected more rows than the configured ceiling."""

    code = "LIMIT_EXCEEDED"


class FeatureDisabledError(RoutineGateError):
    """The requested operation is switched off by configuration."""

    code = "FEATURE_DISABLED"
