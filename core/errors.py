"""Error taxonomy for numbering and settlement.

Every error raised by the billing core derives from BillingError so the
HTTP layer can render it with one handler, and batch operations can
record it per item under its code.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for billing core errors."""

    code = "billing_error"
    http_status = 500
    retry_safe = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retry_safe": self.retry_safe,
            "details": self.details,
        }


class ValidationError(BillingError):
    """Malformed scope, kind or payload (rejected before any store access)."""
    code = "validation_error"
    http_status = 422


class IllegalTransitionError(ValidationError):
    """Requested status change is not a legal transition."""
    code = "illegal_transition"
    http_status = 409


class CollisionExhausted(BillingError):
    """Numbering retry budget exceeded for a scope.

    Safe to resubmit: the next attempt recomputes the scope's max.
    """
    code = "collision_exhausted"
    http_status = 409
    retry_safe = True

    def __init__(self, message: str, attempts: int = 0, last_candidate: Optional[str] = None):
        super().__init__(message, {"attempts": attempts, "last_candidate": last_candidate})
        self.attempts = attempts
        self.last_candidate = last_candidate


class NotFoundError(BillingError):
    """Reconciliation or creation target is absent."""
    code = "not_found"
    http_status = 404


class InconsistentStateError(BillingError):
    """Records disagree in a way that must not be auto-corrected (logged and skipped)."""
    code = "inconsistent_state"
    http_status = 409
