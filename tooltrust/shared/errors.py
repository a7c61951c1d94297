"""Error taxonomy shared by the dispute and fraud domains.

Every error carries a stable ``code`` and a ``retryable`` flag so that the
HTTP layer (and any other caller) can decide how to react without string
matching on messages.
"""

from typing import Any


class TrustError(Exception):
    code = "trust_error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(TrustError):
    """Malformed or out-of-policy input. The caller can correct it."""

    code = "validation_error"


class AccessDenied(TrustError):
    code = "access_denied"


class NotFoundError(TrustError):
    code = "not_found"


class InvalidStateError(TrustError):
    """Operation is not valid for the entity's current state."""

    code = "invalid_state"


class DuplicateError(TrustError):
    code = "duplicate"


class AlreadyActiveError(DuplicateError):
    code = "already_active"


class LimitExceededError(TrustError):
    """A velocity or risk policy rejected the action. Not a system fault."""

    code = "limit_exceeded"

    def __init__(self, message: str, limit_type: str | None = None, **details: Any) -> None:
        super().__init__(message, limit_type=limit_type, **details)
        self.limit_type = limit_type


class ExternalServiceError(TrustError):
    """External collaborator unreachable, timed out or failed. Safe to retry."""

    code = "external_service_error"
    retryable = True

    def __init__(self, message: str, service: str = "unknown", **details: Any) -> None:
        super().__init__(message, service=service, **details)
        self.service = service


class ConcurrencyConflict(TrustError):
    """Stale write detected by a version compare-and-swap."""

    code = "concurrency_conflict"
    retryable = True
