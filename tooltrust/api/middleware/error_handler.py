"""Exception handling: domain errors map to HTTP statuses, the rest to a generic 500."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from tooltrust.shared.errors import (
    AccessDenied,
    ConcurrencyConflict,
    DuplicateError,
    ExternalServiceError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    TrustError,
    ValidationError,
)

logger = structlog.get_logger()

# Most specific first; AlreadyActiveError is covered by DuplicateError
STATUS_CODES: list[tuple[type[TrustError], int]] = [
    (ValidationError, 400),
    (AccessDenied, 403),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (DuplicateError, 409),
    (ConcurrencyConflict, 409),
    (LimitExceededError, 429),
    (ExternalServiceError, 503),
]


def status_for(exc: TrustError) -> int:
    for error_cls, status_code in STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 500


async def trust_error_handler(request: Request, exc: TrustError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        exc.code,
        request_id=request_id,
        status_code=status_code,
        error=exc.message,
        retryable=exc.retryable,
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={**exc.to_dict(), "request_id": request_id},
        headers=headers,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    logger.exception("unhandled_exception", request_id=request_id, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "details": {},
            "retryable": False,
            "request_id": request_id,
        },
    )
