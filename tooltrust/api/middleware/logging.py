"""Structured JSON access logging with request-id correlation."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/health", "/ready"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http_request`` event per request.

    An inbound ``X-Request-ID`` is reused, otherwise one is generated. The id
    is bound into the structlog context for the duration of the request, so
    domain log events carry it too, and echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            _log_for(request, response.status_code)(
                "http_request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client=request.client.host if request.client else None,
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _log_for(request: Request, status_code: int):
    if status_code >= 500:
        return logger.error
    if status_code >= 400:
        return logger.warning
    if request.url.path in QUIET_PATHS:
        return logger.debug
    return logger.info
