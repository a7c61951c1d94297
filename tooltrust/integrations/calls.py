"""Timeout and error normalization for calls to external collaborators."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import httpx
import structlog

from tooltrust.shared.errors import ExternalServiceError

logger = structlog.get_logger()

T = TypeVar("T")


async def call_external(service: str, operation: str, call: Awaitable[T], timeout: float) -> T:
    """Await ``call`` under ``timeout`` seconds, surfacing failures as ExternalServiceError.

    Never retries; the caller decides whether to try again.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except ExternalServiceError:
        raise
    except TimeoutError as exc:
        logger.warning("external_call_timeout", service=service, operation=operation, timeout=timeout)
        raise ExternalServiceError(
            f"{service} {operation} timed out after {timeout}s",
            service=service,
            operation=operation,
        ) from exc
    except (httpx.HTTPError, OSError) as exc:
        logger.warning(
            "external_call_failed", service=service, operation=operation, error=str(exc)
        )
        raise ExternalServiceError(
            f"{service} {operation} failed: {exc}",
            service=service,
            operation=operation,
        ) from exc
