"""Health and readiness endpoints."""

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from tooltrust.config import settings

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from tooltrust.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready() -> JSONResponse:
    checks: dict[str, bool] = {}

    if settings.storage_backend == "database":
        from tooltrust.db.database import check_db

        checks["database"] = await check_db()

    if settings.velocity_backend == "redis":
        checks["redis"] = await _check_redis()

    all_ready = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={"status": "ready" if all_ready else "degraded", **checks},
    )


async def _check_redis() -> bool:
    client = aioredis.from_url(settings.redis_url)
    try:
        await client.ping()
        return True
    except RedisError:
        logger.warning("redis_check_failed")
        return False
    finally:
        await client.aclose()
