"""Velocity counters kept in Redis, shared across service instances."""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from redis.exceptions import LockError, RedisError

from tooltrust.shared.errors import ExternalServiceError

from .models import VelocityLimit

logger = structlog.get_logger()


class RedisVelocityStore:
    """Stores each user's limits as one JSON document.

    Writers serialize on a Redis lock per user, so check-and-reserve stays
    atomic across processes. The lock expires on its own if a holder dies.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "tooltrust",
        lock_timeout: float = 5.0,
        blocking_timeout: float = 2.0,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def locked_limits(self, user_id: str) -> AsyncIterator[list[VelocityLimit]]:
        lock = self._redis.lock(
            f"{self._prefix}:velocity:lock:{user_id}",
            timeout=self._lock_timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise ExternalServiceError(
                f"Redis unavailable: {exc}", service="redis", operation="lock"
            ) from exc
        if not acquired:
            raise ExternalServiceError(
                f"Timed out waiting for the velocity lock of {user_id}",
                service="redis",
                operation="lock",
                user_id=user_id,
            )
        try:
            working = await self._read(user_id)
            yield working
            await self._write(user_id, working)
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("velocity_lock_expired_before_release", user_id=user_id)

    async def get_limits(self, user_id: str) -> list[VelocityLimit]:
        return await self._read(user_id)

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:velocity:{user_id}"

    async def _read(self, user_id: str) -> list[VelocityLimit]:
        try:
            raw = await self._redis.get(self._key(user_id))
        except RedisError as exc:
            raise ExternalServiceError(
                f"Redis unavailable: {exc}", service="redis", operation="get"
            ) from exc
        if raw is None:
            return []
        return [VelocityLimit.model_validate(item) for item in json.loads(raw)]

    async def _write(self, user_id: str, limits: list[VelocityLimit]) -> None:
        payload = json.dumps([limit.model_dump(mode="json") for limit in limits])
        try:
            await self._redis.set(self._key(user_id), payload)
        except RedisError as exc:
            raise ExternalServiceError(
                f"Redis unavailable: {exc}", service="redis", operation="set"
            ) from exc
