"""Sliding-window velocity limits per user and limit type."""

from datetime import UTC, datetime
from decimal import Decimal

import structlog

from tooltrust.shared.errors import LimitExceededError, ValidationError

from .config import FraudConfig, default_config
from .models import VelocityDecision, VelocityLimit, VelocityLimitType
from .store import VelocityStore

logger = structlog.get_logger()


class VelocityLimiter:
    """Atomic check-and-reserve over per-user velocity counters.

    One logical counter exists per (user, limit type). All of a user's
    counters are read, checked and written inside a single
    ``store.locked_limits(user_id)`` block, so two concurrent actions can
    never both pass a check that together would exceed a ceiling, and a
    multi-limit reservation is all-or-nothing. Windows are reset lazily on
    access; there are no background timers.
    """

    def __init__(self, store: VelocityStore, config: FraudConfig | None = None) -> None:
        self._store = store
        self._config = config or default_config

    async def check_and_reserve(
        self,
        user_id: str,
        limit_type: VelocityLimitType,
        amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> VelocityDecision:
        """Reserve capacity on one limit type or raise LimitExceededError."""
        now = now or datetime.now(UTC)
        async with self._store.locked_limits(user_id) as limits:
            by_type = self._materialize(limits, user_id, now)
            limit = by_type.get(limit_type)
            checked = [limit] if limit is not None and limit.is_active else []
            return self._reserve(user_id, checked, _as_amount(amount), now)

    async def reserve_all(
        self,
        user_id: str,
        amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> VelocityDecision:
        """Reserve capacity on every active limit of the user.

        Blocked if any single limit would be exceeded; in that case no
        counter is touched.
        """
        now = now or datetime.now(UTC)
        async with self._store.locked_limits(user_id) as limits:
            by_type = self._materialize(limits, user_id, now)
            checked = [limit for limit in by_type.values() if limit.is_active]
            return self._reserve(user_id, checked, _as_amount(amount), now)

    async def release(self, decision: VelocityDecision) -> None:
        """Give back a reservation whose action did not go ahead.

        Only counters still in the window the reservation landed in are
        decremented; a window that has rolled over since is left alone.
        """
        if not decision.checked_limits or decision.reserved_at is None:
            return
        released = []
        async with self._store.locked_limits(decision.user_id) as limits:
            for limit in limits:
                if limit.limit_type not in decision.checked_limits:
                    continue
                if limit.window_start_time > decision.reserved_at:
                    continue
                limit.release(decision.amount)
                released.append(limit.limit_type.value)
        logger.info(
            "velocity_reservation_released",
            user_id=decision.user_id,
            amount=str(decision.amount),
            limit_types=released,
        )

    async def set_limit(
        self,
        user_id: str,
        limit_type: VelocityLimitType,
        limit: Decimal,
        expires_at: datetime | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> VelocityLimit:
        """Override a ceiling, optionally until ``expires_at`` (tightened temporary limit)."""
        now = now or datetime.now(UTC)
        limit = Decimal(limit)
        if limit < 0:
            raise ValidationError("Velocity limit must not be negative", limit=str(limit))
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Expiry must be in the future", expires_at=expires_at.isoformat())

        async with self._store.locked_limits(user_id) as limits:
            by_type = self._materialize(limits, user_id, now)
            current = by_type.get(limit_type)
            if current is None:
                current = _new_limit(user_id, limit_type, limit, now)
                limits.append(current)
            current.limit = limit
            current.is_active = True
            current.expires_at = expires_at
            current.custom_reason = reason
            result = current.model_copy(deep=True)

        logger.info(
            "velocity_limit_set",
            user_id=user_id,
            limit_type=limit_type.value,
            limit=str(limit),
            expires_at=expires_at.isoformat() if expires_at else None,
            reason=reason,
        )
        return result

    async def get_limits(self, user_id: str, now: datetime | None = None) -> list[VelocityLimit]:
        """Effective limits as they would be seen by the next action. Read-only."""
        now = now or datetime.now(UTC)
        limits = await self._store.get_limits(user_id)
        by_type = self._materialize(limits, user_id, now)
        for limit in by_type.values():
            limit.roll_window(now)
        return sorted(by_type.values(), key=lambda lim: lim.limit_type.value)

    def _materialize(
        self, limits: list[VelocityLimit], user_id: str, now: datetime
    ) -> dict[VelocityLimitType, VelocityLimit]:
        """Add missing default limits in place and revert expired overrides."""
        by_type = {limit.limit_type: limit for limit in limits}
        defaults = self._default_ceilings()

        for limit_type, ceiling in defaults.items():
            if limit_type not in by_type:
                limit = _new_limit(user_id, limit_type, ceiling, now)
                limits.append(limit)
                by_type[limit_type] = limit

        for limit_type, limit in by_type.items():
            if limit.is_expired(now):
                default = defaults.get(limit_type)
                logger.info(
                    "velocity_override_expired",
                    user_id=user_id,
                    limit_type=limit_type.value,
                    reverted_to=str(default) if default is not None else None,
                )
                limit.expires_at = None
                limit.custom_reason = None
                if default is None:
                    limit.is_active = False
                else:
                    limit.limit = default
        return by_type

    def _default_ceilings(self) -> dict[VelocityLimitType, Decimal]:
        ceilings: dict[VelocityLimitType, Decimal] = {}
        for name, value in self._config.velocity.amount_limits.items():
            ceilings[VelocityLimitType(name)] = Decimal(str(value))
        for name, value in self._config.velocity.transaction_limits.items():
            ceilings[VelocityLimitType(name)] = Decimal(value)
        return ceilings

    def _reserve(
        self,
        user_id: str,
        limits: list[VelocityLimit],
        amount: Decimal,
        now: datetime,
    ) -> VelocityDecision:
        for limit in limits:
            limit.roll_window(now)

        # Evaluate every limit before mutating any of them
        for limit in limits:
            if limit.would_exceed(amount):
                logger.info(
                    "velocity_limit_exceeded",
                    user_id=user_id,
                    limit_type=limit.limit_type.value,
                    limit=str(limit.limit),
                    current_amount=str(limit.current_amount),
                    current_transactions=limit.current_transactions,
                    amount=str(amount),
                )
                raise LimitExceededError(
                    f"Velocity limit {limit.limit_type.value} exceeded",
                    limit_type=limit.limit_type.value,
                    limit=str(limit.limit),
                    window_start=limit.window_start_time.isoformat(),
                )

        for limit in limits:
            limit.consume(amount)

        return VelocityDecision(
            user_id=user_id,
            amount=amount,
            reserved_at=now,
            checked_limits=[limit.limit_type for limit in limits],
            remaining={limit.limit_type.value: limit.remaining for limit in limits},
        )


def _as_amount(amount: Decimal | None) -> Decimal:
    if amount is None:
        return Decimal("0")
    amount = Decimal(amount)
    if amount < 0:
        raise ValidationError("Amount must not be negative", amount=str(amount))
    return amount


def _new_limit(
    user_id: str, limit_type: VelocityLimitType, ceiling: Decimal, now: datetime
) -> VelocityLimit:
    return VelocityLimit(
        user_id=user_id,
        limit_type=limit_type,
        time_window=limit_type.window,
        limit=ceiling,
        window_start_time=now,
    )
