"""Persistence contracts for the fraud domain and their in-memory versions.

The in-memory stores are process-local and serialize writers with
``KeyedLock``; the SQLAlchemy versions live in ``tooltrust.db.repositories``.
"""

from collections import defaultdict, deque
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Protocol

from tooltrust.shared.locks import KeyedLock

from .models import (
    FraudCheck,
    FraudCheckStatus,
    GeoPoint,
    PatternMatch,
    SearchRecord,
    SuspiciousActivity,
    SuspiciousActivityStatus,
    SuspiciousActivityType,
    TransactionRecord,
    VelocityLimit,
)


class VelocityStore(Protocol):
    def locked_limits(self, user_id: str) -> AbstractAsyncContextManager[list[VelocityLimit]]:
        """Yield the user's limits under an exclusive lock and persist them on clean exit."""
        ...

    async def get_limits(self, user_id: str) -> list[VelocityLimit]: ...


class FraudStore(Protocol):
    async def add_check(self, check: FraudCheck) -> None: ...

    async def get_check(self, check_id: str) -> FraudCheck | None: ...

    async def save_check(self, check: FraudCheck) -> None: ...

    async def list_checks(
        self,
        user_id: str | None = None,
        statuses: set[FraudCheckStatus] | None = None,
        limit: int = 100,
    ) -> list[FraudCheck]: ...

    async def upsert_activity(
        self,
        user_id: str,
        match: PatternMatch,
        now: datetime,
        since: datetime | None = None,
    ) -> tuple[SuspiciousActivity, bool]:
        """Merge into the open activity of the same type or create one. Returns (activity, created)."""
        ...

    async def get_activity(self, activity_id: str) -> SuspiciousActivity | None: ...

    async def save_activity(self, activity: SuspiciousActivity) -> None: ...

    async def list_activities(
        self,
        user_id: str | None = None,
        statuses: set[SuspiciousActivityStatus] | None = None,
        activity_type: SuspiciousActivityType | None = None,
    ) -> list[SuspiciousActivity]: ...


class ActivityHistoryStore(Protocol):
    async def add_transaction(self, record: TransactionRecord) -> None: ...

    async def recent_transactions(
        self, user_id: str, since: datetime, limit: int = 500
    ) -> list[TransactionRecord]:
        """Transactions where the user paid or was paid, newest first."""
        ...

    async def add_search(self, record: SearchRecord) -> None: ...

    async def recent_searches(
        self, user_id: str, target_id: str, since: datetime, limit: int = 500
    ) -> list[SearchRecord]: ...

    async def known_devices(self, user_id: str) -> set[str]: ...

    async def last_location(self, user_id: str) -> tuple[GeoPoint, datetime] | None: ...


class InMemoryVelocityStore:
    def __init__(self) -> None:
        self._limits: dict[str, list[VelocityLimit]] = {}
        self._locks = KeyedLock()

    @asynccontextmanager
    async def locked_limits(self, user_id: str) -> AsyncIterator[list[VelocityLimit]]:
        async with self._locks.hold(user_id):
            working = [limit.model_copy(deep=True) for limit in self._limits.get(user_id, [])]
            yield working
            self._limits[user_id] = working

    async def get_limits(self, user_id: str) -> list[VelocityLimit]:
        return [limit.model_copy(deep=True) for limit in self._limits.get(user_id, [])]


class InMemoryFraudStore:
    def __init__(self) -> None:
        self._checks: dict[str, FraudCheck] = {}
        self._activities: dict[str, SuspiciousActivity] = {}
        self._locks = KeyedLock()

    async def add_check(self, check: FraudCheck) -> None:
        self._checks[check.id] = check.model_copy(deep=True)

    async def get_check(self, check_id: str) -> FraudCheck | None:
        check = self._checks.get(check_id)
        return check.model_copy(deep=True) if check else None

    async def save_check(self, check: FraudCheck) -> None:
        self._checks[check.id] = check.model_copy(deep=True)

    async def list_checks(
        self,
        user_id: str | None = None,
        statuses: set[FraudCheckStatus] | None = None,
        limit: int = 100,
    ) -> list[FraudCheck]:
        checks = [
            c
            for c in self._checks.values()
            if (user_id is None or c.user_id == user_id)
            and (statuses is None or c.status in statuses)
        ]
        checks.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in checks[:limit]]

    async def upsert_activity(
        self,
        user_id: str,
        match: PatternMatch,
        now: datetime,
        since: datetime | None = None,
    ) -> tuple[SuspiciousActivity, bool]:
        async with self._locks.hold((user_id, match.activity_type)):
            for activity in self._activities.values():
                if (
                    activity.user_id == user_id
                    and activity.activity_type == match.activity_type
                    and activity.status.is_open
                    and (since is None or activity.last_detected_at >= since)
                ):
                    activity.record_recurrence(match, now)
                    return activity.model_copy(deep=True), False

            activity = SuspiciousActivity.from_match(user_id, match, now)
            self._activities[activity.id] = activity
            return activity.model_copy(deep=True), True

    async def get_activity(self, activity_id: str) -> SuspiciousActivity | None:
        activity = self._activities.get(activity_id)
        return activity.model_copy(deep=True) if activity else None

    async def save_activity(self, activity: SuspiciousActivity) -> None:
        self._activities[activity.id] = activity.model_copy(deep=True)

    async def list_activities(
        self,
        user_id: str | None = None,
        statuses: set[SuspiciousActivityStatus] | None = None,
        activity_type: SuspiciousActivityType | None = None,
    ) -> list[SuspiciousActivity]:
        activities = [
            a
            for a in self._activities.values()
            if (user_id is None or a.user_id == user_id)
            and (statuses is None or a.status in statuses)
            and (activity_type is None or a.activity_type == activity_type)
        ]
        activities.sort(key=lambda a: a.last_detected_at, reverse=True)
        return [a.model_copy(deep=True) for a in activities]


class InMemoryActivityHistoryStore:
    """Bounded per-user history of transactions and location searches."""

    def __init__(self, max_records_per_user: int = 1_000) -> None:
        self._transactions: dict[str, deque[TransactionRecord]] = defaultdict(
            lambda: deque(maxlen=max_records_per_user)
        )
        self._searches: dict[str, deque[SearchRecord]] = defaultdict(
            lambda: deque(maxlen=max_records_per_user)
        )

    async def add_transaction(self, record: TransactionRecord) -> None:
        self._transactions[record.payer_id].append(record)
        if record.payee_id and record.payee_id != record.payer_id:
            self._transactions[record.payee_id].append(record)

    async def recent_transactions(
        self, user_id: str, since: datetime, limit: int = 500
    ) -> list[TransactionRecord]:
        records = [r for r in self._transactions.get(user_id, ()) if r.occurred_at >= since]
        records.sort(key=lambda r: r.occurred_at, reverse=True)
        return records[:limit]

    async def add_search(self, record: SearchRecord) -> None:
        self._searches[record.user_id].append(record)

    async def recent_searches(
        self, user_id: str, target_id: str, since: datetime, limit: int = 500
    ) -> list[SearchRecord]:
        records = [
            r
            for r in self._searches.get(user_id, ())
            if r.target_id == target_id and r.searched_at >= since
        ]
        records.sort(key=lambda r: r.searched_at, reverse=True)
        return records[:limit]

    async def known_devices(self, user_id: str) -> set[str]:
        return {
            r.device_fingerprint
            for r in self._transactions.get(user_id, ())
            if r.payer_id == user_id and r.device_fingerprint
        }

    async def last_location(self, user_id: str) -> tuple[GeoPoint, datetime] | None:
        located = [
            r
            for r in self._transactions.get(user_id, ())
            if r.payer_id == user_id and r.location is not None
        ]
        if not located:
            return None
        latest = max(located, key=lambda r: r.occurred_at)
        return latest.location, latest.occurred_at
