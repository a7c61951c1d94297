"""SQLAlchemy implementations of the store protocols.

Each call runs in its own transaction. Disputes use a version
compare-and-swap on update; velocity limits and suspicious-activity upserts
serialize per user with row locks and transaction-scoped advisory locks.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tooltrust.db.models import (
    DisputeEvidenceRow,
    DisputeMessageRow,
    DisputeRow,
    FraudCheckRow,
    MutualClosureAuditRow,
    MutualClosureRow,
    SearchHistoryRow,
    SuspiciousActivityRow,
    TransactionHistoryRow,
    VelocityLimitRow,
    VelocityLockRow,
)
from tooltrust.domains.disputes.models import (
    Dispute,
    DisputeEvidence,
    DisputeMessage,
    MutualClosureAuditLog,
    MutualClosureStatus,
    MutualDisputeClosure,
)
from tooltrust.domains.fraud.models import (
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
    VelocityLimitType,
)
from tooltrust.shared.errors import AlreadyActiveError, ConcurrencyConflict, DuplicateError

logger = structlog.get_logger()

TERMINAL_DISPUTE_STATUSES = ("resolved", "closed")
OPEN_ACTIVITY_STATUSES = tuple(s.value for s in SuspiciousActivityStatus if s.is_open)


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session, session.begin():
            yield session


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


def _dispute_row(dispute: Dispute) -> dict:
    return {
        "id": dispute.id,
        "rental_id": dispute.rental_id,
        "owner_id": dispute.owner_id,
        "renter_id": dispute.renter_id,
        "initiated_by": dispute.initiated_by,
        "assigned_admin_id": dispute.assigned_admin_id,
        "external_dispute_id": dispute.external_dispute_id,
        "status": dispute.status.value,
        "version": dispute.version,
        "document": dispute.model_dump(mode="json"),
        "created_at": dispute.created_at,
        "updated_at": dispute.updated_at,
    }


def _to_dispute(row: DisputeRow) -> Dispute:
    return Dispute.model_validate({**row.document, "version": row.version})


def _message_row(message: DisputeMessage) -> DisputeMessageRow:
    data = message.model_dump()
    data["author_role"] = message.author_role.value
    data["read_by"] = message.model_dump(mode="json")["read_by"]
    return DisputeMessageRow(**data)


class SqlDisputeStore(_SqlStore):
    async def add(self, dispute: Dispute) -> None:
        try:
            async with self._tx() as session:
                session.add(DisputeRow(**_dispute_row(dispute)))
        except IntegrityError as exc:
            raise DuplicateError(
                f"Rental {dispute.rental_id} already has an open dispute",
                rental_id=dispute.rental_id,
            ) from exc

    async def get(self, dispute_id: str) -> Dispute | None:
        async with self._tx() as session:
            row = await session.get(DisputeRow, dispute_id)
            return _to_dispute(row) if row else None

    async def get_by_external_id(self, external_dispute_id: str) -> Dispute | None:
        return await self._one(DisputeRow.external_dispute_id == external_dispute_id)

    async def find_open_for_rental(self, rental_id: str) -> Dispute | None:
        return await self._one(
            DisputeRow.rental_id == rental_id,
            DisputeRow.status.not_in(TERMINAL_DISPUTE_STATUSES),
        )

    async def list_for_user(self, user_id: str) -> list[Dispute]:
        stmt = (
            select(DisputeRow)
            .where(
                or_(
                    DisputeRow.owner_id == user_id,
                    DisputeRow.renter_id == user_id,
                    DisputeRow.initiated_by == user_id,
                    DisputeRow.assigned_admin_id == user_id,
                )
            )
            .order_by(DisputeRow.created_at.desc())
        )
        async with self._tx() as session:
            return [_to_dispute(row) for row in (await session.scalars(stmt)).all()]

    async def list_all(self) -> list[Dispute]:
        async with self._tx() as session:
            return [_to_dispute(row) for row in (await session.scalars(select(DisputeRow))).all()]

    async def save(self, dispute: Dispute) -> Dispute:
        stored = dispute.model_copy(deep=True, update={"version": dispute.version + 1})
        values = _dispute_row(stored)
        del values["id"]
        stmt = (
            update(DisputeRow)
            .where(DisputeRow.id == dispute.id, DisputeRow.version == dispute.version)
            .values(**values)
        )
        async with self._tx() as session:
            result = await session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"Dispute {dispute.id} was modified concurrently",
                dispute_id=dispute.id,
                expected_version=dispute.version,
            )
        return stored

    async def add_message(self, message: DisputeMessage) -> None:
        async with self._tx() as session:
            session.add(_message_row(message))

    async def list_messages(self, dispute_id: str) -> list[DisputeMessage]:
        stmt = (
            select(DisputeMessageRow)
            .where(DisputeMessageRow.dispute_id == dispute_id)
            .order_by(DisputeMessageRow.sequence)
        )
        async with self._tx() as session:
            rows = (await session.scalars(stmt)).all()
            return [DisputeMessage.model_validate(row, from_attributes=True) for row in rows]

    async def save_messages(self, messages: list[DisputeMessage]) -> None:
        async with self._tx() as session:
            for message in messages:
                await session.execute(
                    update(DisputeMessageRow)
                    .where(DisputeMessageRow.id == message.id)
                    .values(read_by=message.model_dump(mode="json")["read_by"])
                )

    async def add_evidence(self, evidence: DisputeEvidence) -> None:
        async with self._tx() as session:
            session.add(DisputeEvidenceRow(**evidence.model_dump()))

    async def list_evidence(self, dispute_id: str) -> list[DisputeEvidence]:
        stmt = (
            select(DisputeEvidenceRow)
            .where(DisputeEvidenceRow.dispute_id == dispute_id)
            .order_by(DisputeEvidenceRow.uploaded_at)
        )
        async with self._tx() as session:
            rows = (await session.scalars(stmt)).all()
            return [DisputeEvidence.model_validate(row, from_attributes=True) for row in rows]

    async def get_evidence_by_reference(self, storage_reference: str) -> DisputeEvidence | None:
        stmt = select(DisputeEvidenceRow).where(
            DisputeEvidenceRow.storage_reference == storage_reference
        )
        async with self._tx() as session:
            row = (await session.scalars(stmt)).first()
            return DisputeEvidence.model_validate(row, from_attributes=True) if row else None

    async def save_evidence(self, evidence: DisputeEvidence) -> None:
        async with self._tx() as session:
            await session.merge(DisputeEvidenceRow(**evidence.model_dump()))

    async def _one(self, *conditions) -> Dispute | None:
        async with self._tx() as session:
            row = (await session.scalars(select(DisputeRow).where(*conditions))).first()
            return _to_dispute(row) if row else None


# ---------------------------------------------------------------------------
# Mutual closures
# ---------------------------------------------------------------------------


def _closure_row(closure: MutualDisputeClosure) -> MutualClosureRow:
    return MutualClosureRow(
        id=closure.id,
        dispute_id=closure.dispute_id,
        proposed_by=closure.proposed_by,
        status=closure.status.value,
        expires_at=closure.expires_at,
        document=closure.model_dump(mode="json"),
        created_at=closure.created_at,
    )


def _to_closure(row: MutualClosureRow) -> MutualDisputeClosure:
    return MutualDisputeClosure.model_validate(row.document)


class SqlClosureStore(_SqlStore):
    async def add(self, closure: MutualDisputeClosure) -> None:
        try:
            async with self._tx() as session:
                session.add(_closure_row(closure))
        except IntegrityError as exc:
            raise AlreadyActiveError(
                f"Dispute {closure.dispute_id} already has an active closure proposal",
                dispute_id=closure.dispute_id,
            ) from exc

    async def get(self, closure_id: str) -> MutualDisputeClosure | None:
        async with self._tx() as session:
            row = await session.get(MutualClosureRow, closure_id)
            return _to_closure(row) if row else None

    async def get_active(self, dispute_id: str) -> MutualDisputeClosure | None:
        closures = await self._list(
            MutualClosureRow.dispute_id == dispute_id,
            MutualClosureRow.status == MutualClosureStatus.PROPOSED.value,
        )
        return closures[0] if closures else None

    async def list_for_dispute(self, dispute_id: str) -> list[MutualDisputeClosure]:
        return await self._list(MutualClosureRow.dispute_id == dispute_id)

    async def list_by_proposer(self, user_id: str, since: datetime) -> list[MutualDisputeClosure]:
        return await self._list(
            MutualClosureRow.proposed_by == user_id, MutualClosureRow.created_at >= since
        )

    async def list_proposed(self) -> list[MutualDisputeClosure]:
        return await self._list(MutualClosureRow.status == MutualClosureStatus.PROPOSED.value)

    async def list_all(self) -> list[MutualDisputeClosure]:
        return await self._list()

    async def save(self, closure: MutualDisputeClosure) -> None:
        async with self._tx() as session:
            await session.merge(_closure_row(closure))

    async def append_audit(self, entry: MutualClosureAuditLog) -> None:
        data = entry.model_dump()
        data["metadata_"] = data.pop("metadata")
        data["from_status"] = entry.from_status.value if entry.from_status else None
        data["to_status"] = entry.to_status.value
        async with self._tx() as session:
            session.add(MutualClosureAuditRow(**data))

    async def list_audit(self, closure_id: str) -> list[MutualClosureAuditLog]:
        stmt = (
            select(MutualClosureAuditRow)
            .where(MutualClosureAuditRow.closure_id == closure_id)
            .order_by(MutualClosureAuditRow.created_at)
        )
        async with self._tx() as session:
            rows = (await session.scalars(stmt)).all()
            return [
                MutualClosureAuditLog(
                    id=row.id,
                    closure_id=row.closure_id,
                    actor_id=row.actor_id,
                    action=row.action,
                    from_status=row.from_status,
                    to_status=row.to_status,
                    reason=row.reason,
                    metadata=row.metadata_,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    async def _list(self, *conditions) -> list[MutualDisputeClosure]:
        stmt = select(MutualClosureRow).where(*conditions).order_by(MutualClosureRow.created_at)
        async with self._tx() as session:
            return [_to_closure(row) for row in (await session.scalars(stmt)).all()]


# ---------------------------------------------------------------------------
# Fraud checks and suspicious activity
# ---------------------------------------------------------------------------


def _check_row(check: FraudCheck) -> FraudCheckRow:
    data = check.model_dump()
    for key in ("action_type", "check_type", "risk_level", "status"):
        data[key] = data[key].value
    data["details"] = check.model_dump(mode="json")["details"]
    return FraudCheckRow(**data)


def _activity_row(activity: SuspiciousActivity) -> SuspiciousActivityRow:
    return SuspiciousActivityRow(
        id=activity.id,
        user_id=activity.user_id,
        activity_type=activity.activity_type.value,
        status=activity.status.value,
        last_detected_at=activity.last_detected_at,
        document=activity.model_dump(mode="json"),
    )


class SqlFraudStore(_SqlStore):
    async def add_check(self, check: FraudCheck) -> None:
        async with self._tx() as session:
            session.add(_check_row(check))

    async def get_check(self, check_id: str) -> FraudCheck | None:
        async with self._tx() as session:
            row = await session.get(FraudCheckRow, check_id)
            return FraudCheck.model_validate(row, from_attributes=True) if row else None

    async def save_check(self, check: FraudCheck) -> None:
        async with self._tx() as session:
            await session.merge(_check_row(check))

    async def list_checks(
        self,
        user_id: str | None = None,
        statuses: set[FraudCheckStatus] | None = None,
        limit: int = 100,
    ) -> list[FraudCheck]:
        stmt = select(FraudCheckRow).order_by(FraudCheckRow.created_at.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(FraudCheckRow.user_id == user_id)
        if statuses is not None:
            stmt = stmt.where(FraudCheckRow.status.in_([s.value for s in statuses]))
        async with self._tx() as session:
            rows = (await session.scalars(stmt)).all()
            return [FraudCheck.model_validate(row, from_attributes=True) for row in rows]

    async def upsert_activity(
        self,
        user_id: str,
        match: PatternMatch,
        now: datetime,
        since: datetime | None = None,
    ) -> tuple[SuspiciousActivity, bool]:
        async with self._tx() as session:
            # serializes concurrent upserts of the same (user, type), including the first insert
            lock_key = f"suspicious:{user_id}:{match.activity_type.value}"
            await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(lock_key))))
            stmt = (
                select(SuspiciousActivityRow)
                .where(
                    SuspiciousActivityRow.user_id == user_id,
                    SuspiciousActivityRow.activity_type == match.activity_type.value,
                    SuspiciousActivityRow.status.in_(OPEN_ACTIVITY_STATUSES),
                )
                .order_by(SuspiciousActivityRow.last_detected_at.desc())
                .with_for_update()
            )
            if since is not None:
                stmt = stmt.where(SuspiciousActivityRow.last_detected_at >= since)
            row = (await session.scalars(stmt)).first()
            if row is not None:
                activity = SuspiciousActivity.model_validate(row.document)
                activity.record_recurrence(match, now)
                await session.merge(_activity_row(activity))
                return activity, False

            activity = SuspiciousActivity.from_match(user_id, match, now)
            session.add(_activity_row(activity))
            return activity, True

    async def get_activity(self, activity_id: str) -> SuspiciousActivity | None:
        async with self._tx() as session:
            row = await session.get(SuspiciousActivityRow, activity_id)
            return SuspiciousActivity.model_validate(row.document) if row else None

    async def save_activity(self, activity: SuspiciousActivity) -> None:
        async with self._tx() as session:
            await session.merge(_activity_row(activity))

    async def list_activities(
        self,
        user_id: str | None = None,
        statuses: set[SuspiciousActivityStatus] | None = None,
        activity_type: SuspiciousActivityType | None = None,
    ) -> list[SuspiciousActivity]:
        stmt = select(SuspiciousActivityRow).order_by(SuspiciousActivityRow.last_detected_at.desc())
        if user_id is not None:
            stmt = stmt.where(SuspiciousActivityRow.user_id == user_id)
        if statuses is not None:
            stmt = stmt.where(SuspiciousActivityRow.status.in_([s.value for s in statuses]))
        if activity_type is not None:
            stmt = stmt.where(SuspiciousActivityRow.activity_type == activity_type.value)
        async with self._tx() as session:
            rows = (await session.scalars(stmt)).all()
            return [SuspiciousActivity.model_validate(row.document) for row in rows]


# ---------------------------------------------------------------------------
# Velocity limits
# ---------------------------------------------------------------------------


def _to_limit(row: VelocityLimitRow) -> VelocityLimit:
    return VelocityLimit(
        id=row.id,
        user_id=row.user_id,
        limit_type=VelocityLimitType(row.limit_type),
        time_window=row.time_window,
        limit=row.limit,
        current_amount=row.current_amount,
        current_transactions=row.current_transactions,
        window_start_time=row.window_start_time,
        is_active=row.is_active,
        custom_reason=row.custom_reason,
        expires_at=row.expires_at,
    )


def _limit_row(limit: VelocityLimit) -> VelocityLimitRow:
    data = limit.model_dump()
    data["limit_type"] = limit.limit_type.value
    return VelocityLimitRow(**data)


class SqlVelocityStore(_SqlStore):
    @asynccontextmanager
    async def locked_limits(self, user_id: str) -> AsyncIterator[list[VelocityLimit]]:
        async with self._tx() as session:
            await session.execute(
                pg_insert(VelocityLockRow).values(user_id=user_id).on_conflict_do_nothing()
            )
            await session.execute(
                select(VelocityLockRow).where(VelocityLockRow.user_id == user_id).with_for_update()
            )
            rows = (
                await session.scalars(
                    select(VelocityLimitRow).where(VelocityLimitRow.user_id == user_id)
                )
            ).all()
            working = [_to_limit(row) for row in rows]
            yield working
            for limit in working:
                await session.merge(_limit_row(limit))

    async def get_limits(self, user_id: str) -> list[VelocityLimit]:
        async with self._tx() as session:
            rows = (
                await session.scalars(
                    select(VelocityLimitRow).where(VelocityLimitRow.user_id == user_id)
                )
            ).all()
            return [_to_limit(row) for row in rows]


# ---------------------------------------------------------------------------
# Activity history
# ---------------------------------------------------------------------------


def _geo(latitude: float | None, longitude: float | None) -> GeoPoint | None:
    if latitude is None or longitude is None:
        return None
    return GeoPoint(latitude=latitude, longitude=longitude)


def _to_transaction(row: TransactionHistoryRow) -> TransactionRecord:
    return TransactionRecord(
        payment_id=row.payment_id,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount=row.amount,
        occurred_at=row.occurred_at,
        device_fingerprint=row.device_fingerprint,
        location=_geo(row.latitude, row.longitude),
    )


class SqlActivityHistoryStore(_SqlStore):
    async def add_transaction(self, record: TransactionRecord) -> None:
        async with self._tx() as session:
            session.add(
                TransactionHistoryRow(
                    payment_id=record.payment_id,
                    payer_id=record.payer_id,
                    payee_id=record.payee_id,
                    amount=record.amount,
                    device_fingerprint=record.device_fingerprint,
                    latitude=record.location.latitude if record.location else None,
                    longitude=record.location.longitude if record.location else None,
                    occurred_at=record.occurred_at,
                )
            )

    async def recent_transactions(
        self, user_id: str, since: datetime, limit: int = 500
    ) -> list[TransactionRecord]:
        stmt = (
            select(TransactionHistoryRow)
            .where(
                or_(
                    TransactionHistoryRow.payer_id == user_id,
                    TransactionHistoryRow.payee_id == user_id,
                ),
                TransactionHistoryRow.occurred_at >= since,
            )
            .order_by(TransactionHistoryRow.occurred_at.desc())
            .limit(limit)
        )
        async with self._tx() as session:
            return [_to_transaction(row) for row in (await session.scalars(stmt)).all()]

    async def add_search(self, record: SearchRecord) -> None:
        async with self._tx() as session:
            session.add(
                SearchHistoryRow(
                    user_id=record.user_id,
                    target_id=record.target_id,
                    latitude=record.location.latitude,
                    longitude=record.location.longitude,
                    searched_at=record.searched_at,
                )
            )

    async def recent_searches(
        self, user_id: str, target_id: str, since: datetime, limit: int = 500
    ) -> list[SearchRecord]:
        stmt = (
            select(SearchHistoryRow)
            .where(
                SearchHistoryRow.user_id == user_id,
                SearchHistoryRow.target_id == target_id,
                SearchHistoryRow.searched_at >= since,
            )
            .order_by(SearchHistoryRow.searched_at.desc())
            .limit(limit)
        )
        async with self._tx() as session:
            return [
                SearchRecord(
                    user_id=row.user_id,
                    target_id=row.target_id,
                    location=GeoPoint(latitude=row.latitude, longitude=row.longitude),
                    searched_at=row.searched_at,
                )
                for row in (await session.scalars(stmt)).all()
            ]

    async def known_devices(self, user_id: str) -> set[str]:
        stmt = select(TransactionHistoryRow.device_fingerprint).where(
            TransactionHistoryRow.payer_id == user_id,
            TransactionHistoryRow.device_fingerprint.is_not(None),
        )
        async with self._tx() as session:
            return set((await session.scalars(stmt.distinct())).all())

    async def last_location(self, user_id: str) -> tuple[GeoPoint, datetime] | None:
        stmt = (
            select(TransactionHistoryRow)
            .where(
                TransactionHistoryRow.payer_id == user_id,
                TransactionHistoryRow.latitude.is_not(None),
            )
            .order_by(TransactionHistoryRow.occurred_at.desc())
            .limit(1)
        )
        async with self._tx() as session:
            row = (await session.scalars(stmt)).first()
            if row is None:
                return None
            return _geo(row.latitude, row.longitude), row.occurred_at
