"""SQLAlchemy ORM models for ToolTrust persistent state.

Aggregates with nested collections (disputes, closures, suspicious
activities) keep their full pydantic document in a JSONB column next to the
columns used for lookups and locking.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Interval,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DisputeRow(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        # one non-terminal dispute per rental
        Index(
            "uq_disputes_open_rental",
            "rental_id",
            unique=True,
            postgresql_where=text("status NOT IN ('resolved', 'closed')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    rental_id: Mapped[str] = mapped_column(String, index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    renter_id: Mapped[str] = mapped_column(String, index=True)
    initiated_by: Mapped[str] = mapped_column(String)
    assigned_admin_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    external_dispute_id: Mapped[str | None] = mapped_column(
        String, unique=True, index=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    document: Mapped[dict] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DisputeMessageRow(Base):
    __tablename__ = "dispute_messages"
    __table_args__ = (UniqueConstraint("dispute_id", "sequence", name="uq_dispute_message_sequence"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    dispute_id: Mapped[str] = mapped_column(String, index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    author_id: Mapped[str] = mapped_column(String)
    author_role: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False)
    read_by: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DisputeEvidenceRow(Base):
    __tablename__ = "dispute_evidence"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    dispute_id: Mapped[str] = mapped_column(String, index=True)
    uploaded_by: Mapped[str] = mapped_column(String)
    file_name: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String)
    file_size: Mapped[int] = mapped_column(BigInteger)
    storage_reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    is_scanned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_safe: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MutualClosureRow(Base):
    __tablename__ = "mutual_dispute_closures"
    __table_args__ = (
        Index(
            "uq_mutual_closure_proposed",
            "dispute_id",
            unique=True,
            postgresql_where=text("status = 'proposed'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    dispute_id: Mapped[str] = mapped_column(String, index=True)
    proposed_by: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    document: Mapped[dict] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class MutualClosureAuditRow(Base):
    __tablename__ = "mutual_closure_audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    closure_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FraudCheckRow(Base):
    __tablename__ = "fraud_checks"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    action_type: Mapped[str] = mapped_column(String)
    check_type: Mapped[str] = mapped_column(String)
    risk_level: Mapped[str] = mapped_column(String)
    risk_score: Mapped[float] = mapped_column(Float)
    triggered_rules: Mapped[list] = mapped_column(JSONB, default=list)
    status: Mapped[str] = mapped_column(String, index=True)
    payment_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    user_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class SuspiciousActivityRow(Base):
    __tablename__ = "suspicious_activities"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    activity_type: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    last_detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    document: Mapped[dict] = mapped_column(JSONB)


class VelocityLimitRow(Base):
    __tablename__ = "velocity_limits"
    __table_args__ = (UniqueConstraint("user_id", "limit_type", name="uq_velocity_user_type"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    limit_type: Mapped[str] = mapped_column(String)
    time_window: Mapped[timedelta] = mapped_column(Interval)
    limit: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    current_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    current_transactions: Mapped[int] = mapped_column(Integer, default=0)
    window_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    custom_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class VelocityLockRow(Base):
    """One row per user; ``SELECT ... FOR UPDATE`` on it serializes velocity updates."""

    __tablename__ = "velocity_locks"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)


class TransactionHistoryRow(Base):
    __tablename__ = "transaction_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String, index=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    payee_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    device_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SearchHistoryRow(Base):
    __tablename__ = "search_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    target_id: Mapped[str] = mapped_column(String, index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    searched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
