"""Pydantic models for the fraud and risk domain."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class ActionType(StrEnum):
    PAYMENT = "payment"
    SEARCH = "search"


class FraudCheckType(StrEnum):
    VELOCITY_CHECK = "velocity_check"
    PATTERN_ANALYSIS = "pattern_analysis"
    AMOUNT_THRESHOLD = "amount_threshold"
    GEOLOCATION_ANOMALY = "geolocation_anomaly"
    DEVICE_FINGERPRINT = "device_fingerprint"
    BEHAVIOR_ANALYSIS = "behavior_analysis"
    NETWORK_ANALYSIS = "network_analysis"
    MANUAL_REVIEW = "manual_review"


class FraudRiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    FraudRiskLevel.LOW: 0,
    FraudRiskLevel.MEDIUM: 1,
    FraudRiskLevel.HIGH: 2,
    FraudRiskLevel.CRITICAL: 3,
}


class FraudCheckStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"


class SuspiciousActivityType(StrEnum):
    RAPID_TRANSACTIONS = "rapid_transactions"
    ROUND_AMOUNT_PATTERN = "round_amount_pattern"
    BACK_AND_FORTH_TRANSACTIONS = "back_and_forth_transactions"
    STRUCTURING_BEHAVIOR = "structuring_behavior"
    LOCATION_TRIANGULATION = "location_triangulation"
    HIGH_RISK_USER = "high_risk_user"


class SuspiciousActivityStatus(StrEnum):
    ACTIVE = "active"
    UNDER_INVESTIGATION = "under_investigation"
    FALSE_POSITIVE = "false_positive"
    CONFIRMED = "confirmed"
    RESOLVED = "resolved"

    @property
    def is_open(self) -> bool:
        return self in (SuspiciousActivityStatus.ACTIVE, SuspiciousActivityStatus.UNDER_INVESTIGATION)


class VelocityLimitType(StrEnum):
    HOURLY_AMOUNT = "hourly_amount"
    HOURLY_TRANSACTIONS = "hourly_transactions"
    DAILY_AMOUNT = "daily_amount"
    DAILY_TRANSACTIONS = "daily_transactions"
    WEEKLY_AMOUNT = "weekly_amount"
    WEEKLY_TRANSACTIONS = "weekly_transactions"
    MONTHLY_AMOUNT = "monthly_amount"
    MONTHLY_TRANSACTIONS = "monthly_transactions"

    @property
    def window(self) -> timedelta:
        return _WINDOWS[self.value.split("_", 1)[0]]

    @property
    def counts_amount(self) -> bool:
        return self.value.endswith("_amount")


_WINDOWS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


class GeoPoint(BaseModel):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


# ---------------------------------------------------------------------------
# Monitored actions and history
# ---------------------------------------------------------------------------


class MonitoredAction(BaseModel):
    """A payment attempt or a location search submitted for evaluation."""

    action_type: ActionType
    user_id: str
    payment_id: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str = "USD"
    counterparty_id: str | None = None
    target_id: str | None = None
    location: GeoPoint | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    occurred_at: datetime | None = None

    @property
    def amount_float(self) -> float:
        return float(self.amount) if self.amount is not None else 0.0


class TransactionRecord(BaseModel):
    payment_id: str
    payer_id: str
    payee_id: str | None = None
    amount: Decimal
    occurred_at: datetime
    device_fingerprint: str | None = None
    location: GeoPoint | None = None


class SearchRecord(BaseModel):
    user_id: str
    target_id: str
    location: GeoPoint
    searched_at: datetime


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class RiskFeatures(BaseModel):
    """Feature vector consumed by the RiskScoreEngine.

    Everything the engine needs is in here; it never reaches out for more.
    """

    amount: float = 0.0
    avg_amount_30d: float = 0.0
    stddev_amount_30d: float = 0.0
    history_txn_count: int = 0
    hour_of_day: int = Field(default=12, ge=0, le=23)
    distance_from_last_km: float | None = None
    seconds_since_last_location: float | None = None
    is_new_device: bool = False
    account_age_days: int | None = None
    detected_patterns: list[str] = Field(default_factory=list)
    open_suspicious_score: float = 0.0
    daily_txn_count: int = 0
    daily_txn_limit: int | None = None


class RuleResult(BaseModel):
    rule_name: str
    triggered: bool
    points: float = 0.0
    details: str = ""
    evidence: dict = Field(default_factory=dict)


class RiskScore(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    triggered_rules: list[str] = Field(default_factory=list)
    rule_results: list[RuleResult] = Field(default_factory=list)


class PatternMatch(BaseModel):
    activity_type: SuspiciousActivityType
    description: str
    risk_score: float = Field(ge=0.0, le=100.0)
    related_payment_ids: list[str] = Field(default_factory=list)
    related_user_ids: list[str] = Field(default_factory=list)
    pattern_data: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class FraudCheck(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    payment_id: str | None = None
    action_type: ActionType = ActionType.PAYMENT
    check_type: FraudCheckType
    risk_level: FraudRiskLevel
    risk_score: float = Field(ge=0.0, le=100.0)
    triggered_rules: list[str] = Field(default_factory=list)
    status: FraudCheckStatus
    payment_blocked: bool = False
    user_flagged: bool = False
    admin_notified: bool = False
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    details: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None

    @property
    def is_approved(self) -> bool:
        return self.status == FraudCheckStatus.APPROVED


class SuspiciousActivity(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    activity_type: SuspiciousActivityType
    description: str
    risk_score: float = Field(ge=0.0, le=100.0)
    frequency: int = Field(default=1, ge=1)
    first_detected_at: datetime = Field(default_factory=_now)
    last_detected_at: datetime = Field(default_factory=_now)
    related_payment_ids: list[str] = Field(default_factory=list)
    related_user_ids: list[str] = Field(default_factory=list)
    pattern_data: dict = Field(default_factory=dict)
    status: SuspiciousActivityStatus = SuspiciousActivityStatus.ACTIVE
    investigation_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    requires_manual_review: bool = False

    @classmethod
    def from_match(cls, user_id: str, match: PatternMatch, now: datetime) -> "SuspiciousActivity":
        return cls(
            user_id=user_id,
            activity_type=match.activity_type,
            description=match.description,
            risk_score=match.risk_score,
            first_detected_at=now,
            last_detected_at=now,
            related_payment_ids=list(match.related_payment_ids),
            related_user_ids=list(match.related_user_ids),
            pattern_data=dict(match.pattern_data),
            requires_manual_review=match.risk_score >= 60.0,
        )

    def record_recurrence(self, match: PatternMatch, now: datetime) -> None:
        """Fold a repeated detection into this record instead of duplicating it."""
        self.frequency += 1
        self.last_detected_at = max(self.last_detected_at, now)
        self.risk_score = max(self.risk_score, match.risk_score)
        self.description = match.description
        self.pattern_data = {**self.pattern_data, **match.pattern_data}
        for pid in match.related_payment_ids:
            if pid not in self.related_payment_ids:
                self.related_payment_ids.append(pid)
        for uid in match.related_user_ids:
            if uid not in self.related_user_ids:
                self.related_user_ids.append(uid)
        self.requires_manual_review = self.requires_manual_review or match.risk_score >= 60.0


class VelocityLimit(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    limit_type: VelocityLimitType
    time_window: timedelta
    limit: Decimal = Field(ge=0)
    current_amount: Decimal = Decimal("0")
    current_transactions: int = 0
    window_start_time: datetime
    is_active: bool = True
    custom_reason: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def roll_window(self, now: datetime) -> bool:
        """Reset counters when the window has elapsed. Returns True on reset."""
        if now - self.window_start_time > self.time_window:
            self.current_amount = Decimal("0")
            self.current_transactions = 0
            self.window_start_time = now
            return True
        return False

    def would_exceed(self, amount: Decimal) -> bool:
        if self.limit_type.counts_amount:
            return self.current_amount + amount > self.limit
        return self.current_transactions + 1 > self.limit

    def consume(self, amount: Decimal) -> None:
        self.current_amount += amount
        self.current_transactions += 1

    def release(self, amount: Decimal) -> None:
        self.current_amount = max(self.current_amount - amount, Decimal("0"))
        self.current_transactions = max(self.current_transactions - 1, 0)

    @property
    def remaining(self) -> Decimal:
        used = (
            self.current_amount
            if self.limit_type.counts_amount
            else Decimal(self.current_transactions)
        )
        return max(self.limit - used, Decimal("0"))


class VelocityDecision(BaseModel):
    user_id: str
    amount: Decimal = Decimal("0")
    reserved_at: datetime | None = None
    checked_limits: list[VelocityLimitType] = Field(default_factory=list)
    remaining: dict[str, Decimal] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------


class FraudEvaluation(BaseModel):
    check: FraudCheck
    risk: RiskScore | None = None
    suspicious_activities: list[SuspiciousActivity] = Field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.check.is_approved
