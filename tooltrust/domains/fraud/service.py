"""FraudCheckService: one recorded decision per monitored action."""

import statistics
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog

from tooltrust.integrations.directory import UserDirectory
from tooltrust.integrations.notifications import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    notify_safely,
)
from tooltrust.shared.errors import (
    ExternalServiceError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)

from .config import FraudConfig, default_config
from .detector import DetectionResult, SuspiciousActivityDetector, candidate_search
from .models import (
    ActionType,
    FraudCheck,
    FraudCheckStatus,
    FraudCheckType,
    FraudEvaluation,
    FraudRiskLevel,
    MonitoredAction,
    PatternMatch,
    RiskFeatures,
    SuspiciousActivity,
    SuspiciousActivityStatus,
    SuspiciousActivityType,
    TransactionRecord,
    VelocityLimit,
    VelocityLimitType,
)
from .risk_engine import RiskScoreEngine, classify_risk_level
from .rules import distance_km
from .store import ActivityHistoryStore, FraudStore
from .velocity import VelocityLimiter

logger = structlog.get_logger()

OPEN_STATUSES = {SuspiciousActivityStatus.ACTIVE, SuspiciousActivityStatus.UNDER_INVESTIGATION}
REVIEWABLE_STATUSES = {FraudCheckStatus.PENDING, FraudCheckStatus.UNDER_REVIEW}

_LEVEL_STATUS = {
    FraudRiskLevel.LOW: FraudCheckStatus.APPROVED,
    FraudRiskLevel.MEDIUM: FraudCheckStatus.APPROVED,
    FraudRiskLevel.HIGH: FraudCheckStatus.UNDER_REVIEW,
    FraudRiskLevel.CRITICAL: FraudCheckStatus.REJECTED,
}


class FraudCheckService:
    """Gates payments and searches.

    Pipeline per action:
    1. VelocityLimiter (payments only); a violation short-circuits to a
       rejected, blocked check
    2. SuspiciousActivityDetector records pattern matches
    3. RiskScoreEngine scores the feature vector, banded into a risk level
    4. Side effects: >= high blocks and flags the user, critical notifies admins
    5. The FraudCheck is persisted whatever the outcome
    """

    def __init__(
        self,
        store: FraudStore,
        history: ActivityHistoryStore,
        velocity: VelocityLimiter,
        detector: SuspiciousActivityDetector,
        engine: RiskScoreEngine | None = None,
        directory: UserDirectory | None = None,
        publisher: NotificationPublisher | None = None,
        config: FraudConfig | None = None,
    ) -> None:
        self._config = config or default_config
        self._store = store
        self._history = history
        self._velocity = velocity
        self._detector = detector
        self._engine = engine or RiskScoreEngine(config=self._config)
        self._directory = directory
        self._publisher = publisher

    async def evaluate(self, action: MonitoredAction) -> FraudEvaluation:
        now = action.occurred_at or datetime.now(UTC)
        self._validate(action)

        reservation = None
        if action.action_type == ActionType.PAYMENT:
            try:
                reservation = await self._velocity.reserve_all(action.user_id, action.amount, now=now)
            except LimitExceededError as exc:
                check = self._velocity_rejection(action, exc, now)
                await self._store.add_check(check)
                logger.info(
                    "fraud_check_recorded",
                    check_id=check.id,
                    user_id=action.user_id,
                    status=check.status.value,
                    limit_type=exc.limit_type,
                )
                return FraudEvaluation(check=check)

        detection = await self._detector.detect(action, now)
        features = await self._build_features(action, now, detection)
        risk = self._engine.score(features)
        level = self._engine.classify(risk.score)
        status = _LEVEL_STATUS[level]
        is_payment = action.action_type == ActionType.PAYMENT
        flagged = level.rank >= FraudRiskLevel.HIGH.rank

        check = FraudCheck(
            user_id=action.user_id,
            payment_id=action.payment_id,
            action_type=action.action_type,
            check_type=_check_type(action, detection),
            risk_level=level,
            risk_score=risk.score,
            triggered_rules=risk.triggered_rules,
            status=status,
            payment_blocked=is_payment and flagged,
            user_flagged=flagged,
            admin_notified=level == FraudRiskLevel.CRITICAL,
            ip_address=action.ip_address,
            user_agent=action.user_agent,
            device_fingerprint=action.device_fingerprint,
            details={
                "patterns": detection.pattern_names,
                "suspicious_activity_ids": [a.id for a in detection.activities],
                "amount": str(action.amount) if action.amount is not None else None,
                "target_id": action.target_id,
            },
            created_at=now,
        )
        await self._store.add_check(check)
        await self._record_history(action, check, now)
        if check.payment_blocked and reservation is not None:
            # Only payments that go ahead count towards velocity.
            await self._velocity.release(reservation)

        if flagged:
            await self.flag_user(
                action.user_id,
                reason=f"Fraud check {check.id} scored {risk.score:.0f} ({level.value})",
                flagged_by="system",
                related_payment_ids=[action.payment_id] if action.payment_id else [],
                now=now,
            )
        if check.admin_notified:
            await notify_safely(
                self._publisher,
                NotificationEvent(
                    event_type=NotificationType.ADMIN_NOTIFIED,
                    subject_id=check.id,
                    payload={
                        "user_id": check.user_id,
                        "payment_id": check.payment_id,
                        "risk_score": check.risk_score,
                        "risk_level": check.risk_level.value,
                        "triggered_rules": check.triggered_rules,
                    },
                ),
            )

        logger.info(
            "fraud_check_recorded",
            check_id=check.id,
            user_id=action.user_id,
            action_type=action.action_type.value,
            risk_score=check.risk_score,
            risk_level=level.value,
            status=status.value,
            triggered_rules=check.triggered_rules,
        )
        return FraudEvaluation(check=check, risk=risk, suspicious_activities=detection.activities)

    async def get_check(self, check_id: str) -> FraudCheck:
        if (check := await self._store.get_check(check_id)) is None:
            raise NotFoundError(f"Fraud check {check_id} not found", check_id=check_id)
        return check

    async def review_fraud_check(
        self, check_id: str, reviewer_id: str, approve: bool, notes: str | None = None
    ) -> FraudCheck:
        """Record a manual review decision on a held check."""
        check = await self.get_check(check_id)
        if check.status not in REVIEWABLE_STATUSES:
            raise InvalidStateError(
                f"Fraud check {check_id} is {check.status.value} and cannot be reviewed",
                check_id=check_id,
                status=check.status.value,
            )
        check.status = FraudCheckStatus.APPROVED if approve else FraudCheckStatus.REJECTED
        check.payment_blocked = check.action_type == ActionType.PAYMENT and not approve
        check.reviewed_by = reviewer_id
        check.reviewed_at = datetime.now(UTC)
        check.review_notes = notes
        await self._store.save_check(check)
        logger.info(
            "fraud_check_reviewed",
            check_id=check_id,
            reviewer_id=reviewer_id,
            status=check.status.value,
        )
        return check

    async def list_pending_reviews(self, limit: int = 100) -> list[FraudCheck]:
        return await self._store.list_checks(statuses=REVIEWABLE_STATUSES, limit=limit)

    async def list_checks(self, user_id: str, limit: int = 100) -> list[FraudCheck]:
        return await self._store.list_checks(user_id=user_id, limit=limit)

    async def list_suspicious_activities(
        self, user_id: str | None = None, include_closed: bool = False
    ) -> list[SuspiciousActivity]:
        return await self._store.list_activities(
            user_id=user_id, statuses=None if include_closed else OPEN_STATUSES
        )

    async def resolve_suspicious_activity(
        self,
        activity_id: str,
        status: SuspiciousActivityStatus,
        resolved_by: str,
        notes: str | None = None,
    ) -> SuspiciousActivity:
        if status == SuspiciousActivityStatus.ACTIVE:
            raise ValidationError("Cannot resolve an activity back to active", status=status.value)
        activity = await self._store.get_activity(activity_id)
        if activity is None:
            raise NotFoundError(f"Suspicious activity {activity_id} not found", activity_id=activity_id)
        if not activity.status.is_open:
            raise InvalidStateError(
                f"Suspicious activity {activity_id} is already {activity.status.value}",
                activity_id=activity_id,
                status=activity.status.value,
            )

        activity.status = status
        activity.investigation_notes = notes
        if not status.is_open:
            activity.resolved_by = resolved_by
            activity.resolved_at = datetime.now(UTC)
        await self._store.save_activity(activity)
        logger.info(
            "suspicious_activity_resolved",
            activity_id=activity_id,
            status=status.value,
            resolved_by=resolved_by,
        )
        return activity

    async def flag_user(
        self,
        user_id: str,
        reason: str,
        flagged_by: str,
        related_payment_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> SuspiciousActivity:
        """Mark a user high-risk. Repeated flags fold into the same open record."""
        now = now or datetime.now(UTC)
        match = PatternMatch(
            activity_type=SuspiciousActivityType.HIGH_RISK_USER,
            description=reason,
            risk_score=self._config.decision.flagged_user_score,
            related_payment_ids=related_payment_ids or [],
            pattern_data={"flagged_by": flagged_by},
        )
        activity, created = await self._store.upsert_activity(user_id, match, now)
        logger.warning(
            "user_flagged",
            user_id=user_id,
            activity_id=activity.id,
            flagged_by=flagged_by,
            frequency=activity.frequency,
            created=created,
        )
        await notify_safely(
            self._publisher,
            NotificationEvent(
                event_type=NotificationType.USER_FLAGGED,
                subject_id=user_id,
                recipient_ids=[user_id],
                payload={"reason": reason, "activity_id": activity.id, "flagged_by": flagged_by},
            ),
        )
        return activity

    async def unflag_user(self, user_id: str, resolved_by: str, notes: str | None = None) -> int:
        flags = await self._store.list_activities(
            user_id=user_id,
            statuses=OPEN_STATUSES,
            activity_type=SuspiciousActivityType.HIGH_RISK_USER,
        )
        for activity in flags:
            await self.resolve_suspicious_activity(
                activity.id, SuspiciousActivityStatus.RESOLVED, resolved_by, notes
            )
        logger.info("user_unflagged", user_id=user_id, resolved=len(flags))
        return len(flags)

    async def is_user_flagged(self, user_id: str) -> bool:
        flags = await self._store.list_activities(
            user_id=user_id,
            statuses=OPEN_STATUSES,
            activity_type=SuspiciousActivityType.HIGH_RISK_USER,
        )
        return bool(flags)

    async def calculate_user_risk(self, user_id: str) -> float:
        """Standing risk of a user (0-100): account age plus open suspicious activity."""
        score = 0.0
        age = await self._account_age_days(user_id, datetime.now(UTC))
        if age is not None:
            if age < self._config.thresholds.new_account_days:
                score += self._config.weights.new_account
            elif age < self._config.thresholds.young_account_days:
                score += self._config.weights.young_account
        activities = await self._store.list_activities(user_id=user_id, statuses=OPEN_STATUSES)
        score += sum(a.risk_score for a in activities) * self._config.weights.suspicious_history_factor
        return round(min(score, 100.0), 2)

    async def set_velocity_limit(
        self,
        user_id: str,
        limit_type: VelocityLimitType,
        limit: Decimal,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> VelocityLimit:
        return await self._velocity.set_limit(user_id, limit_type, limit, expires_at, reason)

    async def get_velocity_limits(self, user_id: str) -> list[VelocityLimit]:
        return await self._velocity.get_limits(user_id)

    def _validate(self, action: MonitoredAction) -> None:
        if action.action_type == ActionType.PAYMENT and action.amount is None:
            raise ValidationError("Payment actions require an amount", user_id=action.user_id)
        if action.action_type == ActionType.SEARCH and not action.target_id:
            raise ValidationError("Search actions require a target_id", user_id=action.user_id)

    def _velocity_rejection(
        self, action: MonitoredAction, exc: LimitExceededError, now: datetime
    ) -> FraudCheck:
        score = self._config.decision.velocity_rejection_score
        return FraudCheck(
            user_id=action.user_id,
            payment_id=action.payment_id,
            action_type=action.action_type,
            check_type=FraudCheckType.VELOCITY_CHECK,
            risk_level=classify_risk_level(score, self._config),
            risk_score=score,
            triggered_rules=[f"velocity_limit:{exc.limit_type}"],
            status=FraudCheckStatus.REJECTED,
            payment_blocked=True,
            ip_address=action.ip_address,
            user_agent=action.user_agent,
            device_fingerprint=action.device_fingerprint,
            details={"reason": exc.message, **exc.details},
            created_at=now,
        )

    async def _build_features(
        self, action: MonitoredAction, now: datetime, detection: DetectionResult
    ) -> RiskFeatures:
        window = timedelta(days=self._config.patterns.history_window_days)
        history = await self._history.recent_transactions(action.user_id, now - window)
        paid = [float(t.amount) for t in history if t.payer_id == action.user_id]

        features = RiskFeatures(
            amount=action.amount_float,
            avg_amount_30d=statistics.fmean(paid) if paid else 0.0,
            stddev_amount_30d=statistics.pstdev(paid) if len(paid) > 1 else 0.0,
            history_txn_count=len(paid),
            hour_of_day=now.hour,
            account_age_days=await self._account_age_days(action.user_id, now),
            detected_patterns=detection.pattern_names,
        )

        if action.location is not None and (
            last := await self._history.last_location(action.user_id)
        ):
            point, seen_at = last
            features.distance_from_last_km = distance_km(point, action.location)
            features.seconds_since_last_location = (now - seen_at).total_seconds()

        if action.device_fingerprint:
            known = await self._history.known_devices(action.user_id)
            features.is_new_device = bool(known) and action.device_fingerprint not in known

        matched_ids = {a.id for a in detection.activities}
        open_activities = await self._store.list_activities(
            user_id=action.user_id, statuses=OPEN_STATUSES
        )
        features.open_suspicious_score = sum(
            a.risk_score for a in open_activities if a.id not in matched_ids
        )

        if action.action_type == ActionType.PAYMENT:
            for limit in await self._velocity.get_limits(action.user_id, now=now):
                if limit.limit_type == VelocityLimitType.DAILY_TRANSACTIONS and limit.is_active:
                    features.daily_txn_count = limit.current_transactions
                    features.daily_txn_limit = int(limit.limit)
        return features

    async def _account_age_days(self, user_id: str, now: datetime) -> int | None:
        if self._directory is None:
            return None
        try:
            user = await self._directory.get_user(user_id)
        except ExternalServiceError:
            logger.warning("account_age_lookup_failed", user_id=user_id, exc_info=True)
            return None
        if user is None or user.created_at is None:
            return None
        return max((now - user.created_at).days, 0)

    async def _record_history(self, action: MonitoredAction, check: FraudCheck, now: datetime) -> None:
        if action.action_type == ActionType.SEARCH:
            if action.location is not None:
                await self._history.add_search(candidate_search(action, now))
            return
        if check.is_approved:
            await self._history.add_transaction(
                TransactionRecord(
                    payment_id=action.payment_id or check.id,
                    payer_id=action.user_id,
                    payee_id=action.counterparty_id,
                    amount=action.amount,
                    occurred_at=now,
                    device_fingerprint=action.device_fingerprint,
                    location=action.location,
                )
            )


def _check_type(action: MonitoredAction, detection: DetectionResult) -> FraudCheckType:
    if action.action_type == ActionType.SEARCH:
        return FraudCheckType.GEOLOCATION_ANOMALY
    if detection.matches:
        return FraudCheckType.PATTERN_ANALYSIS
    return FraudCheckType.BEHAVIOR_ANALYSIS
