"""Suspicious activity detection with per-user, per-type deduplication."""

from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from .config import FraudConfig, default_config
from .models import (
    ActionType,
    MonitoredAction,
    PatternMatch,
    SearchRecord,
    SuspiciousActivity,
    TransactionRecord,
)
from .patterns import ALL_PATTERNS, ActivityPattern, DetectionContext
from .store import ActivityHistoryStore, FraudStore

logger = structlog.get_logger()

PENDING_PAYMENT_ID = "pending"


class DetectionResult(BaseModel):
    matches: list[PatternMatch] = Field(default_factory=list)
    activities: list[SuspiciousActivity] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)

    @property
    def pattern_names(self) -> list[str]:
        return [m.activity_type.value for m in self.matches]


class SuspiciousActivityDetector:
    """Runs stateless patterns over recent history and records the matches.

    A match folds into the user's open SuspiciousActivity of the same type
    (frequency + 1, last_detected_at refreshed) or creates a new ``active``
    record. The store performs that upsert atomically per (user, type).
    """

    def __init__(
        self,
        store: FraudStore,
        history: ActivityHistoryStore,
        config: FraudConfig | None = None,
        patterns: list[ActivityPattern] | None = None,
    ) -> None:
        self._store = store
        self._history = history
        self._config = config or default_config
        self._patterns = list(patterns) if patterns is not None else list(ALL_PATTERNS)

    async def detect(self, action: MonitoredAction, now: datetime | None = None) -> DetectionResult:
        now = now or action.occurred_at or datetime.now(UTC)
        ctx = await self.build_context(action, now)
        matches = self.match(ctx)

        result = DetectionResult(matches=matches)
        since = self._dedup_since(now)
        for match in matches:
            activity, created = await self._store.upsert_activity(action.user_id, match, now, since)
            result.activities.append(activity)
            if created:
                result.created.append(activity.id)
            logger.warning(
                "suspicious_activity_detected",
                user_id=action.user_id,
                activity_id=activity.id,
                activity_type=match.activity_type.value,
                frequency=activity.frequency,
                created=created,
                risk_score=activity.risk_score,
            )
        return result

    def match(self, ctx: DetectionContext) -> list[PatternMatch]:
        """Evaluate every applicable pattern. No I/O."""
        matches: list[PatternMatch] = []
        for pattern in self._patterns:
            if not pattern.applies_to(ctx.action):
                continue
            if (found := pattern.detect(ctx, self._config)) is not None:
                matches.append(found)
        return matches

    async def build_context(self, action: MonitoredAction, now: datetime) -> DetectionContext:
        cfg = self._config.patterns
        ctx = DetectionContext(action=action, now=now)

        if action.action_type == ActionType.PAYMENT:
            since = now - timedelta(days=cfg.history_window_days)
            ctx.transactions = await self._history.recent_transactions(
                action.user_id, since, limit=cfg.history_max_records
            )
            ctx.transactions.append(candidate_transaction(action, now))
        elif action.target_id is not None and action.location is not None:
            since = now - timedelta(hours=self._config.triangulation.window_hours)
            ctx.searches = await self._history.recent_searches(
                action.user_id, action.target_id, since, limit=cfg.history_max_records
            )
            ctx.searches.append(candidate_search(action, now))
        return ctx

    def _dedup_since(self, now: datetime) -> datetime | None:
        days = self._config.decision.dedup_window_days
        return now - timedelta(days=days) if days is not None else None


def candidate_transaction(action: MonitoredAction, now: datetime) -> TransactionRecord:
    return TransactionRecord(
        payment_id=action.payment_id or PENDING_PAYMENT_ID,
        payer_id=action.user_id,
        payee_id=action.counterparty_id,
        amount=action.amount or 0,
        occurred_at=now,
        device_fingerprint=action.device_fingerprint,
        location=action.location,
    )


def candidate_search(action: MonitoredAction, now: datetime) -> SearchRecord:
    return SearchRecord(
        user_id=action.user_id,
        target_id=action.target_id,
        location=action.location,
        searched_at=now,
    )
