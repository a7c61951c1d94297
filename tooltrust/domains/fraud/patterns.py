"""Suspicious activity patterns evaluated over a bounded recent history."""

import itertools
import statistics
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import FraudConfig
from .models import (
    ActionType,
    GeoPoint,
    MonitoredAction,
    PatternMatch,
    SearchRecord,
    SuspiciousActivityType,
    TransactionRecord,
)
from .rules.geo import distance_km


@dataclass
class DetectionContext:
    """History window handed to every pattern; includes the action under evaluation."""

    action: MonitoredAction
    now: datetime
    transactions: list[TransactionRecord] = field(default_factory=list)
    searches: list[SearchRecord] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.action.user_id

    def payments_since(self, since: datetime) -> list[TransactionRecord]:
        """Payments made by the user since ``since``."""
        return [
            t for t in self.transactions if t.payer_id == self.user_id and t.occurred_at >= since
        ]


class ActivityPattern(ABC):
    pattern_id: str
    activity_type: SuspiciousActivityType
    action_type: ActionType

    def applies_to(self, action: MonitoredAction) -> bool:
        return action.action_type == self.action_type

    @abstractmethod
    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None: ...


class RapidTransactionsPattern(ActivityPattern):
    pattern_id = "rapid_transactions"
    activity_type = SuspiciousActivityType.RAPID_TRANSACTIONS
    action_type = ActionType.PAYMENT

    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None:
        cfg = config.patterns
        window = timedelta(minutes=cfg.rapid_window_minutes)
        recent = ctx.payments_since(ctx.now - window)
        if len(recent) < cfg.rapid_count:
            return None
        return PatternMatch(
            activity_type=self.activity_type,
            description=(
                f"{len(recent)} payments within {cfg.rapid_window_minutes} minutes"
            ),
            risk_score=cfg.rapid_score,
            related_payment_ids=[t.payment_id for t in recent],
            pattern_data={"count": len(recent), "window_minutes": cfg.rapid_window_minutes},
        )


class RoundAmountPattern(ActivityPattern):
    pattern_id = "round_amount_pattern"
    activity_type = SuspiciousActivityType.ROUND_AMOUNT_PATTERN
    action_type = ActionType.PAYMENT

    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None:
        cfg = config.patterns
        unit = config.thresholds.round_amount_unit
        if not _is_round(ctx.action.amount_float, unit):
            return None

        recent = ctx.payments_since(ctx.now - timedelta(days=cfg.history_window_days))
        if len(recent) < cfg.round_amount_min_txns:
            return None

        round_txns = [t for t in recent if _is_round(float(t.amount), unit)]
        pct = len(round_txns) / len(recent)
        if pct < cfg.round_amount_pct:
            return None

        return PatternMatch(
            activity_type=self.activity_type,
            description=f"{len(round_txns)} of {len(recent)} recent payments are round amounts",
            risk_score=cfg.round_amount_score,
            related_payment_ids=[t.payment_id for t in round_txns],
            pattern_data={
                "round_count": len(round_txns),
                "total_count": len(recent),
                "round_pct": round(pct, 4),
                "unit": unit,
            },
        )


class BackAndForthPattern(ActivityPattern):
    """Money moving in both directions between the same two users."""

    pattern_id = "back_and_forth_transactions"
    activity_type = SuspiciousActivityType.BACK_AND_FORTH_TRANSACTIONS
    action_type = ActionType.PAYMENT

    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None:
        cfg = config.patterns
        other = ctx.action.counterparty_id
        if not other or other == ctx.user_id:
            return None

        since = ctx.now - timedelta(hours=cfg.back_and_forth_window_hours)
        pair = {ctx.user_id, other}
        between = [
            t
            for t in ctx.transactions
            if t.occurred_at >= since and {t.payer_id, t.payee_id} == pair
        ]
        outgoing = sum(1 for t in between if t.payer_id == ctx.user_id)
        incoming = len(between) - outgoing
        if len(between) < cfg.back_and_forth_count or outgoing == 0 or incoming == 0:
            return None

        return PatternMatch(
            activity_type=self.activity_type,
            description=f"{len(between)} transfers back and forth with user {other}",
            risk_score=cfg.back_and_forth_score,
            related_payment_ids=[t.payment_id for t in between],
            related_user_ids=[other],
            pattern_data={"outgoing": outgoing, "incoming": incoming},
        )


class StructuringPattern(ActivityPattern):
    """Many similar small payments adding up to a large total."""

    pattern_id = "structuring_behavior"
    activity_type = SuspiciousActivityType.STRUCTURING_BEHAVIOR
    action_type = ActionType.PAYMENT

    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None:
        cfg = config.patterns
        recent = ctx.payments_since(ctx.now - timedelta(hours=cfg.structuring_window_hours))
        if len(recent) < cfg.structuring_count:
            return None

        amounts = [float(t.amount) for t in recent]
        total = sum(amounts)
        avg = total / len(amounts)
        if total < cfg.structuring_total or avg >= cfg.structuring_max_avg or avg <= 0:
            return None

        cv = statistics.pstdev(amounts) / avg
        if cv > cfg.structuring_max_cv:
            return None

        return PatternMatch(
            activity_type=self.activity_type,
            description=f"{len(recent)} similar payments totalling {total:.2f}",
            risk_score=cfg.structuring_score,
            related_payment_ids=[t.payment_id for t in recent],
            pattern_data={
                "count": len(recent),
                "total": round(total, 2),
                "average": round(avg, 2),
                "coefficient_of_variation": round(cv, 4),
            },
        )


class TriangulationPattern(ActivityPattern):
    """Repeated searches for one target from spatially separated points.

    Matches when at least ``min_points`` distinct search points inside the
    time window are all pairwise at least ``min_distance_km`` apart.
    """

    pattern_id = "location_triangulation"
    activity_type = SuspiciousActivityType.LOCATION_TRIANGULATION
    action_type = ActionType.SEARCH

    def applies_to(self, action: MonitoredAction) -> bool:
        return (
            super().applies_to(action)
            and action.target_id is not None
            and action.location is not None
        )

    def detect(self, ctx: DetectionContext, config: FraudConfig) -> PatternMatch | None:
        cfg = config.triangulation
        if not cfg.enabled:
            return None

        since = ctx.now - timedelta(hours=cfg.window_hours)
        searches = [
            s
            for s in ctx.searches
            if s.target_id == ctx.action.target_id and since <= s.searched_at <= ctx.now
        ]
        points = _distinct_points(searches)[: cfg.max_points]
        if len(points) < cfg.min_points:
            return None

        spread = _find_spread_subset(points, cfg.min_points, cfg.min_distance_km)
        if spread is None:
            return None

        return PatternMatch(
            activity_type=self.activity_type,
            description=(
                f"{len(searches)} searches for {ctx.action.target_id} from "
                f"{len(points)} distinct locations within {cfg.window_hours}h"
            ),
            risk_score=cfg.risk_score,
            related_user_ids=[ctx.action.target_id],
            pattern_data={
                "target_id": ctx.action.target_id,
                "search_count": len(searches),
                "distinct_points": len(points),
                "points": [p.model_dump() for p in spread],
                "min_distance_km": cfg.min_distance_km,
            },
        )


def _is_round(amount: float, unit: float) -> bool:
    return amount >= unit and amount % unit == 0


def _distinct_points(searches: list[SearchRecord]) -> list[GeoPoint]:
    """Unique search locations, newest first (coordinates compared at ~1 m precision)."""
    seen: set[tuple[float, float]] = set()
    points: list[GeoPoint] = []
    for search in sorted(searches, key=lambda s: s.searched_at, reverse=True):
        key = (round(search.location.latitude, 5), round(search.location.longitude, 5))
        if key not in seen:
            seen.add(key)
            points.append(search.location)
    return points


def _find_spread_subset(
    points: list[GeoPoint], size: int, min_distance: float
) -> list[GeoPoint] | None:
    for combo in itertools.combinations(points, size):
        if all(distance_km(a, b) >= min_distance for a, b in itertools.combinations(combo, 2)):
            return list(combo)
    return None


ALL_PATTERNS: list[ActivityPattern] = [
    RapidTransactionsPattern(),
    RoundAmountPattern(),
    BackAndForthPattern(),
    StructuringPattern(),
    TriangulationPattern(),
]
