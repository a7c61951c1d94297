"""Fraud and risk policy configuration with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class VelocityDefaults:
    """Ceilings materialized for every user the first time a limit is consulted.

    Amount ceilings are in the marketplace currency; transaction ceilings are
    counts. A limit type missing from both maps is not enforced.
    """

    amount_limits: dict[str, float] = field(
        default_factory=lambda: {
            "daily_amount": 5_000.0,
            "weekly_amount": 15_000.0,
            "monthly_amount": 50_000.0,
        }
    )
    transaction_limits: dict[str, int] = field(
        default_factory=lambda: {
            "hourly_transactions": 10,
            "daily_transactions": 20,
            "weekly_transactions": 100,
            "monthly_transactions": 300,
        }
    )


@dataclass
class RiskBands:
    """Score (0-100) lower bounds for each risk level."""

    medium: float = 30.0
    high: float = 60.0
    critical: float = 80.0

    def __post_init__(self) -> None:
        if not 0.0 < self.medium < self.high < self.critical <= 100.0:
            raise ValueError(
                f"Risk bands must satisfy 0 < medium < high < critical <= 100, "
                f"got {self.medium}/{self.high}/{self.critical}"
            )


@dataclass
class RuleWeights:
    """Points each risk rule contributes when it triggers."""

    high_amount: float = 20.0
    critical_amount: float = 40.0
    amount_deviation: float = 15.0
    round_amount: float = 10.0
    unusual_hour: float = 10.0
    geo_distance: float = 15.0
    impossible_travel: float = 30.0
    new_device: float = 10.0
    new_account: float = 15.0
    young_account: float = 5.0
    pattern_match: float = 20.0
    suspicious_history_factor: float = 0.3
    suspicious_history_cap: float = 30.0
    velocity_pressure: float = 20.0


@dataclass
class RuleThresholds:
    high_amount: float = 2_000.0
    critical_amount: float = 5_000.0
    amount_zscore: float = 2.5
    amount_history_min_txns: int = 3
    round_amount_unit: float = 100.0
    unusual_hour_start: int = 2
    unusual_hour_end: int = 5
    geo_distance_km: float = 500.0
    impossible_travel_speed_kmh: float = 900.0
    new_account_days: int = 30
    young_account_days: int = 90
    velocity_pressure_ratio: float = 0.8


@dataclass
class PatternThresholds:
    history_window_days: int = 30
    history_max_records: int = 500
    rapid_count: int = 5
    rapid_window_minutes: int = 15
    round_amount_min_txns: int = 3
    round_amount_pct: float = 0.60
    back_and_forth_count: int = 3
    back_and_forth_window_hours: int = 24
    structuring_count: int = 10
    structuring_total: float = 10_000.0
    structuring_max_avg: float = 1_000.0
    structuring_max_cv: float = 0.10
    structuring_window_hours: int = 24
    rapid_score: float = 50.0
    round_amount_score: float = 40.0
    back_and_forth_score: float = 60.0
    structuring_score: float = 75.0


@dataclass
class TriangulationSettings:
    enabled: bool = True
    min_points: int = 3
    min_distance_km: float = 1.0
    window_hours: int = 24
    risk_score: float = 70.0
    max_points: int = 20


@dataclass
class DecisionPolicy:
    velocity_rejection_score: float = 60.0
    flagged_user_score: float = 90.0
    # None keeps merging a recurring pattern into any open activity, however old.
    dedup_window_days: int | None = None
    notification_topic: str = "tooltrust.fraud.notifications"


@dataclass
class FraudConfig:
    velocity: VelocityDefaults = field(default_factory=VelocityDefaults)
    bands: RiskBands = field(default_factory=RiskBands)
    weights: RuleWeights = field(default_factory=RuleWeights)
    thresholds: RuleThresholds = field(default_factory=RuleThresholds)
    patterns: PatternThresholds = field(default_factory=PatternThresholds)
    triangulation: TriangulationSettings = field(default_factory=TriangulationSettings)
    decision: DecisionPolicy = field(default_factory=DecisionPolicy)

    @classmethod
    def from_env(cls) -> "FraudConfig":
        """Load config with env var overrides. Env vars use FRAUD_ prefix."""
        config = cls()

        # Velocity overrides
        if v := os.getenv("FRAUD_DAILY_AMOUNT_LIMIT"):
            config.velocity.amount_limits["daily_amount"] = float(v)
        if v := os.getenv("FRAUD_DAILY_TRANSACTION_LIMIT"):
            config.velocity.transaction_limits["daily_transactions"] = int(v)
        if v := os.getenv("FRAUD_HOURLY_TRANSACTION_LIMIT"):
            config.velocity.transaction_limits["hourly_transactions"] = int(v)

        # Band overrides
        if any(
            os.getenv(name)
            for name in ("FRAUD_BAND_MEDIUM", "FRAUD_BAND_HIGH", "FRAUD_BAND_CRITICAL")
        ):
            config.bands = RiskBands(
                medium=float(os.getenv("FRAUD_BAND_MEDIUM", config.bands.medium)),
                high=float(os.getenv("FRAUD_BAND_HIGH", config.bands.high)),
                critical=float(os.getenv("FRAUD_BAND_CRITICAL", config.bands.critical)),
            )

        # Triangulation overrides
        if v := os.getenv("FRAUD_TRIANGULATION_ENABLED"):
            config.triangulation.enabled = v.lower() in ("1", "true", "yes")
        if v := os.getenv("FRAUD_TRIANGULATION_MIN_DISTANCE_KM"):
            config.triangulation.min_distance_km = float(v)
        if v := os.getenv("FRAUD_TRIANGULATION_MIN_POINTS"):
            config.triangulation.min_points = int(v)
        if v := os.getenv("FRAUD_TRIANGULATION_WINDOW_HOURS"):
            config.triangulation.window_hours = int(v)

        # Decision overrides
        if v := os.getenv("FRAUD_DEDUP_WINDOW_DAYS"):
            config.decision.dedup_window_days = int(v)
        if v := os.getenv("FRAUD_NOTIFICATION_TOPIC"):
            config.decision.notification_topic = v

        return config


# Module-level default instance
default_config = FraudConfig()
