"""Behavioral and account-history risk rules."""

from ..config import FraudConfig
from ..models import RiskFeatures, RuleResult
from .base import RiskRule


class UnusualHourRule(RiskRule):
    rule_id = "unusual_hour"
    category = "behavior"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        start = config.thresholds.unusual_hour_start
        end = config.thresholds.unusual_hour_end
        if not start <= features.hour_of_day < end:
            return self._not_triggered()
        return self._triggered(
            points=config.weights.unusual_hour,
            details=f"Activity at {features.hour_of_day:02d}:00 UTC",
            evidence={"hour": features.hour_of_day, "window": [start, end]},
        )


class NewDeviceRule(RiskRule):
    rule_id = "new_device"
    category = "behavior"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        if not features.is_new_device:
            return self._not_triggered()
        return self._triggered(
            points=config.weights.new_device,
            details="Device fingerprint not seen for this user before",
        )


class AccountAgeRule(RiskRule):
    """Young accounts carry more risk; unknown age is not penalized."""

    rule_id = "account_age"
    category = "behavior"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        age = features.account_age_days
        if age is None:
            return self._not_triggered()
        if age < config.thresholds.new_account_days:
            return self._triggered(
                points=config.weights.new_account,
                details=f"Account is {age} days old",
                evidence={"account_age_days": age},
            )
        if age < config.thresholds.young_account_days:
            return self._triggered(
                points=config.weights.young_account,
                details=f"Account is {age} days old",
                evidence={"account_age_days": age},
            )
        return self._not_triggered()


class VelocityPressureRule(RiskRule):
    """Close to (but not over) the daily transaction ceiling."""

    rule_id = "velocity_pressure"
    category = "behavior"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        limit = features.daily_txn_limit
        if not limit:
            return self._not_triggered()
        ratio = features.daily_txn_count / limit
        if ratio < config.thresholds.velocity_pressure_ratio:
            return self._not_triggered()
        return self._triggered(
            points=config.weights.velocity_pressure,
            details=f"{features.daily_txn_count} of {limit} daily transactions used",
            evidence={"count": features.daily_txn_count, "limit": limit, "ratio": round(ratio, 4)},
        )


class DetectedPatternRule(RiskRule):
    """Patterns matched by the SuspiciousActivityDetector on this action."""

    rule_id = "suspicious_pattern"
    category = "history"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        if not features.detected_patterns:
            return self._not_triggered()
        patterns = sorted(set(features.detected_patterns))
        return self._triggered(
            points=config.weights.pattern_match * len(patterns),
            details=f"Matched patterns: {', '.join(patterns)}",
            evidence={"patterns": patterns},
        )


class SuspiciousHistoryRule(RiskRule):
    rule_id = "suspicious_history"
    category = "history"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        if features.open_suspicious_score <= 0:
            return self._not_triggered()
        points = min(
            features.open_suspicious_score * config.weights.suspicious_history_factor,
            config.weights.suspicious_history_cap,
        )
        return self._triggered(
            points=round(points, 4),
            details="User has open suspicious activity",
            evidence={"open_suspicious_score": features.open_suspicious_score},
        )
