"""Amount-based risk rules."""

from ..config import FraudConfig
from ..models import RiskFeatures, RuleResult
from .base import RiskRule


class LargeAmountRule(RiskRule):
    """Absolute amount bands: high and critical tiers score differently."""

    rule_id = "large_amount"
    category = "amount"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        thresholds = config.thresholds
        if features.amount >= thresholds.critical_amount:
            return self._triggered(
                points=config.weights.critical_amount,
                details=f"Amount {features.amount:.2f} at or above critical threshold",
                evidence={"amount": features.amount, "threshold": thresholds.critical_amount},
            )
        if features.amount >= thresholds.high_amount:
            return self._triggered(
                points=config.weights.high_amount,
                details=f"Amount {features.amount:.2f} at or above high threshold",
                evidence={"amount": features.amount, "threshold": thresholds.high_amount},
            )
        return self._not_triggered()


class AmountDeviationRule(RiskRule):
    """Amount far above the user's own 30-day baseline."""

    rule_id = "amount_deviation"
    category = "amount"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        thresholds = config.thresholds
        if (
            features.history_txn_count < thresholds.amount_history_min_txns
            or features.avg_amount_30d <= 0
        ):
            return self._not_triggered()

        # Flat history: fall back to a ratio so a single spike still counts
        if features.stddev_amount_30d <= 0:
            if features.amount <= features.avg_amount_30d * thresholds.amount_zscore:
                return self._not_triggered()
            zscore = thresholds.amount_zscore
        else:
            zscore = (features.amount - features.avg_amount_30d) / features.stddev_amount_30d
            if zscore < thresholds.amount_zscore:
                return self._not_triggered()

        scale = min(zscore / (thresholds.amount_zscore * 2), 1.0)
        return self._triggered(
            points=round(config.weights.amount_deviation * max(scale, 0.5), 4),
            details=f"Amount deviates from baseline (z={zscore:.2f})",
            evidence={
                "amount": features.amount,
                "avg_amount_30d": features.avg_amount_30d,
                "stddev_amount_30d": features.stddev_amount_30d,
                "zscore": round(zscore, 4),
            },
        )


class RoundAmountRule(RiskRule):
    rule_id = "round_amount"
    category = "amount"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        unit = config.thresholds.round_amount_unit
        if features.amount < unit or features.amount % unit != 0:
            return self._not_triggered()
        return self._triggered(
            points=config.weights.round_amount,
            details=f"Round amount {features.amount:.2f}",
            evidence={"amount": features.amount, "unit": unit},
        )
