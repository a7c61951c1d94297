"""Deterministic rule-based risk scoring."""

import structlog

from .config import FraudConfig, default_config
from .models import FraudRiskLevel, RiskFeatures, RiskScore, RuleResult
from .rules import ALL_RULES, RiskRule

logger = structlog.get_logger()

MIN_SCORE = 0.0
MAX_SCORE = 100.0


def classify_risk_level(score: float, config: FraudConfig) -> FraudRiskLevel:
    if score >= config.bands.critical:
        return FraudRiskLevel.CRITICAL
    if score >= config.bands.high:
        return FraudRiskLevel.HIGH
    if score >= config.bands.medium:
        return FraudRiskLevel.MEDIUM
    return FraudRiskLevel.LOW


class RiskScoreEngine:
    """Scores a feature vector against independently weighted rules.

    Scoring is additive on a 0-100 scale:
    1. Run every rule -> list[RuleResult]
    2. Sum the points of triggered rules
    3. Clamp the sum into [0, 100]

    The engine performs no I/O and keeps no state between calls, so the same
    feature vector always produces the same score and rule set.
    """

    def __init__(
        self,
        config: FraudConfig | None = None,
        rules: list[RiskRule] | None = None,
    ) -> None:
        self._config = config or default_config
        self._rules = list(rules) if rules is not None else list(ALL_RULES)

    @property
    def rules(self) -> list[RiskRule]:
        return list(self._rules)

    def score(self, features: RiskFeatures) -> RiskScore:
        results: list[RuleResult] = [rule.evaluate(features, self._config) for rule in self._rules]
        triggered = [r for r in results if r.triggered]

        raw = sum(r.points for r in triggered)
        score = round(min(max(raw, MIN_SCORE), MAX_SCORE), 2)

        logger.debug(
            "risk_scored",
            raw_score=raw,
            score=score,
            triggered=[r.rule_name for r in triggered],
        )

        return RiskScore(
            score=score,
            triggered_rules=[r.rule_name for r in triggered],
            rule_results=results,
        )

    def classify(self, score: float) -> FraudRiskLevel:
        return classify_risk_level(score, self._config)
