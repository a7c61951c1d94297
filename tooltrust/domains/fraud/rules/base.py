"""Abstract base class for risk scoring rules."""

from abc import ABC, abstractmethod

from ..config import FraudConfig
from ..models import RiskFeatures, RuleResult


class RiskRule(ABC):
    """Base class for all risk rules.

    Rules are synchronous and side-effect free: they see only the feature
    vector and the policy config, so the engine built on them stays a pure
    function.
    """

    rule_id: str
    category: str  # "amount" | "behavior" | "geo" | "history"

    @abstractmethod
    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        """Evaluate this rule and return a RuleResult."""
        ...

    def _not_triggered(self) -> RuleResult:
        return RuleResult(rule_name=self.rule_id, triggered=False)

    def _triggered(self, points: float, details: str, evidence: dict | None = None) -> RuleResult:
        return RuleResult(
            rule_name=self.rule_id,
            triggered=True,
            points=points,
            details=details,
            evidence=evidence or {},
        )
