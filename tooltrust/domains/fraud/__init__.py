"""Fraud and risk domain: scoring, velocity limits, pattern detection and fraud checks."""

from .config import FraudConfig, default_config
from .detector import DetectionResult, SuspiciousActivityDetector
from .models import (
    ActionType,
    FraudCheck,
    FraudCheckStatus,
    FraudCheckType,
    FraudEvaluation,
    FraudRiskLevel,
    MonitoredAction,
    RiskFeatures,
    RiskScore,
    SuspiciousActivity,
    SuspiciousActivityStatus,
    SuspiciousActivityType,
    VelocityLimit,
    VelocityLimitType,
)
from .risk_engine import RiskScoreEngine, classify_risk_level
from .service import FraudCheckService
from .velocity import VelocityLimiter

__all__ = [
    "ActionType",
    "DetectionResult",
    "FraudCheck",
    "FraudCheckService",
    "FraudCheckStatus",
    "FraudCheckType",
    "FraudConfig",
    "FraudEvaluation",
    "FraudRiskLevel",
    "MonitoredAction",
    "RiskFeatures",
    "RiskScore",
    "RiskScoreEngine",
    "SuspiciousActivity",
    "SuspiciousActivityDetector",
    "SuspiciousActivityStatus",
    "SuspiciousActivityType",
    "VelocityLimit",
    "VelocityLimitType",
    "VelocityLimiter",
    "classify_risk_level",
    "default_config",
]
