"""Risk scoring rules package.

Exports ALL_RULES (list of all rule instances) and individual rule classes
for direct use.
"""

from .amount import AmountDeviationRule, LargeAmountRule, RoundAmountRule
from .base import RiskRule
from .behavior import (
    AccountAgeRule,
    DetectedPatternRule,
    NewDeviceRule,
    SuspiciousHistoryRule,
    UnusualHourRule,
    VelocityPressureRule,
)
from .geo import ImpossibleTravelRule, LocationDeltaRule, distance_km, haversine

# All rule instances in evaluation order
ALL_RULES: list[RiskRule] = [
    # Amount rules
    LargeAmountRule(),
    AmountDeviationRule(),
    RoundAmountRule(),
    # Behavior rules
    UnusualHourRule(),
    NewDeviceRule(),
    AccountAgeRule(),
    VelocityPressureRule(),
    # Geo rules
    LocationDeltaRule(),
    ImpossibleTravelRule(),
    # History rules
    DetectedPatternRule(),
    SuspiciousHistoryRule(),
]

__all__ = [
    "ALL_RULES",
    "RiskRule",
    "distance_km",
    "haversine",
    # Amount
    "AmountDeviationRule",
    "LargeAmountRule",
    "RoundAmountRule",
    # Behavior
    "AccountAgeRule",
    "NewDeviceRule",
    "UnusualHourRule",
    "VelocityPressureRule",
    # Geo
    "ImpossibleTravelRule",
    "LocationDeltaRule",
    # History
    "DetectedPatternRule",
    "SuspiciousHistoryRule",
]
