"""Geography-based risk rules."""

import math

from ..config import FraudConfig
from ..models import GeoPoint, RiskFeatures, RuleResult
from .base import RiskRule

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


class ImpossibleTravelRule(RiskRule):
    """Travel speed between the last known location and this one is not physical."""

    rule_id = "impossible_travel"
    category = "geo"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        distance = features.distance_from_last_km
        seconds = features.seconds_since_last_location
        if distance is None or seconds is None or seconds <= 0:
            return self._not_triggered()

        hours = seconds / 3600
        speed_kmh = distance / hours
        max_speed = config.thresholds.impossible_travel_speed_kmh
        if speed_kmh <= max_speed:
            return self._not_triggered()

        return self._triggered(
            points=config.weights.impossible_travel,
            details=f"Impossible travel: {distance:.0f}km in {hours:.2f}h ({speed_kmh:.0f}km/h)",
            evidence={
                "distance_km": distance,
                "hours": hours,
                "speed_kmh": speed_kmh,
                "max_speed_kmh": max_speed,
            },
        )


class LocationDeltaRule(RiskRule):
    rule_id = "location_delta"
    category = "geo"

    def evaluate(self, features: RiskFeatures, config: FraudConfig) -> RuleResult:
        distance = features.distance_from_last_km
        threshold = config.thresholds.geo_distance_km
        if distance is None or distance < threshold:
            return self._not_triggered()
        return self._triggered(
            points=config.weights.geo_distance,
            details=f"{distance:.0f}km from last known location",
            evidence={"distance_km": distance, "threshold_km": threshold},
        )
