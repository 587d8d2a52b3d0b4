import logging
import math
from typing import Optional, Protocol

from payguard.config import GeoConfig
from payguard.errors import GeoResolutionError
from payguard.models.risk import GeoLocation, GeoRiskResult, RiskLevel, RiskSignal

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


class GeoResolver(Protocol):
    async def resolve_ip(self, ip_address: str) -> GeoLocation: ...


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _has_coordinates(location: GeoLocation) -> bool:
    return location.latitude is not None and location.longitude is not None


def _risk_level(score: float) -> RiskLevel:
    if score >= 0.7:
        return "high"
    elif score >= 0.4:
        return "medium"
    return "low"


def analyze_geo_risk(
    current: GeoLocation,
    registered: Optional[GeoLocation],
    config: Optional[GeoConfig] = None,
) -> GeoRiskResult:
    """Score the current location against the user's registered one.

    Rules are additive and the total is capped at 1.0. Deterministic.
    """
    config = config or GeoConfig()
    reasons = []
    score = 0.0

    if current.country in config.high_risk_countries:
        reasons.append(f"Access from high-risk country: {current.country}")
        score += 0.5
    elif current.country in config.medium_risk_countries:
        reasons.append(f"Access from medium-risk country: {current.country}")
        score += 0.3

    country_match = region_match = city_match = True
    distance_km = None

    if registered is not None:
        if current.country != registered.country:
            reasons.append("Current country differs from registered country")
            score += 0.4
            country_match = False

        if current.region and registered.region and current.region != registered.region:
            reasons.append("Current region differs from registered region")
            score += 0.2
            region_match = False

        if current.city and registered.city and current.city != registered.city:
            reasons.append("Current city differs from registered city")
            score += 0.1
            city_match = False

        if _has_coordinates(current) and _has_coordinates(registered):
            distance_km = haversine_km(
                current.latitude, current.longitude,
                registered.latitude, registered.longitude,
            )
            if distance_km > config.max_expected_distance_km:
                reasons.append(f"Access from {distance_km:.0f}km away from registered location")
                score += min(0.5, distance_km / (2 * config.max_expected_distance_km))
    else:
        reasons.append("No registered location on file")
        score += 0.1

    score = min(score, 1.0)
    level = _risk_level(score)
    return GeoRiskResult(
        signal=RiskSignal(
            source="geo",
            score=score,
            reasons=reasons,
            suggests_challenge=level != "low",
            suggests_block=level == "high",
        ),
        risk_level=level,
        distance_km=distance_km,
        country_match=country_match,
        region_match=region_match,
        city_match=city_match,
    )


def unknown_location_result() -> GeoRiskResult:
    """Result used when the current location could not be resolved."""
    return GeoRiskResult(
        signal=RiskSignal(source="geo", score=0.0, reasons=["Location unavailable"]),
        risk_level="low",
    )


async def resolve_location(
    resolver: GeoResolver, ip_address: Optional[str], retries: int = 1
) -> Optional[GeoLocation]:
    """Resolve ``ip_address``, retrying up to ``retries`` times, else ``None``."""
    if not ip_address:
        return None

    last_error: Optional[Exception] = None
    for attempt in range(1, retries + 2):
        try:
            return await resolver.resolve_ip(ip_address)
        except Exception as exc:
            last_error = exc
            logger.warning("Geolocation attempt %d for %s failed: %s", attempt, ip_address, exc)

    error = GeoResolutionError(f"could not resolve {ip_address}", original_error=last_error)
    logger.warning("Treating location as unknown: %s", error.message)
    return None
