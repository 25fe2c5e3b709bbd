"""
Scoring module for Listing Alerts.

Scores a property against a client's preference profile. Each factor is
a small strategy object behind one interface; the engine combines them
into a weighted composite in [0, 1] and keeps every sub-score so callers
can show why a property matched.

Scoring is pure: the same profile and property always give the same score.
"""

import math
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .config import MatchConfig, get_match_config
from .models import (
    MatchScore,
    PreferenceProfile,
    PropertyRecord,
    TimelineUrgency,
)

logger = logging.getLogger(__name__)


class ScoringError(Exception):
    """The profile is missing data the engine needs to score it."""
    pass


# =============================================================================
# HELPERS
# =============================================================================

def distance_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate distance in miles using the Haversine formula.

    Args:
        lat1, lng1: First point coordinates
        lat2, lng2: Second point coordinates

    Returns:
        Distance in miles
    """
    # Earth's radius in miles
    R = 3959

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def price_band(profile: PreferenceProfile, tolerance: float) -> Optional[tuple[float, float, float]]:
    """
    Acceptable price range and the tolerance band around it.

    The band is a fraction of the range width. With a single bound (or a
    zero-width range) the bound itself stands in for the width.

    Returns:
        (low, high, band) with open bounds as -inf/inf, or None when the
        profile sets no price bounds at all
    """
    low, high = profile.price_min, profile.price_max
    if low is None and high is None:
        return None

    if low is not None and high is not None and high > low:
        width = high - low
    else:
        width = high if high is not None else low

    return (
        low if low is not None else -math.inf,
        high if high is not None else math.inf,
        tolerance * width,
    )


def price_overshoot(price: float, low: float, high: float) -> float:
    """How far a price sits outside [low, high]; 0 inside."""
    if price < low:
        return low - price
    if price > high:
        return price - high
    return 0.0


# =============================================================================
# SCORING FACTORS
# =============================================================================

class ScoringFactor(ABC):
    """
    One weighted component of the composite score.

    Hard-filter factors can disqualify a property outright, forcing the
    composite to zero whatever the other factors say.
    """

    name: str
    weight: float

    def __init__(self, config: MatchConfig):
        self.config = config

    @abstractmethod
    def score(self, profile: PreferenceProfile, prop: PropertyRecord, reasons: list) -> float:
        """Sub-score in [0, 1]; may append human-readable reasons."""
        pass

    def disqualifies(self, profile: PreferenceProfile, prop: PropertyRecord) -> bool:
        return False

    def upper_bound(self, profile: PreferenceProfile, prop: PropertyRecord) -> float:
        """Cheap optimistic bound on score(), used to pre-filter candidates."""
        return 1.0


class PriceFactor(ScoringFactor):
    """1.0 inside the range, linear decay across the tolerance band, 0 (and disqualified) beyond."""

    name = "price"
    weight = 0.25

    def score(self, profile, prop, reasons):
        band = price_band(profile, self.config.price_tolerance)
        if band is None:
            return 1.0

        low, high, tolerance = band
        overshoot = price_overshoot(prop.price, low, high)
        if overshoot == 0:
            reasons.append(f"Price ${prop.price:,.0f} within budget")
            return 1.0

        if tolerance <= 0 or overshoot >= tolerance:
            reasons.append(f"Price ${prop.price:,.0f} outside budget")
            return 0.0

        reasons.append(f"Price ${prop.price:,.0f} slightly outside budget")
        return 1.0 - overshoot / tolerance

    def disqualifies(self, profile, prop):
        band = price_band(profile, self.config.price_tolerance)
        if band is None:
            return False
        low, high, tolerance = band
        overshoot = price_overshoot(prop.price, low, high)
        # Same edge as score(): reaching the end of the band scores zero
        return overshoot > 0 and (tolerance <= 0 or overshoot >= tolerance)


class LocationFactor(ScoringFactor):
    """
    Preferred area (0.5) + commute (up to 0.3) + school quality (up to 0.2).

    A profile without preferred areas counts the area part as satisfied.
    """

    name = "location"
    weight = 0.20

    AREA_SHARE = 0.5
    COMMUTE_SHARE = 0.3
    SCHOOL_SHARE = 0.2

    def score(self, profile, prop, reasons):
        if not profile.locations and profile.work_location is None:
            return 1.0

        total = 0.0
        if not profile.locations:
            total += self.AREA_SHARE
        elif profile.matches_location(prop.location):
            total += self.AREA_SHARE
            reasons.append(f"In preferred area: {prop.location.city or prop.location.zip_code}")

        minutes = self.commute_minutes(profile, prop)
        if minutes is not None:
            limit = profile.work_location.max_commute_minutes or self.config.default_max_commute_minutes
            total += self.COMMUTE_SHARE * max(0.0, 1.0 - minutes / limit)
            reasons.append(f"Commute about {minutes:.0f} min")
        elif profile.work_location is not None:
            reasons.append("Commute unknown")

        if prop.school_rating is not None:
            rating = min(max(prop.school_rating, 0.0), 10.0)
            total += self.SCHOOL_SHARE * rating / 10.0
            reasons.append(f"School rating {rating:g}/10")

        return min(1.0, total)

    def commute_minutes(self, profile: PreferenceProfile, prop: PropertyRecord) -> Optional[float]:
        work = profile.work_location
        if work is None or prop.location.lat is None or prop.location.lng is None:
            return None
        miles = distance_miles(work.lat, work.lng, prop.location.lat, prop.location.lng)
        return miles / self.config.commute_speed_mph * 60

    def upper_bound(self, profile, prop):
        if profile.locations and not profile.matches_location(prop.location):
            return 1.0 - self.AREA_SHARE
        return 1.0


class FeatureFactor(ScoringFactor):
    """Fraction of wanted features present; any missing must-have disqualifies."""

    name = "features"
    weight = 0.20

    def score(self, profile, prop, reasons):
        missing = profile.must_have - prop.features
        if missing:
            reasons.append(f"Missing must-have: {', '.join(sorted(missing))}")
            return 0.0

        wanted = profile.must_have | profile.nice_to_have
        if not wanted:
            return 1.0

        present = wanted & prop.features
        if present:
            reasons.append(f"Features: {', '.join(sorted(present))}")
        return len(present) / len(wanted)

    def disqualifies(self, profile, prop):
        return bool(profile.must_have - prop.features)


class SizeFactor(ScoringFactor):
    """Meets bedroom/bathroom minimums = 1.0; each unit short costs a fixed step."""

    name = "size"
    weight = 0.15

    def score(self, profile, prop, reasons):
        if profile.min_bedrooms is None and profile.min_bathrooms is None:
            return 1.0

        shortfall = 0.0
        if profile.min_bedrooms is not None:
            shortfall += max(0, profile.min_bedrooms - prop.bedrooms)
        if profile.min_bathrooms is not None:
            shortfall += max(0.0, profile.min_bathrooms - prop.bathrooms)

        if shortfall == 0:
            reasons.append(f"{prop.bedrooms} bed / {prop.bathrooms:g} bath meets minimums")
            return 1.0

        reasons.append(f"{shortfall:g} bed/bath short of minimums")
        return max(0.0, 1.0 - self.config.size_step * shortfall)


class PropertyTypeFactor(ScoringFactor):
    """1.0 if the type is accepted (or no preference), else 0."""

    name = "property_type"
    weight = 0.10

    def score(self, profile, prop, reasons):
        if not profile.property_types:
            return 1.0
        if prop.property_type in profile.property_types:
            reasons.append(f"Type match: {prop.property_type.value}")
            return 1.0
        return 0.0

    def upper_bound(self, profile, prop):
        return self.score(profile, prop, [])


class TimelineFactor(ScoringFactor):
    """Fixed score per urgency level; independent of the property."""

    name = "timeline"
    weight = 0.10

    URGENCY_SCORES = {
        TimelineUrgency.IMMEDIATE: 1.0,
        TimelineUrgency.WITHIN_3_MONTHS: 0.85,
        TimelineUrgency.WITHIN_6_MONTHS: 0.7,
        TimelineUrgency.WITHIN_YEAR: 0.6,
        TimelineUrgency.NO_PREFERENCE: 0.5,
    }

    def score(self, profile, prop, reasons):
        return self.URGENCY_SCORES[profile.urgency]


FACTOR_REGISTRY: dict[str, type[ScoringFactor]] = {
    factor.name: factor
    for factor in (
        PriceFactor,
        LocationFactor,
        FeatureFactor,
        SizeFactor,
        PropertyTypeFactor,
        TimelineFactor,
    )
}


def build_factors(config: MatchConfig) -> list[ScoringFactor]:
    """
    Instantiate the configured factor strategies.

    Raises:
        ValueError: Unknown factor name, duplicate, or weights not summing to 1.0
    """
    if len(set(config.factors)) != len(config.factors):
        raise ValueError(f"Duplicate scoring factor in {config.factors}")

    factors = []
    for name in config.factors:
        if name not in FACTOR_REGISTRY:
            raise ValueError(f"Unknown scoring factor: {name}")
        factors.append(FACTOR_REGISTRY[name](config))

    total = math.fsum(f.weight for f in factors)
    if total != 1.0:
        raise ValueError(f"Scoring weights must sum to 1.0, got {total}")
    return factors


# =============================================================================
# SCORING ENGINE
# =============================================================================

class ScoringEngine:
    """
    Scores properties against preference profiles.

    Usage:
        engine = ScoringEngine()
        match = engine.score(profile, prop)
    """

    def __init__(self, config: Optional[MatchConfig] = None):
        self.config = config or get_match_config()
        self.factors = build_factors(self.config)

    @property
    def weights(self) -> dict[str, float]:
        return {f.name: f.weight for f in self.factors}

    def validate(self, profile: PreferenceProfile) -> None:
        """
        Raises:
            ScoringError: Profile cannot be scored
        """
        if not profile.client_id:
            raise ScoringError("Profile has no client_id")
        if (profile.price_min is not None and profile.price_max is not None
                and profile.price_min > profile.price_max):
            raise ScoringError(
                f"Profile {profile.client_id} has price_min {profile.price_min} "
                f"above price_max {profile.price_max}"
            )
        for name in ("price_min", "price_max", "min_bedrooms", "min_bathrooms"):
            value = getattr(profile, name)
            if value is not None and value < 0:
                raise ScoringError(f"Profile {profile.client_id} has negative {name}")

    def score(
        self,
        profile: PreferenceProfile,
        prop: PropertyRecord,
        computed_at: Optional[datetime] = None,
    ) -> MatchScore:
        """
        Score a single property against a single profile.

        Args:
            profile: The client's preferences
            prop: The property to evaluate
            computed_at: Timestamp to stamp on the result (left None if not given)

        Returns:
            MatchScore with composite, sub-scores and reasons

        Raises:
            ScoringError: Profile cannot be scored
        """
        self.validate(profile)

        reasons: list[str] = []
        sub_scores: dict[str, float] = {}
        disqualified_by = None

        for factor in self.factors:
            value = factor.score(profile, prop, reasons)
            sub_scores[factor.name] = min(1.0, max(0.0, value))
            if disqualified_by is None and factor.disqualifies(profile, prop):
                disqualified_by = factor.name

        if disqualified_by:
            composite = 0.0
        else:
            composite = math.fsum(f.weight * sub_scores[f.name] for f in self.factors)
            composite = min(1.0, max(0.0, composite))

        return MatchScore(
            property_id=prop.property_id,
            client_id=profile.client_id,
            composite=composite,
            sub_scores=sub_scores,
            reasons=reasons,
            disqualified_by=disqualified_by,
            property_revision=prop.revision,
            profile_revision=profile.revision,
            computed_at=computed_at,
        )

    def could_match(self, profile: PreferenceProfile, prop: PropertyRecord, min_score: float) -> bool:
        """
        Coarse pre-filter: False only when prop cannot reach min_score.

        Checks hard filters and an optimistic bound per factor, without
        running the full scoring pass.
        """
        if any(f.disqualifies(profile, prop) for f in self.factors):
            return False
        bound = math.fsum(f.weight * f.upper_bound(profile, prop) for f in self.factors)
        return bound >= min_score


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def score_property(profile: PreferenceProfile, prop: PropertyRecord) -> MatchScore:
    """
    Convenience function to score one property.

    Args:
        profile: Client preference profile
        prop: Property to score

    Returns:
        MatchScore
    """
    engine = ScoringEngine()
    return engine.score(profile, prop)
