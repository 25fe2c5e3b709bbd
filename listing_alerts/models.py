"""
Data models for Listing Alerts.

Defines canonical dataclasses that all feed records normalize into.
These models represent the unified schema for properties, client
preferences, match scores, sync cursors and saved-search state.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional
from enum import Enum


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ListingStatus(str, Enum):
    """Listing status. Properties are never deleted, only moved to a terminal status."""
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (ListingStatus.SOLD, ListingStatus.WITHDRAWN, ListingStatus.EXPIRED)


class PropertyType(str, Enum):
    """Property types offered on the dashboard."""
    SINGLE_FAMILY = "single_family"
    CONDO = "condo"
    TOWNHOUSE = "townhouse"
    MULTI_FAMILY = "multi_family"
    LAND = "land"
    COMMERCIAL = "commercial"
    OTHER = "other"


class TimelineUrgency(str, Enum):
    """How soon the client wants to move."""
    IMMEDIATE = "immediate"
    WITHIN_3_MONTHS = "within_3_months"
    WITHIN_6_MONTHS = "within_6_months"
    WITHIN_YEAR = "within_year"
    NO_PREFERENCE = "no_preference"


class SearchRunState(str, Enum):
    """Run state of a saved search (Idle -> Running -> Idle)."""
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class Location:
    """Geographic location of a property."""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "lat": self.lat,
            "lng": self.lng,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        return cls(
            city=data.get("city", ""),
            state=data.get("state", ""),
            zip_code=data.get("zip_code", ""),
            lat=data.get("lat"),
            lng=data.get("lng"),
        )


@dataclass
class WorkLocation:
    """Where the client commutes to."""
    lat: float
    lng: float
    max_commute_minutes: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "max_commute_minutes": self.max_commute_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkLocation":
        return cls(
            lat=data["lat"],
            lng=data["lng"],
            max_commute_minutes=data.get("max_commute_minutes"),
        )


@dataclass
class PropertyRecord:
    """
    Canonical representation of a listing.

    feed_id is the stable identifier from the feed and never changes.
    property_id is assigned by the store on first insert and is never reused.
    """
    feed_id: str
    status: ListingStatus
    price: float
    last_modified: datetime

    property_id: Optional[str] = None

    # Location
    location: Location = field(default_factory=Location)
    address: str = ""

    # Structure
    property_type: PropertyType = PropertyType.OTHER
    bedrooms: int = 0
    bathrooms: float = 0.0
    square_feet: Optional[int] = None
    lot_size: Optional[float] = None  # Square feet
    year_built: Optional[int] = None

    # Order-irrelevant amenity tags (pool, fireplace, ...)
    features: frozenset = field(default_factory=frozenset)
    description: str = ""
    list_date: Optional[date] = None

    # School quality on a 0-10 scale, when the feed provides one
    school_rating: Optional[float] = None

    # Bookkeeping
    revision: int = 0        # Bumped on every applied change
    alert_revision: int = 0  # Bumped on creation and significant changes only
    missed_syncs: int = 0    # Consecutive full syncs this listing was absent from
    first_seen: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.features = frozenset(f.strip().lower() for f in self.features if f and f.strip())

    @property
    def is_active(self) -> bool:
        return self.status == ListingStatus.ACTIVE

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "feed_id": self.feed_id,
            "property_id": self.property_id,
            "status": self.status.value,
            "price": self.price,
            "last_modified": self.last_modified.isoformat(),
            "location": self.location.to_dict(),
            "address": self.address,
            "property_type": self.property_type.value,
            "bedrooms": self.bedrooms,
            "bathrooms": self.bathrooms,
            "square_feet": self.square_feet,
            "lot_size": self.lot_size,
            "year_built": self.year_built,
            "features": sorted(self.features),
            "description": self.description,
            "list_date": self.list_date.isoformat() if self.list_date else None,
            "school_rating": self.school_rating,
            "revision": self.revision,
            "alert_revision": self.alert_revision,
            "missed_syncs": self.missed_syncs,
            "first_seen": self.first_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyRecord":
        """Create from dictionary (e.g., from database)."""
        return cls(
            feed_id=data["feed_id"],
            property_id=data.get("property_id"),
            status=ListingStatus(data["status"]),
            price=data["price"],
            last_modified=_dt(data["last_modified"]),
            location=Location.from_dict(data["location"]) if data.get("location") else Location(),
            address=data.get("address", ""),
            property_type=PropertyType(data.get("property_type", "other")),
            bedrooms=data.get("bedrooms", 0),
            bathrooms=data.get("bathrooms", 0.0),
            square_feet=data.get("square_feet"),
            lot_size=data.get("lot_size"),
            year_built=data.get("year_built"),
            features=frozenset(data.get("features") or []),
            description=data.get("description", ""),
            list_date=date.fromisoformat(data["list_date"]) if data.get("list_date") else None,
            school_rating=data.get("school_rating"),
            revision=data.get("revision", 0),
            alert_revision=data.get("alert_revision", 0),
            missed_syncs=data.get("missed_syncs", 0),
            first_seen=_dt(data.get("first_seen")) or utcnow(),
        )


@dataclass
class PreferenceProfile:
    """
    A client's structured search criteria.

    Owned by the preference store; read-only to this engine. Saved searches
    reuse the same shape as their filter.
    """
    client_id: str

    # Price range (either bound optional)
    price_min: Optional[float] = None
    price_max: Optional[float] = None

    # Size minimums
    min_bedrooms: Optional[int] = None
    min_bathrooms: Optional[float] = None

    # Preferred cities or zip codes
    locations: frozenset = field(default_factory=frozenset)

    # Features
    must_have: frozenset = field(default_factory=frozenset)
    nice_to_have: frozenset = field(default_factory=frozenset)

    # Accepted property types (empty = any)
    property_types: frozenset = field(default_factory=frozenset)

    urgency: TimelineUrgency = TimelineUrgency.NO_PREFERENCE
    work_location: Optional[WorkLocation] = None

    # Revision supplied by the preference store
    revision: int = 0

    def __post_init__(self):
        self.locations = frozenset(loc.strip().lower() for loc in self.locations if loc and loc.strip())
        self.must_have = frozenset(f.strip().lower() for f in self.must_have if f and f.strip())
        self.nice_to_have = frozenset(f.strip().lower() for f in self.nice_to_have if f and f.strip())
        self.property_types = frozenset(PropertyType(t) for t in self.property_types)

    def matches_location(self, location: Location) -> bool:
        """True if the city or zip code is one of the preferred locations."""
        return (
            location.city.strip().lower() in self.locations
            or location.zip_code.strip().lower() in self.locations
        )

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "price_min": self.price_min,
            "price_max": self.price_max,
            "min_bedrooms": self.min_bedrooms,
            "min_bathrooms": self.min_bathrooms,
            "locations": sorted(self.locations),
            "must_have": sorted(self.must_have),
            "nice_to_have": sorted(self.nice_to_have),
            "property_types": sorted(t.value for t in self.property_types),
            "urgency": self.urgency.value,
            "work_location": self.work_location.to_dict() if self.work_location else None,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PreferenceProfile":
        return cls(
            client_id=data["client_id"],
            price_min=data.get("price_min"),
            price_max=data.get("price_max"),
            min_bedrooms=data.get("min_bedrooms"),
            min_bathrooms=data.get("min_bathrooms"),
            locations=frozenset(data.get("locations") or []),
            must_have=frozenset(data.get("must_have") or []),
            nice_to_have=frozenset(data.get("nice_to_have") or []),
            property_types=frozenset(data.get("property_types") or []),
            urgency=TimelineUrgency(data.get("urgency", "no_preference")),
            work_location=WorkLocation.from_dict(data["work_location"]) if data.get("work_location") else None,
            revision=data.get("revision", 0),
        )


@dataclass
class MatchScore:
    """
    Score of one property against one client's profile.

    Derived data: the revisions of both inputs are kept so the match index
    can refuse to serve a score computed against stale inputs.
    """
    property_id: str
    client_id: str
    composite: float
    sub_scores: dict[str, float]
    reasons: list[str] = field(default_factory=list)
    disqualified_by: Optional[str] = None  # Hard filter that zeroed the score
    property_revision: int = 0
    profile_revision: int = 0
    computed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "client_id": self.client_id,
            "composite": self.composite,
            "sub_scores": dict(self.sub_scores),
            "reasons": list(self.reasons),
            "disqualified_by": self.disqualified_by,
            "property_revision": self.property_revision,
            "profile_revision": self.profile_revision,
            "computed_at": _iso(self.computed_at),
        }


@dataclass
class SyncCursor:
    """
    How far the sync of one feed resource has progressed.

    Advanced only after a batch has been fully applied.
    """
    resource: str
    watermark: Optional[datetime] = None
    token: Optional[str] = None  # Feed-provided continuation token, if any
    last_run_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "watermark": _iso(self.watermark),
            "token": self.token,
            "last_run_at": _iso(self.last_run_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncCursor":
        return cls(
            resource=data["resource"],
            watermark=_dt(data.get("watermark")),
            token=data.get("token"),
            last_run_at=_dt(data.get("last_run_at")),
        )


@dataclass
class SavedSearchState:
    """
    A client's saved search and what it has already alerted on.

    alerted maps property_id -> the alert revision of the property when the
    alert went out, so a significant change makes the property eligible again.
    """
    search_id: str
    client_id: str
    criteria: PreferenceProfile
    alerted: dict[str, int] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None

    # Run the client's live profile through the match index instead of criteria
    follows_profile: bool = False
    min_score: Optional[float] = None
    run_state: SearchRunState = SearchRunState.IDLE
    is_active: bool = True

    def new_matches(self, candidates: dict[str, int]) -> list[str]:
        """Property IDs in candidates not yet alerted at their current alert revision."""
        return sorted(
            property_id
            for property_id, revision in candidates.items()
            if self.alerted.get(property_id) != revision
        )

    def to_dict(self) -> dict:
        return {
            "search_id": self.search_id,
            "client_id": self.client_id,
            "criteria": self.criteria.to_dict(),
            "alerted": dict(self.alerted),
            "last_run_at": _iso(self.last_run_at),
            "follows_profile": self.follows_profile,
            "min_score": self.min_score,
            "run_state": self.run_state.value,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SavedSearchState":
        return cls(
            search_id=data["search_id"],
            client_id=data["client_id"],
            criteria=PreferenceProfile.from_dict(data["criteria"]),
            alerted={k: int(v) for k, v in (data.get("alerted") or {}).items()},
            last_run_at=_dt(data.get("last_run_at")),
            follows_profile=data.get("follows_profile", False),
            min_score=data.get("min_score"),
            run_state=SearchRunState(data.get("run_state", "idle")),
            is_active=data.get("is_active", True),
        )


@dataclass
class AlertEvent:
    """
    Alert handed to the notification dispatcher.

    One event per saved-search run, batching every newly matched property.
    """
    alert_id: str
    saved_search_id: str
    client_id: str
    new_property_ids: list[str]
    triggered_at: datetime = field(default_factory=utcnow)
    trigger: str = "scheduled"

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "saved_search_id": self.saved_search_id,
            "client_id": self.client_id,
            "new_property_ids": list(self.new_property_ids),
            "triggered_at": self.triggered_at.isoformat(),
            "trigger": self.trigger,
        }


@dataclass
class RecordError:
    """A feed record that could not be applied."""
    feed_id: Optional[str]
    field_name: Optional[str]
    message: str

    def to_dict(self) -> dict:
        return {"feed_id": self.feed_id, "field": self.field_name, "message": self.message}
