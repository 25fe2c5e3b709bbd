"""
Normalization module for Listing Alerts.

Maps raw feed records into the canonical PropertyRecord schema.
Feeds use RESO Data Dictionary field names; webhook payloads and test
fixtures may use the canonical snake_case names. Both are accepted.
"""

import re
import math
import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from .models import (
    ListingStatus,
    Location,
    PropertyRecord,
    PropertyType,
    RecordError,
)

logger = logging.getLogger(__name__)


class RecordTransformError(Exception):
    """A single raw record could not be mapped onto PropertyRecord."""

    def __init__(self, message: str, feed_id: Optional[str] = None, field_name: Optional[str] = None):
        super().__init__(message)
        self.feed_id = feed_id
        self.field_name = field_name

    def to_record_error(self) -> RecordError:
        return RecordError(feed_id=self.feed_id, field_name=self.field_name, message=str(self))


# =============================================================================
# FIELD MAPPINGS
# =============================================================================

# Canonical field -> raw keys to try, in order
FIELD_ALIASES: dict[str, list[str]] = {
    "feed_id": ["ListingKey", "ListingId", "feed_id"],
    "last_modified": ["ModificationTimestamp", "last_modified"],
    "status": ["StandardStatus", "MlsStatus", "status"],
    "price": ["ListPrice", "price"],
    "bedrooms": ["BedroomsTotal", "bedrooms"],
    "bathrooms": ["BathroomsTotalDecimal", "BathroomsTotalInteger", "bathrooms"],
    "square_feet": ["LivingArea", "square_feet"],
    "lot_size": ["LotSizeSquareFeet", "lot_size"],
    "lot_acres": ["LotSizeAcres"],
    "year_built": ["YearBuilt", "year_built"],
    "property_type": ["PropertySubType", "PropertyType", "property_type"],
    "address": ["UnparsedAddress", "address"],
    "city": ["City", "city"],
    "state": ["StateOrProvince", "state"],
    "zip_code": ["PostalCode", "zip_code"],
    "lat": ["Latitude", "lat"],
    "lng": ["Longitude", "lng"],
    "description": ["PublicRemarks", "description"],
    "list_date": ["ListingContractDate", "OnMarketDate", "list_date"],
    "school_rating": ["SchoolRating", "school_rating"],
    "features": ["features", "Features"],
}

STATUS_CODES: dict[str, ListingStatus] = {
    "active": ListingStatus.ACTIVE,
    "a": ListingStatus.ACTIVE,
    "act": ListingStatus.ACTIVE,
    "coming soon": ListingStatus.ACTIVE,
    "pending": ListingStatus.PENDING,
    "p": ListingStatus.PENDING,
    "active under contract": ListingStatus.PENDING,
    "under contract": ListingStatus.PENDING,
    "closed": ListingStatus.SOLD,
    "sold": ListingStatus.SOLD,
    "s": ListingStatus.SOLD,
    "withdrawn": ListingStatus.WITHDRAWN,
    "canceled": ListingStatus.WITHDRAWN,
    "cancelled": ListingStatus.WITHDRAWN,
    "w": ListingStatus.WITHDRAWN,
    "expired": ListingStatus.EXPIRED,
    "x": ListingStatus.EXPIRED,
}

# Checked in order; first keyword contained in the type text wins
PROPERTY_TYPE_KEYWORDS: list[tuple[str, PropertyType]] = [
    ("multi family", PropertyType.MULTI_FAMILY),
    ("residential income", PropertyType.MULTI_FAMILY),
    ("duplex", PropertyType.MULTI_FAMILY),
    ("triplex", PropertyType.MULTI_FAMILY),
    ("quadruplex", PropertyType.MULTI_FAMILY),
    ("single family", PropertyType.SINGLE_FAMILY),
    ("detached", PropertyType.SINGLE_FAMILY),
    ("townhouse", PropertyType.TOWNHOUSE),
    ("townhome", PropertyType.TOWNHOUSE),
    ("condo", PropertyType.CONDO),
    ("apartment", PropertyType.CONDO),
    ("land", PropertyType.LAND),
    ("lot", PropertyType.LAND),
    ("commercial", PropertyType.COMMERCIAL),
    ("residential", PropertyType.SINGLE_FAMILY),
]

# RESO Y/N amenity flags -> feature tag
FEATURE_FLAGS: dict[str, str] = {
    "PoolPrivateYN": "pool",
    "FireplaceYN": "fireplace",
    "GarageYN": "garage",
    "WaterfrontYN": "waterfront",
    "ViewYN": "view",
    "CoolingYN": "air_conditioning",
    "BasementYN": "basement",
    "SpaYN": "spa",
}

SQFT_PER_ACRE = 43560


# =============================================================================
# NORMALIZER CLASS
# =============================================================================

class ListingNormalizer:
    """
    Normalizes raw feed records into canonical PropertyRecord objects.

    Usage:
        normalizer = ListingNormalizer()
        records, errors = normalizer.normalize_batch(raw_records)
    """

    REQUIRED_FIELDS = ("feed_id", "last_modified", "status", "price")

    def normalize_batch(self, raw_records: list[dict]) -> tuple[list[PropertyRecord], list[RecordError]]:
        """
        Normalize a batch of raw records.

        Malformed records are skipped and reported; they never abort the batch.

        Returns:
            Tuple of (normalized records, row-level errors)
        """
        records = []
        errors = []

        for raw in raw_records:
            try:
                records.append(self.normalize(raw))
            except RecordTransformError as e:
                logger.warning(f"Skipping record {e.feed_id or 'unknown'}: {e}")
                errors.append(e.to_record_error())

        logger.debug(f"Normalized {len(records)}/{len(raw_records)} records")
        return records, errors

    def normalize(self, raw: dict) -> PropertyRecord:
        """
        Normalize a single raw record.

        Raises:
            RecordTransformError: Required field missing or unparseable
        """
        if not isinstance(raw, dict):
            raise RecordTransformError(f"Expected a mapping, got {type(raw).__name__}")

        feed_id = self.get(raw, "feed_id")
        feed_id = str(feed_id).strip() if feed_id is not None else ""

        for name in self.REQUIRED_FIELDS:
            value = self.get(raw, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise RecordTransformError(f"Missing required field '{name}'", feed_id or None, name)

        last_modified = self.parse_datetime(self.get(raw, "last_modified"))
        if last_modified is None:
            raise RecordTransformError("Unparseable modification timestamp", feed_id, "last_modified")

        status = self._parse_status(self.get(raw, "status"))
        if status is None:
            raise RecordTransformError(
                f"Unknown status code '{self.get(raw, 'status')}'", feed_id, "status"
            )

        price = self._parse_number(self.get(raw, "price"))
        if price is None or price < 0:
            raise RecordTransformError(f"Unparseable price '{self.get(raw, 'price')}'", feed_id, "price")

        bedrooms = self._parse_required_count(raw, "bedrooms", feed_id)
        bathrooms = self._parse_required_count(raw, "bathrooms", feed_id)

        lot_size = self._parse_number(self.get(raw, "lot_size"))
        if lot_size is None:
            acres = self._parse_number(self.get(raw, "lot_acres"))
            lot_size = acres * SQFT_PER_ACRE if acres is not None else None

        square_feet = self._parse_number(self.get(raw, "square_feet"))
        year_built = self._parse_number(self.get(raw, "year_built"))

        return PropertyRecord(
            feed_id=feed_id,
            status=status,
            price=price,
            last_modified=last_modified,
            location=self._build_location(raw),
            address=self._clean_text(self.get(raw, "address")),
            property_type=self._detect_property_type(self.get(raw, "property_type")),
            bedrooms=int(bedrooms),
            bathrooms=float(bathrooms),
            square_feet=int(square_feet) if square_feet is not None else None,
            lot_size=lot_size,
            year_built=int(year_built) if year_built is not None else None,
            features=self._extract_features(raw),
            description=self._clean_text(self.get(raw, "description")),
            list_date=self._parse_date(self.get(raw, "list_date")),
            school_rating=self._parse_number(self.get(raw, "school_rating")),
        )

    def get(self, raw: dict, name: str) -> Any:
        """First non-None value among the aliases of a canonical field."""
        for key in FIELD_ALIASES[name]:
            if raw.get(key) is not None:
                return raw[key]
        return None

    def _parse_required_count(self, raw: dict, name: str, feed_id: str) -> float:
        value = self.get(raw, name)
        if value is None:
            return 0
        number = self._parse_number(value)
        if number is None or number < 0:
            raise RecordTransformError(f"Unparseable {name} '{value}'", feed_id, name)
        return number

    def _clean_text(self, text) -> str:
        """Clean and normalize text."""
        if not text:
            return ""

        text = re.sub(r"\s+", " ", str(text))
        text = re.sub(r"&[a-z]+;", " ", text)
        return text.strip()

    def _parse_number(self, value) -> Optional[float]:
        """Parse a number from numeric strings such as "$1,250,000"."""
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            try:
                number = float(value)
            except OverflowError:
                return None
        elif isinstance(value, str):
            cleaned = re.sub(r"[,$\s]", "", value)
            if not cleaned:
                return None
            try:
                number = float(cleaned)
            except ValueError:
                return None
        else:
            return None

        # NaN and infinities are not quantities
        return number if math.isfinite(number) else None

    def _parse_status(self, value) -> Optional[ListingStatus]:
        if isinstance(value, ListingStatus):
            return value
        key = re.sub(r"[_\-]", " ", str(value)).strip().lower()
        return STATUS_CODES.get(key)

    def _detect_property_type(self, value) -> PropertyType:
        """Detect property type from the feed's type/subtype text."""
        if not value:
            return PropertyType.OTHER
        if isinstance(value, PropertyType):
            return value

        text = re.sub(r"[_\-]", " ", str(value)).lower()
        for keyword, property_type in PROPERTY_TYPE_KEYWORDS:
            if keyword in text:
                return property_type
        return PropertyType.OTHER

    def _extract_features(self, raw: dict) -> frozenset:
        """Collect feature tags from Y/N flags and any free feature list."""
        tags = set()

        for flag, tag in FEATURE_FLAGS.items():
            value = raw.get(flag)
            if value is True or (isinstance(value, str) and value.strip().lower() in ("y", "yes", "true")):
                tags.add(tag)

        listed = self.get(raw, "features")
        if isinstance(listed, str):
            listed = listed.split(",")
        for feature in listed or []:
            tag = re.sub(r"\s+", "_", str(feature).strip().lower())
            if tag:
                tags.add(tag)

        return frozenset(tags)

    def parse_datetime(self, value) -> Optional[datetime]:
        """Parse a timestamp into an aware UTC datetime."""
        if value is None:
            return None

        parsed = None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                for fmt in ("%Y-%m-%d %H:%M:%S", "%m/%d/%Y %H:%M", "%m/%d/%Y"):
                    try:
                        parsed = datetime.strptime(value.strip(), fmt)
                        break
                    except ValueError:
                        continue

        if parsed is None:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _parse_date(self, value) -> Optional[date]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        parsed = self.parse_datetime(value)
        return parsed.date() if parsed else None

    def _build_location(self, raw: dict) -> Location:
        """Build Location object from raw data."""
        return Location(
            city=self._clean_text(self.get(raw, "city")),
            state=self._clean_text(self.get(raw, "state")),
            zip_code=self._clean_text(self.get(raw, "zip_code")),
            lat=self._parse_number(self.get(raw, "lat")),
            lng=self._parse_number(self.get(raw, "lng")),
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def normalize_records(raw_records: list[dict]) -> tuple[list[PropertyRecord], list[RecordError]]:
    """
    Convenience function to normalize feed records.

    Args:
        raw_records: List of raw record dictionaries

    Returns:
        Tuple of (normalized records, row-level errors)
    """
    normalizer = ListingNormalizer()
    return normalizer.normalize_batch(raw_records)
