"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from listing_alerts.config import FeedConfig, MatchConfig, SyncConfig
from listing_alerts.db import MemoryDatabase
from listing_alerts.models import PreferenceProfile
from listing_alerts.normalization import ListingNormalizer
from listing_alerts.sources.base import BaseFeedClient, FeedPage

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def ts(minutes: int = 0) -> datetime:
    """Timestamp a number of minutes after a fixed base time."""
    return T0 + timedelta(minutes=minutes)


def raw_listing(
    key: str = "L1",
    minutes: int = 0,
    price: float = 400000,
    status: str = "Active",
    bedrooms: int = 3,
    bathrooms: float = 2,
    features: Optional[list] = None,
    city: str = "Austin",
    **extra,
) -> dict:
    """A raw RESO-style feed record."""
    record = {
        "ListingKey": key,
        "ModificationTimestamp": ts(minutes).isoformat().replace("+00:00", "Z"),
        "StandardStatus": status,
        "ListPrice": price,
        "BedroomsTotal": bedrooms,
        "BathroomsTotalDecimal": bathrooms,
        "City": city,
        "StateOrProvince": "TX",
        "PostalCode": "78701",
        "PropertyType": "Residential",
        "PropertySubType": "Single Family Residence",
        "features": features if features is not None else ["pool"],
        "ListingContractDate": "2024-02-20",
    }
    record.update(extra)
    return record


class FakeFeedClient(BaseFeedClient):
    """Serves an in-memory list of raw records through the paging interface."""

    def __init__(self, records: Optional[list[dict]] = None, config: Optional[FeedConfig] = None):
        super().__init__(config or FeedConfig(
            base_url="https://feed.test",
            page_size=2,
            request_delay=0,
            max_retries=3,
            backoff_multiplier=0,
        ))
        self.records = list(records or [])
        self.calls = []

    def _fetch_page(self, resource, modified_since, offset, limit):
        self.calls.append((resource, modified_since, offset, limit))
        normalizer = ListingNormalizer()
        matching = sorted(
            (r for r in self.records
             if modified_since is None
             or normalizer.parse_datetime(r["ModificationTimestamp"]) >= modified_since),
            key=lambda r: r["ModificationTimestamp"],
        )
        page = matching[offset:offset + limit]
        return FeedPage(records=page, end_of_results=offset + limit >= len(matching), offset=offset)


@pytest.fixture
def store() -> MemoryDatabase:
    """Empty in-memory store."""
    return MemoryDatabase()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Sync settings for tests."""
    return SyncConfig(store_backend="memory", missing_sync_threshold=2, worker_count=2)


@pytest.fixture
def match_config() -> MatchConfig:
    """Default scoring settings."""
    return MatchConfig()


@pytest.fixture
def feed_config() -> FeedConfig:
    """Feed settings with no delays between retries."""
    return FeedConfig(
        base_url="https://feed.test/reso/odata",
        token="secret",
        page_size=2,
        request_delay=0,
        max_retries=3,
        backoff_multiplier=0,
    )


@pytest.fixture
def pool_profile() -> PreferenceProfile:
    """Client wanting a 3-bed home with a pool under $500k."""
    return PreferenceProfile(
        client_id="client_pool",
        price_max=500000,
        must_have=frozenset(["pool"]),
        min_bedrooms=3,
        revision=1,
    )
