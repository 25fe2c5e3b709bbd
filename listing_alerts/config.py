"""
Configuration module for Listing Alerts.

Loads environment variables and provides configuration constants.
All sensitive values should be in .env file (never commit to git).
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class SupabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # Service role key for server-side operations

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=os.getenv("SUPABASE_KEY", ""),
        )


@dataclass
class FeedConfig:
    """Listing feed (RESO Web API) connection configuration."""
    base_url: str = ""
    token: str = ""
    resources: list[str] = field(default_factory=lambda: ["Property"])
    page_size: int = 200

    # Request behaviour
    request_timeout: int = 30
    request_delay: float = 0.5  # Seconds between requests

    # Retry policy for transient failures
    max_retries: int = 4
    backoff_multiplier: float = 1.0
    backoff_max: float = 60.0

    @classmethod
    def from_env(cls) -> "FeedConfig":
        return cls(
            base_url=os.getenv("FEED_BASE_URL", ""),
            token=os.getenv("FEED_TOKEN", ""),
            resources=_split_list(os.getenv("FEED_RESOURCES", "Property")),
            page_size=int(os.getenv("FEED_PAGE_SIZE", "200")),
            request_timeout=int(os.getenv("FEED_TIMEOUT", "30")),
            request_delay=float(os.getenv("FEED_REQUEST_DELAY", "0.5")),
            max_retries=int(os.getenv("FEED_MAX_RETRIES", "4")),
            backoff_multiplier=float(os.getenv("FEED_BACKOFF_MULTIPLIER", "1.0")),
            backoff_max=float(os.getenv("FEED_BACKOFF_MAX", "60.0")),
        )


@dataclass
class SyncConfig:
    """Reconciliation and scheduling configuration."""
    store_backend: str = "supabase"  # "supabase" or "memory"

    # Full syncs a property may be absent from before it is withdrawn
    missing_sync_threshold: int = 3

    # Fraction of bad records above which a whole batch is rejected
    max_error_rate: float = 0.25

    # Worker pool
    worker_count: int = 4

    # Schedules
    sync_interval_minutes: int = 15
    search_interval_minutes: int = 60
    full_sync_hour: int = 2

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            store_backend=os.getenv("STORE_BACKEND", "supabase"),
            missing_sync_threshold=int(os.getenv("MISSING_SYNC_THRESHOLD", "3")),
            max_error_rate=float(os.getenv("MAX_ERROR_RATE", "0.25")),
            worker_count=int(os.getenv("WORKER_COUNT", "4")),
            sync_interval_minutes=int(os.getenv("SYNC_INTERVAL_MINUTES", "15")),
            search_interval_minutes=int(os.getenv("SEARCH_INTERVAL_MINUTES", "60")),
            full_sync_hour=int(os.getenv("FULL_SYNC_HOUR", "2")),
        )


DEFAULT_FACTORS = ["price", "location", "features", "size", "property_type", "timeline"]


@dataclass
class MatchConfig:
    """Scoring and match index configuration."""
    # Matches below this composite score are never served
    min_score: float = 0.6

    # Price band outside [min, max], as a fraction of the range width
    price_tolerance: float = 0.10

    # Score lost per bedroom/bathroom short of the minimum
    size_step: float = 0.25

    # Commute estimation
    commute_speed_mph: float = 30.0
    default_max_commute_minutes: int = 45

    # Scoring factor strategies, by name
    factors: list[str] = field(default_factory=lambda: list(DEFAULT_FACTORS))

    @classmethod
    def from_env(cls) -> "MatchConfig":
        return cls(
            min_score=float(os.getenv("MATCH_MIN_SCORE", "0.6")),
            price_tolerance=float(os.getenv("PRICE_TOLERANCE", "0.10")),
            size_step=float(os.getenv("SIZE_STEP", "0.25")),
            commute_speed_mph=float(os.getenv("COMMUTE_SPEED_MPH", "30.0")),
            default_max_commute_minutes=int(os.getenv("DEFAULT_MAX_COMMUTE_MINUTES", "45")),
            factors=_split_list(os.getenv("SCORING_FACTORS", ",".join(DEFAULT_FACTORS))),
        )


# Global configuration instances (lazy loaded)
_supabase_config: Optional[SupabaseConfig] = None
_feed_config: Optional[FeedConfig] = None
_sync_config: Optional[SyncConfig] = None
_match_config: Optional[MatchConfig] = None


def get_supabase_config() -> SupabaseConfig:
    """Get Supabase configuration (cached)."""
    global _supabase_config
    if _supabase_config is None:
        _supabase_config = SupabaseConfig.from_env()
    return _supabase_config


def get_feed_config() -> FeedConfig:
    """Get feed configuration (cached)."""
    global _feed_config
    if _feed_config is None:
        _feed_config = FeedConfig.from_env()
    return _feed_config


def get_sync_config() -> SyncConfig:
    """Get sync configuration (cached)."""
    global _sync_config
    if _sync_config is None:
        _sync_config = SyncConfig.from_env()
    return _sync_config


def get_match_config() -> MatchConfig:
    """Get match configuration (cached)."""
    global _match_config
    if _match_config is None:
        _match_config = MatchConfig.from_env()
    return _match_config
