"""
Listing Alerts - Property Matching & MLS Synchronization Engine

Keeps a local property store in sync with an MLS-style listing feed,
scores properties against client preference profiles, and alerts clients
when their saved searches gain genuinely new matches.

Modules:
- config: Configuration and environment variables
- models: Canonical data models (dataclasses)
- events: Pipeline messages and the in-process event bus
- sources: Listing feed clients (RESO Web API)
- normalization: Map raw feed records to the canonical schema
- db: Supabase and in-memory stores
- reconciler: Apply feed batches to the property store
- scoring: Score properties against preference profiles
- match_index: Latest match scores per (property, client)
- alerts: Saved-search runs and alert dispatch
- pipeline: Main orchestration
- scheduler: APScheduler setup and CLI
- webhook_server: Webhook ingestion and match queries
"""

__version__ = "0.1.0"

# Convenient imports
from .models import (
    ListingStatus,
    PropertyType,
    TimelineUrgency,
    Location,
    WorkLocation,
    PropertyRecord,
    PreferenceProfile,
    MatchScore,
    SyncCursor,
    SavedSearchState,
    AlertEvent,
    RecordError,
)
from .events import EventBus, PropertyEvent, PropertyEventKind, ProfileEvent
from .normalization import ListingNormalizer, RecordTransformError, normalize_records
from .db import Store, MemoryDatabase, StoreError, get_db
from .reconciler import Reconciler, BatchFailedError, BatchResult
from .scoring import ScoringEngine, ScoringError, score_property
from .match_index import MatchIndex
from .alerts import AlertScheduler, AlertDispatcher, LoggingDispatcher, QueueDispatcher
from .pipeline import MatchingPipeline, run_incremental_sync, run_full_sync, run_saved_searches

__all__ = [
    # Models
    "ListingStatus",
    "PropertyType",
    "TimelineUrgency",
    "Location",
    "WorkLocation",
    "PropertyRecord",
    "PreferenceProfile",
    "MatchScore",
    "SyncCursor",
    "SavedSearchState",
    "AlertEvent",
    "RecordError",
    # Events
    "EventBus",
    "PropertyEvent",
    "PropertyEventKind",
    "ProfileEvent",
    # Normalization
    "ListingNormalizer",
    "RecordTransformError",
    "normalize_records",
    # Storage
    "Store",
    "MemoryDatabase",
    "StoreError",
    "get_db",
    # Reconciliation
    "Reconciler",
    "BatchFailedError",
    "BatchResult",
    # Scoring
    "ScoringEngine",
    "ScoringError",
    "score_property",
    "MatchIndex",
    # Alerts
    "AlertScheduler",
    "AlertDispatcher",
    "LoggingDispatcher",
    "QueueDispatcher",
    # Pipeline
    "MatchingPipeline",
    "run_incremental_sync",
    "run_full_sync",
    "run_saved_searches",
]
