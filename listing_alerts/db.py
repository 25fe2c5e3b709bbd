"""
Storage module for Listing Alerts.

Handles all persistence the engine needs:
- Properties (insert-once, compare-and-swap updates, change history)
- Client preference profiles (read side of the preference store)
- Sync cursors per feed resource
- Saved-search state and emitted alerts
- Sync run log

Two backends share one interface: Supabase for deployments and an
in-memory store for tests and dry runs.

Tables required (Supabase):
- properties: Normalized listings, unique on feed_id
- profiles: Client preference profiles
- sync_cursors: One row per feed resource
- saved_searches: Saved-search state including the already-alerted map
- alerts: Emitted alert events
- property_changes: Field-level change history
- sync_runs: One row per reconciliation batch
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Iterable, Optional
from supabase import create_client, Client
from postgrest.exceptions import APIError

from .config import get_supabase_config, get_sync_config
from .models import (
    AlertEvent,
    ListingStatus,
    PreferenceProfile,
    PropertyRecord,
    SavedSearchState,
    SyncCursor,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Persistence failed; the current run cannot continue."""
    pass


def new_property_id() -> str:
    return f"prop_{uuid.uuid4().hex[:12]}"


class Store(ABC):
    """Interface shared by every storage backend."""

    # =========================================================================
    # PROPERTY OPERATIONS
    # =========================================================================

    @abstractmethod
    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        pass

    @abstractmethod
    def get_property_by_feed_id(self, feed_id: str) -> Optional[PropertyRecord]:
        pass

    @abstractmethod
    def insert_property(self, record: PropertyRecord) -> Optional[PropertyRecord]:
        """
        Insert a never-seen listing, assigning its internal ID.

        Returns:
            The stored record, or None if the feed ID already exists
        """
        pass

    @abstractmethod
    def update_property(self, record: PropertyRecord, expected_revision: int) -> bool:
        """
        Compare-and-swap update.

        Writes only if the stored revision still equals expected_revision.

        Returns:
            True if the write was applied
        """
        pass

    @abstractmethod
    def list_properties(self, statuses: Optional[Iterable[ListingStatus]] = None) -> list[PropertyRecord]:
        pass

    @abstractmethod
    def log_property_changes(self, property_id: str, changes: list[dict]) -> None:
        pass

    # =========================================================================
    # PROFILE OPERATIONS
    # =========================================================================

    @abstractmethod
    def get_profile(self, client_id: str) -> Optional[PreferenceProfile]:
        pass

    @abstractmethod
    def list_profiles(self) -> list[PreferenceProfile]:
        pass

    # =========================================================================
    # CURSOR OPERATIONS
    # =========================================================================

    @abstractmethod
    def get_cursor(self, resource: str) -> SyncCursor:
        """Cursor for a resource; a fresh cursor if it has never synced."""
        pass

    @abstractmethod
    def save_cursor(self, cursor: SyncCursor) -> None:
        pass

    # =========================================================================
    # SAVED SEARCH & ALERT OPERATIONS
    # =========================================================================

    @abstractmethod
    def get_saved_search(self, search_id: str) -> Optional[SavedSearchState]:
        pass

    @abstractmethod
    def list_saved_searches(self, client_id: Optional[str] = None) -> list[SavedSearchState]:
        """Active saved searches, optionally for one client."""
        pass

    @abstractmethod
    def save_saved_search(self, state: SavedSearchState) -> None:
        pass

    @abstractmethod
    def record_alert(self, event: AlertEvent) -> None:
        """Durably record an alert as emitted."""
        pass

    @abstractmethod
    def log_sync_run(self, summary: dict) -> None:
        pass


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class MemoryDatabase(Store):
    """
    In-process store.

    Every read returns a copy so callers can never mutate stored state
    outside of a compare-and-swap.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._properties: dict[str, PropertyRecord] = {}
        self._feed_index: dict[str, str] = {}
        self._profiles: dict[str, PreferenceProfile] = {}
        self._cursors: dict[str, SyncCursor] = {}
        self._searches: dict[str, SavedSearchState] = {}
        self.alerts: list[AlertEvent] = []
        self.property_changes: list[dict] = []
        self.sync_runs: list[dict] = []

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        with self._lock:
            record = self._properties.get(property_id)
            return copy.deepcopy(record) if record else None

    def get_property_by_feed_id(self, feed_id: str) -> Optional[PropertyRecord]:
        with self._lock:
            property_id = self._feed_index.get(feed_id)
            return self.get_property(property_id) if property_id else None

    def insert_property(self, record: PropertyRecord) -> Optional[PropertyRecord]:
        with self._lock:
            if record.feed_id in self._feed_index:
                return None
            stored = copy.deepcopy(record)
            stored.property_id = new_property_id()
            stored.revision = 1
            stored.alert_revision = 1
            self._properties[stored.property_id] = stored
            self._feed_index[stored.feed_id] = stored.property_id
            logger.debug(f"Inserted property {stored.property_id} ({stored.feed_id})")
            return copy.deepcopy(stored)

    def update_property(self, record: PropertyRecord, expected_revision: int) -> bool:
        with self._lock:
            current = self._properties.get(record.property_id)
            if current is None or current.revision != expected_revision:
                return False
            if current.feed_id != record.feed_id:
                raise StoreError(f"Feed ID of {record.property_id} cannot change")
            self._properties[record.property_id] = copy.deepcopy(record)
            return True

    def list_properties(self, statuses: Optional[Iterable[ListingStatus]] = None) -> list[PropertyRecord]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._properties.values()
                if wanted is None or record.status in wanted
            ]

    def log_property_changes(self, property_id: str, changes: list[dict]) -> None:
        with self._lock:
            for change in changes:
                self.property_changes.append({"property_id": property_id, **change})

    def put_profile(self, profile: PreferenceProfile) -> None:
        """Write a profile (the preference store's side; used for seeding)."""
        with self._lock:
            self._profiles[profile.client_id] = copy.deepcopy(profile)

    def get_profile(self, client_id: str) -> Optional[PreferenceProfile]:
        with self._lock:
            profile = self._profiles.get(client_id)
            return copy.deepcopy(profile) if profile else None

    def list_profiles(self) -> list[PreferenceProfile]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._profiles.values()]

    def get_cursor(self, resource: str) -> SyncCursor:
        with self._lock:
            cursor = self._cursors.get(resource)
            return copy.deepcopy(cursor) if cursor else SyncCursor(resource=resource)

    def save_cursor(self, cursor: SyncCursor) -> None:
        with self._lock:
            self._cursors[cursor.resource] = copy.deepcopy(cursor)

    def get_saved_search(self, search_id: str) -> Optional[SavedSearchState]:
        with self._lock:
            state = self._searches.get(search_id)
            return copy.deepcopy(state) if state else None

    def list_saved_searches(self, client_id: Optional[str] = None) -> list[SavedSearchState]:
        with self._lock:
            return [
                copy.deepcopy(state)
                for state in self._searches.values()
                if state.is_active and (client_id is None or state.client_id == client_id)
            ]

    def save_saved_search(self, state: SavedSearchState) -> None:
        with self._lock:
            self._searches[state.search_id] = copy.deepcopy(state)

    def record_alert(self, event: AlertEvent) -> None:
        with self._lock:
            self.alerts.append(copy.deepcopy(event))

    def log_sync_run(self, summary: dict) -> None:
        with self._lock:
            self.sync_runs.append(dict(summary))


# =============================================================================
# SUPABASE BACKEND
# =============================================================================

class Database(Store):
    """
    Supabase database client wrapper.

    Provides the Store interface on top of PostgREST tables.
    """

    def __init__(self):
        """Initialize Supabase client."""
        config = get_supabase_config()
        if not config.url or not config.key:
            raise ValueError("Supabase URL and key must be set in environment variables")
        self._client: Client = create_client(config.url, config.key)

    @property
    def client(self) -> Client:
        """Get the Supabase client."""
        return self._client

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except Exception as e:
            raise StoreError(f"Supabase {action} failed: {e}") from e

    # =========================================================================
    # PROPERTY OPERATIONS
    # =========================================================================

    def get_property(self, property_id: str) -> Optional[PropertyRecord]:
        result = self._execute(
            self._client.table("properties").select("*").eq("property_id", property_id),
            "get_property",
        )
        return PropertyRecord.from_dict(result.data[0]) if result.data else None

    def get_property_by_feed_id(self, feed_id: str) -> Optional[PropertyRecord]:
        result = self._execute(
            self._client.table("properties").select("*").eq("feed_id", feed_id),
            "get_property_by_feed_id",
        )
        return PropertyRecord.from_dict(result.data[0]) if result.data else None

    def insert_property(self, record: PropertyRecord) -> Optional[PropertyRecord]:
        stored = copy.deepcopy(record)
        stored.property_id = new_property_id()
        stored.revision = 1
        stored.alert_revision = 1

        try:
            self._client.table("properties").insert(stored.to_dict()).execute()
        except APIError as e:
            # Unique violation on feed_id: another worker inserted it first
            if getattr(e, "code", None) == "23505":
                return None
            raise StoreError(f"Supabase insert_property failed: {e}") from e

        logger.info(f"Inserted new property: {stored.property_id} ({stored.feed_id})")
        return stored

    def update_property(self, record: PropertyRecord, expected_revision: int) -> bool:
        data = record.to_dict()
        data.pop("feed_id")
        data.pop("first_seen")
        result = self._execute(
            self._client.table("properties")
            .update(data)
            .eq("property_id", record.property_id)
            .eq("revision", expected_revision),
            "update_property",
        )
        return bool(result.data)

    def list_properties(self, statuses: Optional[Iterable[ListingStatus]] = None) -> list[PropertyRecord]:
        query = self._client.table("properties").select("*")
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        result = self._execute(query, "list_properties")
        return [PropertyRecord.from_dict(row) for row in result.data]

    def log_property_changes(self, property_id: str, changes: list[dict]) -> None:
        if not changes:
            return
        rows = [{"property_id": property_id, **change} for change in changes]
        self._execute(self._client.table("property_changes").insert(rows), "log_property_changes")

    # =========================================================================
    # PROFILE OPERATIONS
    # =========================================================================

    def get_profile(self, client_id: str) -> Optional[PreferenceProfile]:
        result = self._execute(
            self._client.table("profiles").select("*").eq("client_id", client_id),
            "get_profile",
        )
        return PreferenceProfile.from_dict(result.data[0]) if result.data else None

    def list_profiles(self) -> list[PreferenceProfile]:
        result = self._execute(self._client.table("profiles").select("*"), "list_profiles")
        return [PreferenceProfile.from_dict(row) for row in result.data]

    # =========================================================================
    # CURSOR OPERATIONS
    # =========================================================================

    def get_cursor(self, resource: str) -> SyncCursor:
        result = self._execute(
            self._client.table("sync_cursors").select("*").eq("resource", resource),
            "get_cursor",
        )
        return SyncCursor.from_dict(result.data[0]) if result.data else SyncCursor(resource=resource)

    def save_cursor(self, cursor: SyncCursor) -> None:
        self._execute(
            self._client.table("sync_cursors").upsert(cursor.to_dict(), on_conflict="resource"),
            "save_cursor",
        )
        logger.debug(f"Saved cursor for {cursor.resource}: {cursor.watermark}")

    # =========================================================================
    # SAVED SEARCH & ALERT OPERATIONS
    # =========================================================================

    def get_saved_search(self, search_id: str) -> Optional[SavedSearchState]:
        result = self._execute(
            self._client.table("saved_searches").select("*").eq("search_id", search_id),
            "get_saved_search",
        )
        return SavedSearchState.from_dict(result.data[0]) if result.data else None

    def list_saved_searches(self, client_id: Optional[str] = None) -> list[SavedSearchState]:
        query = self._client.table("saved_searches").select("*").eq("is_active", True)
        if client_id:
            query = query.eq("client_id", client_id)
        result = self._execute(query, "list_saved_searches")
        return [SavedSearchState.from_dict(row) for row in result.data]

    def save_saved_search(self, state: SavedSearchState) -> None:
        self._execute(
            self._client.table("saved_searches").upsert(state.to_dict(), on_conflict="search_id"),
            "save_saved_search",
        )

    def record_alert(self, event: AlertEvent) -> None:
        self._execute(self._client.table("alerts").insert(event.to_dict()), "record_alert")
        logger.info(f"Recorded alert {event.alert_id} for search {event.saved_search_id}")

    def log_sync_run(self, summary: dict) -> None:
        self._execute(self._client.table("sync_runs").insert(summary), "log_sync_run")


# Global store instance (lazy loaded)
_db: Optional[Store] = None


def get_db() -> Store:
    """Get the configured store (singleton)."""
    global _db
    if _db is None:
        backend = get_sync_config().store_backend
        if backend == "supabase":
            _db = Database()
        elif backend == "memory":
            _db = MemoryDatabase()
        else:
            raise ValueError(f"Unknown STORE_BACKEND: {backend}")
    return _db
