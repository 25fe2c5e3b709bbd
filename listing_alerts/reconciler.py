"""
Reconciler module for Listing Alerts.

Diffs a batch of raw feed records against the property store and
decides, per record, create / update / no-op. Updates are classified
as significant (price, status, bedrooms, bathrooms) or minor.

Safety rules:
- A record is applied only if its modification timestamp is newer than
  the stored one, so redelivered batches are no-ops.
- Writes are compare-and-swap on the stored revision; a lost race is
  re-read and re-decided, so the newest timestamp always wins.
- The sync cursor moves only after every record in the batch is applied.
- Batches for one resource are serialized.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .config import SyncConfig, get_sync_config
from .db import Store, StoreError
from .events import EventBus, PropertyEvent, PropertyEventKind
from .models import (
    ListingStatus,
    PropertyRecord,
    RecordError,
    SyncCursor,
    utcnow,
)
from .normalization import ListingNormalizer

logger = logging.getLogger(__name__)


# Fields whose change re-notifies clients
SIGNIFICANT_FIELDS = ("price", "status", "bedrooms", "bathrooms")

# Fields compared when diffing a newer feed record against the stored one
DIFF_FIELDS = (
    "status",
    "price",
    "bedrooms",
    "bathrooms",
    "square_feet",
    "lot_size",
    "year_built",
    "property_type",
    "features",
    "description",
    "list_date",
    "address",
    "location",
    "school_rating",
)

# Statuses a listing can be withdrawn from when it disappears from the feed
PRESENCE_TRACKED = (ListingStatus.ACTIVE, ListingStatus.PENDING)

MAX_CAS_ATTEMPTS = 10


class BatchFailedError(Exception):
    """Too many bad records; the batch is rejected and the cursor stays put."""

    def __init__(self, message: str, result: "BatchResult"):
        super().__init__(message)
        self.result = result


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class BatchResult:
    """Outcome of reconciling one batch."""
    resource: str
    cursor: SyncCursor
    outcomes: dict[str, ReconcileOutcome] = field(default_factory=dict)
    errors: list[RecordError] = field(default_factory=list)
    events: list[PropertyEvent] = field(default_factory=list)
    cursor_advanced: bool = False

    def count(self, outcome: ReconcileOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def significant(self) -> list[PropertyEvent]:
        return [e for e in self.events if e.kind == PropertyEventKind.SIGNIFICANT_CHANGE]

    def to_summary(self) -> dict:
        return {
            "resource": self.resource,
            "created": self.count(ReconcileOutcome.CREATED),
            "updated": self.count(ReconcileOutcome.UPDATED),
            "unchanged": self.count(ReconcileOutcome.UNCHANGED),
            "errors": len(self.errors),
            "significant_changes": len(self.significant),
            "cursor_advanced": self.cursor_advanced,
            "watermark": self.cursor.watermark.isoformat() if self.cursor.watermark else None,
            "completed_at": utcnow().isoformat(),
        }


def diff_records(old: PropertyRecord, new: PropertyRecord) -> list[str]:
    """Names of listing fields that differ between two versions."""
    return [name for name in DIFF_FIELDS if getattr(old, name) != getattr(new, name)]


def is_significant(changed_fields: list[str]) -> bool:
    return any(name in SIGNIFICANT_FIELDS for name in changed_fields)


class Reconciler:
    """
    Applies feed batches to the property store.

    Usage:
        reconciler = Reconciler(store, bus)
        result = reconciler.reconcile_batch("Property", raw_records)
    """

    def __init__(
        self,
        store: Store,
        bus: Optional[EventBus] = None,
        config: Optional[SyncConfig] = None,
        normalizer: Optional[ListingNormalizer] = None,
    ):
        self.store = store
        self.bus = bus if bus is not None else EventBus()
        self.config = config or get_sync_config()
        self.normalizer = normalizer if normalizer is not None else ListingNormalizer()

        self._locks_guard = threading.Lock()
        self._resource_locks: dict[str, threading.Lock] = {}
        self._presence_lock = threading.Lock()

    def resource_lock(self, resource: str) -> threading.Lock:
        """Lock serializing batches of one feed resource."""
        with self._locks_guard:
            if resource not in self._resource_locks:
                self._resource_locks[resource] = threading.Lock()
            return self._resource_locks[resource]

    # =========================================================================
    # BATCHES
    # =========================================================================

    def reconcile_batch(
        self,
        resource: str,
        raw_records: list[dict],
        watermark: Optional[datetime] = None,
        advance_cursor: bool = True,
    ) -> BatchResult:
        """
        Reconcile one batch of raw feed records.

        Args:
            resource: Feed resource the batch came from
            raw_records: Raw records, in any order
            watermark: Feed-provided watermark for the batch; defaults to the
                newest modification timestamp in the batch
            advance_cursor: False for one-off batches (webhooks) that must not
                move the polling cursor

        Returns:
            BatchResult with per-record outcomes, row errors and emitted events

        Raises:
            BatchFailedError: Error rate above max_error_rate; nothing applied
            StoreError: Persistence failed; cursor not advanced
        """
        with self.resource_lock(resource):
            cursor = self.store.get_cursor(resource)
            records, errors = self.normalizer.normalize_batch(raw_records)
            result = BatchResult(resource=resource, cursor=cursor, errors=errors)

            if raw_records and len(errors) / len(raw_records) > self.config.max_error_rate:
                message = (
                    f"{resource} batch rejected: {len(errors)}/{len(raw_records)} records "
                    f"malformed (max error rate {self.config.max_error_rate:.0%})"
                )
                logger.error(message)
                self.store.log_sync_run({**result.to_summary(), "error_message": message})
                raise BatchFailedError(message, result)

            for record in records:
                outcome, event = self.apply_record(record)
                result.outcomes[record.feed_id] = outcome
                if event:
                    result.events.append(event)

            if advance_cursor:
                batch_watermark = watermark
                if batch_watermark is None and records:
                    batch_watermark = max(r.last_modified for r in records)
                if batch_watermark and (cursor.watermark is None or batch_watermark > cursor.watermark):
                    cursor.watermark = batch_watermark
                cursor.last_run_at = utcnow()
                self.store.save_cursor(cursor)
                result.cursor_advanced = True

            summary = result.to_summary()
            self.store.log_sync_run(summary)
            logger.info(
                f"Reconciled {resource} batch: {summary['created']} created, "
                f"{summary['updated']} updated ({summary['significant_changes']} significant), "
                f"{summary['unchanged']} unchanged, {summary['errors']} errors"
            )
            return result

    # =========================================================================
    # SINGLE RECORDS
    # =========================================================================

    def apply_record(self, record: PropertyRecord) -> tuple[ReconcileOutcome, Optional[PropertyEvent]]:
        """
        Create, update or skip one normalized record.

        Returns:
            (outcome, event published for it, if any)
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            existing = self.store.get_property_by_feed_id(record.feed_id)

            if existing is None:
                stored = self.store.insert_property(record)
                if stored is None:
                    continue  # Inserted concurrently; decide again as an update
                event = self._publish(PropertyEventKind.CREATED, stored, [])
                return ReconcileOutcome.CREATED, event

            if record.last_modified <= existing.last_modified:
                logger.debug(f"{record.feed_id}: not newer than stored copy, skipping")
                return ReconcileOutcome.UNCHANGED, None

            changed = diff_records(existing, record)
            significant = is_significant(changed)
            updated = replace(
                record,
                property_id=existing.property_id,
                first_seen=existing.first_seen,
                revision=existing.revision + 1,
                alert_revision=existing.alert_revision + (1 if significant else 0),
                missed_syncs=0,
            )

            if not self.store.update_property(updated, existing.revision):
                continue  # Lost the compare-and-swap; re-read

            if not changed:
                return ReconcileOutcome.UPDATED, None

            self.store.log_property_changes(updated.property_id, self._change_rows(existing, updated, changed))
            kind = PropertyEventKind.SIGNIFICANT_CHANGE if significant else PropertyEventKind.UPDATED
            event = self._publish(kind, updated, changed)
            return ReconcileOutcome.UPDATED, event

        raise StoreError(f"Could not apply {record.feed_id} after {MAX_CAS_ATTEMPTS} attempts")

    # =========================================================================
    # PRESENCE TRACKING
    # =========================================================================

    def mark_missing(self, seen_feed_ids: set[str]) -> list[PropertyEvent]:
        """
        Record which listings a completed full sync of every resource did not see.

        A listing absent from missing_sync_threshold consecutive full syncs
        is withdrawn; it is never deleted.

        Returns:
            Events for listings withdrawn by this call
        """
        events = []
        threshold = self.config.missing_sync_threshold

        with self._presence_lock:
            for prop in self.store.list_properties(PRESENCE_TRACKED):
                if prop.feed_id in seen_feed_ids:
                    if prop.missed_syncs:
                        self.store.update_property(replace(prop, missed_syncs=0), prop.revision)
                    continue

                missed = prop.missed_syncs + 1
                if missed < threshold:
                    self.store.update_property(replace(prop, missed_syncs=missed), prop.revision)
                    continue

                withdrawn = replace(
                    prop,
                    status=ListingStatus.WITHDRAWN,
                    missed_syncs=missed,
                    revision=prop.revision + 1,
                    alert_revision=prop.alert_revision + 1,
                )
                if not self.store.update_property(withdrawn, prop.revision):
                    logger.debug(f"{prop.feed_id} changed during presence check; left for next sync")
                    continue

                logger.info(f"Withdrew {prop.property_id} ({prop.feed_id}): absent from {missed} full syncs")
                self.store.log_property_changes(
                    prop.property_id, self._change_rows(prop, withdrawn, ["status"])
                )
                events.append(self._publish(PropertyEventKind.SIGNIFICANT_CHANGE, withdrawn, ["status"]))

        return events

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _publish(self, kind: PropertyEventKind, record: PropertyRecord, changed: list[str]) -> PropertyEvent:
        event = PropertyEvent(
            kind=kind,
            property_id=record.property_id,
            feed_id=record.feed_id,
            revision=record.revision,
            changed_fields=changed,
        )
        self.bus.publish(event)
        return event

    def _change_rows(self, old: PropertyRecord, new: PropertyRecord, changed: list[str]) -> list[dict]:
        rows = []
        detected_at = utcnow().isoformat()
        for name in changed:
            old_value, new_value = getattr(old, name), getattr(new, name)
            change_percent = None
            if name == "price" and old_value:
                change_percent = round((new_value - old_value) / old_value * 100, 2)
            rows.append({
                "change_type": name,
                "old_value": self._display(old_value),
                "new_value": self._display(new_value),
                "change_percent": change_percent,
                "detected_at": detected_at,
            })
        return rows

    @staticmethod
    def _display(value) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, frozenset):
            return ",".join(sorted(value))
        if isinstance(value, Enum):
            return value.value
        if hasattr(value, "to_dict"):
            return str(value.to_dict())
        return str(value)
