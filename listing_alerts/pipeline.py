"""
Main Pipeline module for Listing Alerts.

Orchestrates the full data flow:
1. Fetch → Page through each feed resource from its sync cursor
2. Reconcile → Normalize and apply each page to the property store
3. Re-score → Route property and profile events to the match index
4. Alert → Re-run affected saved searches and hand alerts to the dispatcher

Stages talk through the event bus. Feed resources are synced in parallel
on a small worker pool; batches of one resource are serialized by the
reconciler.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Optional

from .alerts import AlertDispatcher, AlertScheduler
from .config import (
    FeedConfig,
    MatchConfig,
    SyncConfig,
    get_feed_config,
    get_match_config,
    get_sync_config,
)
from .db import Store, StoreError, get_db
from .events import EventBus, ProfileEvent, PropertyEvent
from .match_index import MatchIndex
from .models import ListingStatus, utcnow
from .reconciler import BatchFailedError, Reconciler
from .scoring import ScoringEngine
from .sources import BaseFeedClient, FeedError, ResoFeedClient

logger = logging.getLogger(__name__)


WEBHOOK_EVENT_TYPES = ("created", "updated", "deleted", "status_changed")


class WebhookError(ValueError):
    """Webhook payload is malformed or of an unknown event type."""
    pass


# =============================================================================
# PIPELINE CLASS
# =============================================================================

class MatchingPipeline:
    """
    Wires the feed client, reconciler, match index and alert scheduler together.

    Usage:
        pipeline = MatchingPipeline()
        pipeline.index.rebuild()
        summary = pipeline.run_cycle()
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        feed_client: Optional[BaseFeedClient] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        feed_config: Optional[FeedConfig] = None,
        sync_config: Optional[SyncConfig] = None,
        match_config: Optional[MatchConfig] = None,
    ):
        self.store = store if store is not None else get_db()
        self.feed_config = feed_config or get_feed_config()
        self.sync_config = sync_config or get_sync_config()
        self.match_config = match_config or get_match_config()
        self._feed_client = feed_client

        self.bus = EventBus()
        self.reconciler = Reconciler(self.store, self.bus, self.sync_config)
        self.engine = ScoringEngine(self.match_config)
        self.index = MatchIndex(self.store, self.engine, self.match_config)
        self.alerts = AlertScheduler(
            self.store,
            self.index,
            engine=self.engine,
            dispatcher=dispatcher,
            config=self.match_config,
            sync_config=self.sync_config,
        )

        self.executor = ThreadPoolExecutor(
            max_workers=self.sync_config.worker_count,
            thread_name_prefix="listing-alerts",
        )
        # One consumer drains the bus at a time
        self._events_lock = threading.Lock()

    @property
    def feed_client(self) -> BaseFeedClient:
        if self._feed_client is None:
            self._feed_client = ResoFeedClient(self.feed_config)
        return self._feed_client

    # =========================================================================
    # FEED SYNC
    # =========================================================================

    def sync_resource(self, resource: str, full: bool = False, seen: Optional[set] = None) -> dict:
        """
        Sync one feed resource.

        An incremental sync starts from the resource's cursor. A full sync
        pages through everything; the feed IDs it sees are added to seen.

        Returns:
            Summary dict with counts and status
        """
        start_time = utcnow()
        cursor = self.store.get_cursor(resource)
        since = None if full else cursor.watermark
        logger.info(f"Syncing {resource} ({'full' if full else f'since {since}'})")

        summary = {
            "resource": resource,
            "mode": "full" if full else "incremental",
            "batches": 0,
            "created": 0,
            "updated": 0,
            "unchanged": 0,
            "record_errors": 0,
            "alerts": 0,
            "status": "success",
            "errors": [],
        }
        try:
            for page in self.feed_client.iter_pages(resource, since):
                result = self.reconciler.reconcile_batch(resource, page.records)
                batch = result.to_summary()
                summary["batches"] += 1
                summary["created"] += batch["created"]
                summary["updated"] += batch["updated"]
                summary["unchanged"] += batch["unchanged"]
                summary["record_errors"] += batch["errors"]

                if seen is not None:
                    seen.update(result.outcomes)
                    seen.update(e.feed_id for e in result.errors if e.feed_id)
                summary["alerts"] += self.process_events()["alerts"]

        except (FeedError, BatchFailedError, StoreError) as e:
            logger.error(f"Sync of {resource} halted: {e}")
            summary["status"] = "error"
            summary["errors"].append(str(e))

        duration = (utcnow() - start_time).total_seconds()
        summary["duration_seconds"] = duration
        logger.info(f"Sync of {resource} complete in {duration:.1f}s: {summary}")
        return summary

    def run_cycle(self, full: bool = False) -> dict:
        """
        Sync every configured resource on the worker pool.

        After a full sync in which every resource succeeded, listings none
        of them returned count as missed; repeated misses withdraw them.

        Returns:
            Summary dict keyed by resource
        """
        start_time = utcnow()
        logger.info(f"Starting {'full' if full else 'incremental'} sync cycle at {start_time}")

        seen = {resource: set() for resource in self.feed_config.resources}
        futures = {
            resource: self.executor.submit(self.sync_resource, resource, full, seen[resource] if full else None)
            for resource in self.feed_config.resources
        }
        summary = {
            "started_at": start_time.isoformat(),
            "resources": {resource: future.result() for resource, future in futures.items()},
            "withdrawn": 0,
        }

        if full:
            if all(r["status"] == "success" for r in summary["resources"].values()):
                try:
                    withdrawn = self.reconciler.mark_missing(set().union(*seen.values()))
                    summary["withdrawn"] = len(withdrawn)
                    self.process_events()
                except StoreError as e:
                    logger.error(f"Presence check failed: {e}")
            else:
                logger.warning("Full sync incomplete, skipping presence check")

        end_time = utcnow()
        summary["duration_seconds"] = (end_time - start_time).total_seconds()
        summary["completed_at"] = end_time.isoformat()
        return summary

    # =========================================================================
    # EVENT ROUTING
    # =========================================================================

    def process_events(self) -> dict:
        """
        Drain the bus: re-score in the match index, then run affected saved searches.

        Events are taken one at a time. An event whose routing fails goes
        back on the bus and is routed again on the next drain.

        Returns:
            Counts of events processed and alerts emitted

        Raises:
            StoreError: Routing failed; undelivered events stay queued
        """
        processed = 0
        alerts = 0

        with self._events_lock:
            for _ in range(len(self.bus)):
                event = self.bus.get()
                if event is None:
                    break
                try:
                    alerts += self._route(event)
                except StoreError:
                    self.bus.publish(event)
                    raise
                processed += 1

        if processed:
            logger.debug(f"Processed {processed} events, {alerts} alerts emitted")
        return {"events": processed, "alerts": alerts}

    def _route(self, event) -> int:
        """Deliver one event to the match index and the alert scheduler. Returns alerts emitted."""
        if isinstance(event, PropertyEvent):
            self.index.on_property_changed(event.property_id)
            return len(self.alerts.on_property_event(event))
        if isinstance(event, ProfileEvent):
            self.index.on_profile_changed(event.client_id)
            return len(self.alerts.on_profile_changed(event.client_id))
        return 0

    def notify_profile_changed(self, client_id: str, revision: Optional[int] = None) -> dict:
        """Entry point for the preference store's profile-updated notifications."""
        if revision is None:
            profile = self.store.get_profile(client_id)
            revision = profile.revision if profile else 0
        self.bus.publish(ProfileEvent(client_id=client_id, revision=revision))
        return self.process_events()

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def ingest_webhook(self, payload: dict) -> dict:
        """
        Apply one pushed record through the same reconciliation path as polling.

        Payload: {"event_type": ..., "record": {...}, "resource": optional}.
        A "deleted" event withdraws the listing.

        Raises:
            WebhookError: Unknown event type or missing record
            BatchFailedError: The record could not be normalized
        """
        event_type = payload.get("event_type")
        record = payload.get("record")
        if event_type not in WEBHOOK_EVENT_TYPES:
            raise WebhookError(f"Unknown webhook event type: {event_type!r}")
        if not isinstance(record, dict):
            raise WebhookError("Webhook payload has no record")

        resource = payload.get("resource") or self.feed_config.resources[0]

        if event_type == "deleted":
            outcome = self._withdraw(record)
        else:
            result = self.reconciler.reconcile_batch(resource, [record], advance_cursor=False)
            outcomes = list(result.outcomes.values())
            outcome = outcomes[0].value if outcomes else "rejected"

        routed = self.process_events()
        logger.info(f"Webhook {event_type} applied: {outcome}")
        return {"event_type": event_type, "outcome": outcome, **routed}

    def _withdraw(self, raw: dict) -> str:
        normalizer = self.reconciler.normalizer
        feed_id = normalizer.get(raw, "feed_id")
        if not feed_id:
            raise WebhookError("Deleted record has no listing key")

        existing = self.store.get_property_by_feed_id(str(feed_id))
        if existing is None:
            logger.warning(f"Delete for unknown listing {feed_id}, ignoring")
            return "ignored"

        modified = normalizer.parse_datetime(normalizer.get(raw, "last_modified")) or utcnow()
        withdrawn = replace(existing, status=ListingStatus.WITHDRAWN, last_modified=modified)
        outcome, _ = self.reconciler.apply_record(withdrawn)
        return outcome.value

    # =========================================================================
    # SAVED SEARCHES
    # =========================================================================

    def run_saved_searches(self, now: Optional[datetime] = None) -> dict:
        """
        Run every due saved search on the worker pool.

        Returns:
            Summary dict with counts and status
        """
        due = self.alerts.due_searches(now)
        futures = [
            self.executor.submit(self.alerts.run_saved_search, search_id, "scheduled", now)
            for search_id in due
        ]

        summary = {"searches": len(due), "alerts": 0, "errors": []}
        for future in futures:
            try:
                if future.result():
                    summary["alerts"] += 1
            except StoreError as e:
                logger.error(f"Saved search run failed: {e}")
                summary["errors"].append(str(e))

        logger.info(f"Ran {summary['searches']} saved searches: {summary['alerts']} alerts")
        return summary

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_pipeline: Optional[MatchingPipeline] = None


def get_pipeline() -> MatchingPipeline:
    """Get the process-wide pipeline, building and indexing it on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = MatchingPipeline()
        _pipeline.index.rebuild()
    return _pipeline


def run_incremental_sync() -> dict:
    """Sync every resource from its cursor."""
    return get_pipeline().run_cycle(full=False)


def run_full_sync() -> dict:
    """Sync every resource from scratch and withdraw listings that disappeared."""
    return get_pipeline().run_cycle(full=True)


def run_saved_searches() -> dict:
    """Run every due saved search."""
    return get_pipeline().run_saved_searches()
