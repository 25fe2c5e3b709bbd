"""
Saved-Search Alert module for Listing Alerts.

Re-runs clients' saved searches, on a schedule or when a property is
created or significantly changed, and emits one alert event per run for
properties the search has not yet alerted on at their current alert
revision. Delivery (email, push) belongs to the notification dispatcher.
"""

import uuid
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from .config import MatchConfig, SyncConfig, get_match_config, get_sync_config
from .db import Store
from .events import PropertyEvent
from .match_index import MatchIndex
from .models import (
    AlertEvent,
    ListingStatus,
    PreferenceProfile,
    SavedSearchState,
    SearchRunState,
    utcnow,
)
from .scoring import ScoringEngine, ScoringError

logger = logging.getLogger(__name__)


# =============================================================================
# DISPATCHERS
# =============================================================================

class AlertDispatcher(ABC):
    """Hand-off point to the notification layer."""

    @abstractmethod
    def dispatch(self, event: AlertEvent) -> None:
        pass


class LoggingDispatcher(AlertDispatcher):
    """Writes alert events to the log. Used when no delivery channel is wired up."""

    def dispatch(self, event: AlertEvent) -> None:
        logger.info(
            f"Alert {event.alert_id} for client {event.client_id} "
            f"(search {event.saved_search_id}): {len(event.new_property_ids)} new properties"
        )


class QueueDispatcher(AlertDispatcher):
    """Collects alert events in memory for a downstream consumer to pick up."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[AlertEvent] = []

    def dispatch(self, event: AlertEvent) -> None:
        with self._lock:
            self.events.append(event)

    def drain(self) -> list[AlertEvent]:
        with self._lock:
            events, self.events = self.events, []
        return events


# =============================================================================
# ALERT SCHEDULER
# =============================================================================

class AlertScheduler:
    """
    Runs saved searches and emits alerts for genuinely new matches.

    Runs of the same saved search are serialized; different searches may
    run concurrently on the worker pool.

    Usage:
        scheduler = AlertScheduler(store, index)
        scheduler.run_due()
    """

    def __init__(
        self,
        store: Store,
        index: MatchIndex,
        engine: Optional[ScoringEngine] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        config: Optional[MatchConfig] = None,
        sync_config: Optional[SyncConfig] = None,
    ):
        self.store = store
        self.index = index
        self.config = config or get_match_config()
        self.sync_config = sync_config or get_sync_config()
        self.engine = engine if engine is not None else index.engine
        self.dispatcher = dispatcher if dispatcher is not None else LoggingDispatcher()

        self._locks_guard = threading.Lock()
        self._search_locks: dict[str, threading.Lock] = {}

    def search_lock(self, search_id: str) -> threading.Lock:
        """Lock serializing runs of one saved search."""
        with self._locks_guard:
            if search_id not in self._search_locks:
                self._search_locks[search_id] = threading.Lock()
            return self._search_locks[search_id]

    def _threshold(self, state: SavedSearchState) -> float:
        return self.config.min_score if state.min_score is None else state.min_score

    # =========================================================================
    # RUNS
    # =========================================================================

    def run_saved_search(
        self,
        search_id: str,
        trigger: str = "scheduled",
        now: Optional[datetime] = None,
    ) -> Optional[AlertEvent]:
        """
        Run one saved search.

        Args:
            search_id: Saved search to run
            trigger: What started the run ("scheduled", "event", ...)
            now: Run time (defaults to the current time)

        Returns:
            The alert event emitted, or None if nothing new matched
        """
        with self.search_lock(search_id):
            state = self.store.get_saved_search(search_id)
            if state is None or not state.is_active:
                logger.debug(f"Saved search {search_id} not found or inactive")
                return None

            state.run_state = SearchRunState.RUNNING
            event = None
            try:
                candidates = self.evaluate(state)
                new_ids = state.new_matches(candidates)
                self._prune_alerted(state, candidates)

                if new_ids:
                    event = AlertEvent(
                        alert_id=f"alert_{uuid.uuid4().hex[:12]}",
                        saved_search_id=state.search_id,
                        client_id=state.client_id,
                        new_property_ids=new_ids,
                        triggered_at=now or utcnow(),
                        trigger=trigger,
                    )
                    self.store.record_alert(event)
                    for property_id in new_ids:
                        state.alerted[property_id] = candidates[property_id]

                state.last_run_at = now or utcnow()
            finally:
                state.run_state = SearchRunState.IDLE
                self.store.save_saved_search(state)

        if event:
            logger.info(
                f"Saved search {search_id}: {len(event.new_property_ids)} new matches "
                f"(of {len(candidates)}), alert {event.alert_id}"
            )
            try:
                self.dispatcher.dispatch(event)
            except Exception as e:
                logger.error(f"Dispatcher failed for alert {event.alert_id}: {e}")
        else:
            logger.debug(f"Saved search {search_id}: no new matches")

        return event

    def evaluate(self, state: SavedSearchState) -> dict[str, int]:
        """
        Current matches of a saved search.

        Searches that follow the client's profile read the match index,
        unless their threshold is below the index's own floor; those and
        searches with their own criteria are scored directly.

        Returns:
            Matching property ID -> its current alert revision
        """
        threshold = self._threshold(state)

        if state.follows_profile:
            if threshold >= self.config.min_score:
                candidates = {}
                for match in self.index.top_matches(state.client_id, limit=None, min_score=threshold):
                    prop = self.store.get_property(match.property_id)
                    if prop is not None and prop.is_active:
                        candidates[prop.property_id] = prop.alert_revision
                return candidates

            # The index drops pairs below its floor
            criteria = self.store.get_profile(state.client_id)
            if criteria is None:
                logger.debug(f"Saved search {state.search_id}: client {state.client_id} has no profile")
                return {}
        else:
            criteria = state.criteria

        return self._score_directly(state, criteria, threshold)

    def _score_directly(self, state: SavedSearchState, criteria, threshold: float) -> dict[str, int]:
        try:
            self.engine.validate(criteria)
        except ScoringError as e:
            logger.warning(f"Skipping saved search {state.search_id}: {e}")
            return {}

        candidates = {}
        for prop in self.store.list_properties([ListingStatus.ACTIVE]):
            if not self.engine.could_match(criteria, prop, threshold):
                continue
            if self.engine.score(criteria, prop).composite >= threshold:
                candidates[prop.property_id] = prop.alert_revision
        return candidates

    def _prune_alerted(self, state: SavedSearchState, candidates: dict[str, int]) -> int:
        """Forget alerted properties that were deleted or reached a terminal status."""
        stale = []
        for property_id in state.alerted:
            if property_id in candidates:
                continue
            prop = self.store.get_property(property_id)
            if prop is None or prop.status.is_terminal:
                stale.append(property_id)

        for property_id in stale:
            del state.alerted[property_id]
        if stale:
            logger.debug(f"Saved search {state.search_id}: pruned {len(stale)} closed listings")
        return len(stale)

    def run_all(self, trigger: str = "scheduled") -> list[AlertEvent]:
        """Run every active saved search once."""
        events = []
        for state in self.store.list_saved_searches():
            event = self.run_saved_search(state.search_id, trigger=trigger)
            if event:
                events.append(event)
        logger.info(f"Ran all saved searches: {len(events)} alerts emitted")
        return events

    def due_searches(self, now: Optional[datetime] = None) -> list[str]:
        """IDs of saved searches whose last run is older than the search interval."""
        now = now or utcnow()
        interval = timedelta(minutes=self.sync_config.search_interval_minutes)
        return [
            state.search_id
            for state in self.store.list_saved_searches()
            if state.last_run_at is None or now - state.last_run_at >= interval
        ]

    def run_due(self, now: Optional[datetime] = None) -> list[AlertEvent]:
        """Run every saved search that is due."""
        now = now or utcnow()
        events = []
        for search_id in self.due_searches(now):
            event = self.run_saved_search(search_id, trigger="scheduled", now=now)
            if event:
                events.append(event)
        return events

    # =========================================================================
    # EVENT TRIGGERS
    # =========================================================================

    def on_property_event(self, event: PropertyEvent) -> list[AlertEvent]:
        """
        Run the saved searches a created or significantly changed property may match.
        """
        if not event.kind.triggers_alerts:
            return []

        prop = self.store.get_property(event.property_id)
        if prop is None or not prop.is_active:
            return []

        alerts = []
        for state in self.store.list_saved_searches():
            criteria = self._criteria(state)
            if criteria is None:
                continue
            if not self.engine.could_match(criteria, prop, self._threshold(state)):
                continue
            alert = self.run_saved_search(state.search_id, trigger="event")
            if alert:
                alerts.append(alert)
        return alerts

    def on_profile_changed(self, client_id: str) -> list[AlertEvent]:
        """Run a client's saved searches that follow their profile."""
        alerts = []
        for state in self.store.list_saved_searches(client_id=client_id):
            if not state.follows_profile:
                continue
            alert = self.run_saved_search(state.search_id, trigger="profile_changed")
            if alert:
                alerts.append(alert)
        return alerts

    def _criteria(self, state: SavedSearchState) -> Optional[PreferenceProfile]:
        if state.follows_profile:
            return self.store.get_profile(state.client_id)
        return state.criteria
