"""
Match Index module for Listing Alerts.

Holds the latest MatchScore per (property, client) pair and keeps it
current as properties and profiles change:
- Property created/changed: re-score that property against every client
  whose hard constraints it can plausibly meet.
- Profile changed: re-score that client against every active property.

Each score carries the revisions of the property and profile it was
computed from. Reads check those revisions against the store and
re-score anything stale before serving it.
"""

import logging
import threading
from datetime import date
from typing import Optional

from .config import MatchConfig, get_match_config
from .db import Store
from .models import (
    ListingStatus,
    MatchScore,
    PreferenceProfile,
    PropertyRecord,
    utcnow,
)
from .scoring import ScoringEngine, ScoringError

logger = logging.getLogger(__name__)


def ranking_key(score: MatchScore, prop: PropertyRecord) -> tuple:
    """Composite descending, then most recently listed, then property ID."""
    listed = prop.list_date or date.min
    return (-score.composite, -listed.toordinal(), score.property_id)


class MatchIndex:
    """
    In-memory index of match scores, shared by all workers.

    Usage:
        index = MatchIndex(store)
        index.rebuild()
        best = index.top_matches("client_1", limit=10)
    """

    def __init__(
        self,
        store: Store,
        engine: Optional[ScoringEngine] = None,
        config: Optional[MatchConfig] = None,
    ):
        self.store = store
        self.config = config or get_match_config()
        self.engine = engine if engine is not None else ScoringEngine(self.config)

        self._lock = threading.RLock()
        self._scores: dict[str, dict[str, MatchScore]] = {}
        self._profile_revisions: dict[str, int] = {}

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def rebuild(self) -> int:
        """Score every profile against every active property. Returns pairs scored."""
        with self._lock:
            self._scores.clear()
            self._profile_revisions.clear()

        total = 0
        for profile in self.store.list_profiles():
            total += self.on_profile_changed(profile.client_id, profile=profile)
        logger.info(f"Match index rebuilt: {total} scores")
        return total

    def on_property_changed(self, property_id: str) -> int:
        """
        Re-score one property against all plausible clients.

        Returns:
            Number of (property, client) pairs scored
        """
        prop = self.store.get_property(property_id)

        with self._lock:
            for client_scores in self._scores.values():
                client_scores.pop(property_id, None)

        if prop is None or prop.status != ListingStatus.ACTIVE:
            return 0

        scored = 0
        for profile in self.store.list_profiles():
            if self._score_pair(profile, prop):
                scored += 1

        logger.debug(f"Re-scored {property_id} against {scored} clients")
        return scored

    def on_profile_changed(self, client_id: str, profile: Optional[PreferenceProfile] = None) -> int:
        """
        Re-score one client against all active properties.

        Returns:
            Number of (property, client) pairs scored
        """
        profile = profile or self.store.get_profile(client_id)

        with self._lock:
            self._scores.pop(client_id, None)
            if profile is None:
                self._profile_revisions.pop(client_id, None)
                return 0
            self._profile_revisions[client_id] = profile.revision

        try:
            self.engine.validate(profile)
        except ScoringError as e:
            logger.warning(f"Skipping client {client_id}: {e}")
            return 0

        scored = 0
        for prop in self.store.list_properties([ListingStatus.ACTIVE]):
            if self._score_pair(profile, prop):
                scored += 1

        logger.debug(f"Re-scored client {client_id} against {scored} properties")
        return scored

    def _score_pair(self, profile: PreferenceProfile, prop: PropertyRecord) -> bool:
        """Score one pair if it passes the coarse pre-filter. True if a score was stored."""
        if not self.engine.could_match(profile, prop, self.config.min_score):
            return False

        try:
            score = self.engine.score(profile, prop, computed_at=utcnow())
        except ScoringError as e:
            logger.warning(f"Skipping client {profile.client_id}: {e}")
            return False

        with self._lock:
            known = self._profile_revisions.get(profile.client_id)
            if known is not None and known > profile.revision:
                return False
            self._profile_revisions[profile.client_id] = profile.revision
            self._scores.setdefault(profile.client_id, {})[prop.property_id] = score
        return True

    # =========================================================================
    # READS
    # =========================================================================

    def _refresh_client(self, client_id: str) -> tuple[list[MatchScore], dict[str, PropertyRecord]]:
        """
        Verify a client's scores against current inputs, re-scoring stale ones.

        Returns:
            (fresh scores, property by ID for each of them)
        """
        profile = self.store.get_profile(client_id)
        if profile is None:
            self.on_profile_changed(client_id, profile=None)
            return [], {}

        with self._lock:
            profile_stale = self._profile_revisions.get(client_id) != profile.revision
        if profile_stale:
            self.on_profile_changed(client_id, profile=profile)

        with self._lock:
            cached = list(self._scores.get(client_id, {}).values())

        fresh = []
        props = {}
        for score in cached:
            prop = self.store.get_property(score.property_id)
            if prop is None or prop.status != ListingStatus.ACTIVE:
                with self._lock:
                    self._scores.get(client_id, {}).pop(score.property_id, None)
                continue

            if prop.revision != score.property_revision:
                with self._lock:
                    self._scores.get(client_id, {}).pop(score.property_id, None)
                if not self._score_pair(profile, prop):
                    continue
                with self._lock:
                    score = self._scores.get(client_id, {}).get(prop.property_id)
                if score is None:
                    continue

            fresh.append(score)
            props[prop.property_id] = prop

        return fresh, props

    def top_matches(
        self,
        client_id: str,
        limit: Optional[int] = 10,
        min_score: Optional[float] = None,
    ) -> list[MatchScore]:
        """
        Best matches for a client.

        Sorted by composite score descending, ties broken by most recently
        listed first. Scores below min_score (default: configured threshold)
        are excluded.
        """
        threshold = self.config.min_score if min_score is None else min_score
        scores, props = self._refresh_client(client_id)

        ranked = sorted(
            (s for s in scores if s.composite >= threshold),
            key=lambda s: ranking_key(s, props[s.property_id]),
        )
        return ranked if limit is None else ranked[:limit]

    def score_breakdown(self, client_id: str, property_id: str) -> Optional[MatchScore]:
        """
        Sub-scores for one (property, client) pair.

        Served from the index when fresh, otherwise computed from the
        current inputs.

        Raises:
            ScoringError: Profile cannot be scored
        """
        profile = self.store.get_profile(client_id)
        prop = self.store.get_property(property_id)
        if profile is None or prop is None:
            return None

        with self._lock:
            cached = self._scores.get(client_id, {}).get(property_id)
        if (cached is not None
                and cached.property_revision == prop.revision
                and cached.profile_revision == profile.revision):
            return cached

        return self.engine.score(profile, prop, computed_at=utcnow())

    def __len__(self) -> int:
        with self._lock:
            return sum(len(scores) for scores in self._scores.values())
