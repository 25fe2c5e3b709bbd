"""Tests for saved-search alerting."""

import threading
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import ts
from listing_alerts.alerts import AlertScheduler, QueueDispatcher
from listing_alerts.config import MatchConfig
from listing_alerts.events import PropertyEvent, PropertyEventKind
from listing_alerts.match_index import MatchIndex
from listing_alerts.models import (
    ListingStatus,
    PreferenceProfile,
    PropertyRecord,
    SavedSearchState,
    SearchRunState,
)
from listing_alerts.scoring import ScoringEngine


def add_property(store, feed_id: str, **overrides) -> PropertyRecord:
    values = dict(
        feed_id=feed_id,
        status=ListingStatus.ACTIVE,
        price=480000,
        last_modified=ts(),
        bedrooms=3,
        bathrooms=2,
        features=frozenset(["pool"]),
    )
    values.update(overrides)
    return store.insert_property(PropertyRecord(**values))


def significant_change(store, prop: PropertyRecord, **changes) -> PropertyRecord:
    updated = replace(
        prop,
        revision=prop.revision + 1,
        alert_revision=prop.alert_revision + 1,
        **changes,
    )
    assert store.update_property(updated, prop.revision)
    return updated


@pytest.fixture
def dispatcher() -> QueueDispatcher:
    return QueueDispatcher()


@pytest.fixture
def scheduler(store, match_config, sync_config, dispatcher) -> AlertScheduler:
    engine = ScoringEngine(match_config)
    index = MatchIndex(store, engine, match_config)
    return AlertScheduler(
        store,
        index,
        engine=engine,
        dispatcher=dispatcher,
        config=match_config,
        sync_config=sync_config,
    )


@pytest.fixture
def search(store, pool_profile) -> SavedSearchState:
    state = SavedSearchState(search_id="s1", client_id="client_pool", criteria=pool_profile)
    store.save_saved_search(state)
    return state


class TestRuns:
    """Test a single saved-search run."""

    def test_new_matches_are_batched(self, store, scheduler, dispatcher, search) -> None:
        a = add_property(store, "A")
        b = add_property(store, "B", price=450000)
        add_property(store, "C", features=frozenset())  # Missing the must-have

        event = scheduler.run_saved_search("s1", now=ts(30))

        assert sorted(event.new_property_ids) == sorted([a.property_id, b.property_id])
        assert event.saved_search_id == "s1"
        assert event.client_id == "client_pool"
        assert event.triggered_at == ts(30)
        assert event.alert_id.startswith("alert_")
        assert dispatcher.drain() == [event]
        assert store.alerts == [event]

        state = store.get_saved_search("s1")
        assert state.alerted == {a.property_id: 1, b.property_id: 1}
        assert state.run_state == SearchRunState.IDLE

    def test_unchanged_results_emit_nothing(self, store, scheduler, dispatcher, search) -> None:
        add_property(store, "A")
        assert scheduler.run_saved_search("s1") is not None

        assert scheduler.run_saved_search("s1") is None
        assert len(store.alerts) == 1

    def test_only_new_properties_are_alerted(self, store, scheduler, search) -> None:
        add_property(store, "A")
        scheduler.run_saved_search("s1")
        b = add_property(store, "B")

        event = scheduler.run_saved_search("s1")

        assert event.new_property_ids == [b.property_id]

    def test_significant_change_alerts_again(self, store, scheduler, search) -> None:
        a = add_property(store, "A")
        scheduler.run_saved_search("s1")

        significant_change(store, a, price=430000)
        event = scheduler.run_saved_search("s1")

        assert event.new_property_ids == [a.property_id]
        assert store.get_saved_search("s1").alerted[a.property_id] == 2

    def test_minor_change_does_not_alert_again(self, store, scheduler, search) -> None:
        a = add_property(store, "A")
        scheduler.run_saved_search("s1")

        updated = replace(a, revision=a.revision + 1, description="New photos")
        assert store.update_property(updated, a.revision)

        assert scheduler.run_saved_search("s1") is None

    def test_last_run_updated_without_matches(self, store, scheduler, search) -> None:
        assert scheduler.run_saved_search("s1", now=ts(45)) is None
        assert store.get_saved_search("s1").last_run_at == ts(45)

    def test_inactive_properties_never_match(self, store, scheduler, search) -> None:
        add_property(store, "A", status=ListingStatus.PENDING)
        assert scheduler.run_saved_search("s1") is None

    def test_dispatcher_failure_does_not_undo_alert(self, store, scheduler, search) -> None:
        scheduler.dispatcher = MagicMock()
        scheduler.dispatcher.dispatch.side_effect = RuntimeError("smtp down")
        a = add_property(store, "A")

        event = scheduler.run_saved_search("s1")

        assert event is not None
        assert store.alerts == [event]
        assert a.property_id in store.get_saved_search("s1").alerted

    def test_invalid_criteria_skipped(self, store, scheduler) -> None:
        broken = PreferenceProfile(client_id="c", price_min=10, price_max=5)
        store.save_saved_search(SavedSearchState(search_id="bad", client_id="c", criteria=broken))
        add_property(store, "A")

        assert scheduler.run_saved_search("bad") is None
        assert store.get_saved_search("bad").last_run_at is not None

    def test_unknown_search(self, scheduler) -> None:
        assert scheduler.run_saved_search("missing") is None


class TestAlertedHistory:
    """Test that the alerted map only remembers listings that can come back."""

    @pytest.mark.parametrize("status", [ListingStatus.SOLD, ListingStatus.WITHDRAWN, ListingStatus.EXPIRED])
    def test_closed_listing_is_forgotten(self, store, scheduler, search, status) -> None:
        a = add_property(store, "A")
        b = add_property(store, "B")
        scheduler.run_saved_search("s1")

        significant_change(store, a, status=status)
        scheduler.run_saved_search("s1")

        alerted = store.get_saved_search("s1").alerted
        assert a.property_id not in alerted
        assert alerted[b.property_id] == 1

    def test_pending_listing_is_kept(self, store, scheduler, search) -> None:
        a = add_property(store, "A")
        scheduler.run_saved_search("s1")

        pending = significant_change(store, a, status=ListingStatus.PENDING)
        scheduler.run_saved_search("s1")
        assert a.property_id in store.get_saved_search("s1").alerted

        # Back on the market at a new alert revision
        significant_change(store, pending, status=ListingStatus.ACTIVE)
        event = scheduler.run_saved_search("s1")
        assert event.new_property_ids == [a.property_id]


class TestProfileSearches:
    """Test saved searches that follow the client's live profile."""

    def test_uses_match_index(self, store, scheduler, pool_profile) -> None:
        store.put_profile(pool_profile)
        store.save_saved_search(SavedSearchState(
            search_id="live",
            client_id="client_pool",
            criteria=PreferenceProfile(client_id="client_pool"),
            follows_profile=True,
        ))
        a = add_property(store, "A")
        add_property(store, "B", features=frozenset())

        event = scheduler.run_saved_search("live")

        assert event.new_property_ids == [a.property_id]

    def test_profile_change_runs_search(self, store, scheduler, dispatcher, pool_profile) -> None:
        store.put_profile(pool_profile)
        store.save_saved_search(SavedSearchState(
            search_id="live",
            client_id="client_pool",
            criteria=PreferenceProfile(client_id="client_pool"),
            follows_profile=True,
        ))
        add_property(store, "A", features=frozenset(["garage"]))
        scheduler.run_saved_search("live")
        assert dispatcher.drain() == []

        store.put_profile(replace(pool_profile, must_have=frozenset(["garage"]), revision=2))
        alerts = scheduler.on_profile_changed("client_pool")

        assert len(alerts) == 1

    def test_threshold_below_index_floor(self, store, sync_config, dispatcher, pool_profile) -> None:
        config = MatchConfig(min_score=0.85)
        engine = ScoringEngine(config)
        scheduler = AlertScheduler(
            store,
            MatchIndex(store, engine, config),
            engine=engine,
            dispatcher=dispatcher,
            config=config,
            sync_config=sync_config,
        )
        store.put_profile(pool_profile)
        store.save_saved_search(SavedSearchState(
            search_id="loose",
            client_id="client_pool",
            criteria=PreferenceProfile(client_id="client_pool"),
            follows_profile=True,
            min_score=0.5,
        ))
        # Scores 0.80: above the search's threshold, below the index's floor
        a = add_property(store, "A", price=530000)
        assert 0.5 <= engine.score(pool_profile, a).composite < 0.85

        event = scheduler.run_saved_search("loose")

        assert event.new_property_ids == [a.property_id]

    def test_missing_profile_matches_nothing(self, store, scheduler) -> None:
        store.save_saved_search(SavedSearchState(
            search_id="orphan",
            client_id="nobody",
            criteria=PreferenceProfile(client_id="nobody"),
            follows_profile=True,
            min_score=0.1,
        ))
        add_property(store, "A")

        assert scheduler.run_saved_search("orphan") is None


class TestTriggers:
    """Test scheduled and event-driven triggers."""

    def test_due_searches(self, store, scheduler, pool_profile) -> None:
        now = ts(600)
        store.save_saved_search(SavedSearchState("never", "c1", pool_profile))
        store.save_saved_search(SavedSearchState("recent", "c2", pool_profile, last_run_at=now - timedelta(minutes=5)))
        store.save_saved_search(SavedSearchState("stale", "c3", pool_profile, last_run_at=now - timedelta(hours=2)))
        store.save_saved_search(SavedSearchState("off", "c4", pool_profile, is_active=False))

        assert sorted(scheduler.due_searches(now)) == ["never", "stale"]

    def test_run_due_updates_last_run(self, store, scheduler, search) -> None:
        scheduler.run_due(now=ts(10))
        assert store.get_saved_search("s1").last_run_at == ts(10)
        assert scheduler.due_searches(ts(20)) == []

    def test_created_event_runs_matching_searches(self, store, scheduler, search, pool_profile) -> None:
        store.save_saved_search(SavedSearchState(
            search_id="cheap",
            client_id="other",
            criteria=PreferenceProfile(client_id="other", price_max=200000),
        ))
        a = add_property(store, "A")

        alerts = scheduler.on_property_event(PropertyEvent(
            kind=PropertyEventKind.CREATED,
            property_id=a.property_id,
            feed_id="A",
            revision=1,
        ))

        assert [e.saved_search_id for e in alerts] == ["s1"]
        assert alerts[0].trigger == "event"
        assert store.get_saved_search("cheap").last_run_at is None

    def test_minor_event_is_ignored(self, store, scheduler, search) -> None:
        a = add_property(store, "A")
        alerts = scheduler.on_property_event(PropertyEvent(
            kind=PropertyEventKind.UPDATED,
            property_id=a.property_id,
            feed_id="A",
            revision=2,
        ))
        assert alerts == []


class TestConcurrency:
    """Test that concurrent runs of one search never duplicate alerts."""

    def test_concurrent_runs_alert_once(self, store, scheduler, search) -> None:
        for i in range(10):
            add_property(store, f"P{i}")

        barrier = threading.Barrier(8)
        results = []

        def run():
            barrier.wait()
            results.append(scheduler.run_saved_search("s1"))

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        emitted = [r for r in results if r is not None]
        assert len(emitted) == 1
        assert len(emitted[0].new_property_ids) == 10
        assert len(store.alerts) == 1
