"""Tests for feed reconciliation."""

import threading

import pytest

from conftest import raw_listing, ts
from listing_alerts.db import MemoryDatabase, StoreError
from listing_alerts.events import EventBus, PropertyEventKind
from listing_alerts.models import ListingStatus
from listing_alerts.normalization import ListingNormalizer
from listing_alerts.reconciler import (
    BatchFailedError,
    ReconcileOutcome,
    Reconciler,
    diff_records,
)

RESOURCE = "Property"


def snapshot(store: MemoryDatabase) -> dict:
    """Store contents keyed by feed ID, minus store-assigned identity fields."""
    return {
        prop.feed_id: {
            k: v for k, v in prop.to_dict().items()
            if k not in ("property_id", "first_seen")
        }
        for prop in store.list_properties()
    }


class FlakyStore(MemoryDatabase):
    """Fails the first insert of one listing, like a store outage mid-batch."""

    def __init__(self, fail_feed_id: str):
        super().__init__()
        self.fail_feed_id = fail_feed_id
        self.failed = False

    def insert_property(self, record):
        if record.feed_id == self.fail_feed_id and not self.failed:
            self.failed = True
            raise StoreError("connection reset")
        return super().insert_property(record)


class RacingStore(MemoryDatabase):
    """Loses the first compare-and-swap, as if another worker wrote first."""

    def __init__(self):
        super().__init__()
        self.lost = False

    def update_property(self, record, expected_revision):
        if not self.lost:
            self.lost = True
            return False
        return super().update_property(record, expected_revision)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def reconciler(store, bus, sync_config) -> Reconciler:
    return Reconciler(store, bus, sync_config)


class TestCreateAndUpdate:
    """Test per-record decisions."""

    def test_new_record_is_created(self, reconciler, store, bus) -> None:
        result = reconciler.reconcile_batch(RESOURCE, [raw_listing()])

        assert result.outcomes == {"L1": ReconcileOutcome.CREATED}
        prop = store.get_property_by_feed_id("L1")
        assert prop.property_id.startswith("prop_")
        assert prop.revision == 1
        assert prop.alert_revision == 1

        events = bus.drain()
        assert [e.kind for e in events] == [PropertyEventKind.CREATED]
        assert events[0].property_id == prop.property_id

    def test_redelivery_is_a_no_op(self, reconciler, store, bus) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(price=400000)])
        bus.drain()

        result = reconciler.reconcile_batch(RESOURCE, [raw_listing(price=400000)])

        assert result.outcomes == {"L1": ReconcileOutcome.UNCHANGED}
        assert bus.drain() == []
        assert store.get_property_by_feed_id("L1").revision == 1

    def test_price_drop_is_significant(self, reconciler, store, bus) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0, price=400000)])
        bus.drain()

        result = reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=10, price=350000)])

        assert result.outcomes == {"L1": ReconcileOutcome.UPDATED}
        events = bus.drain()
        assert len(events) == 1
        assert events[0].kind == PropertyEventKind.SIGNIFICANT_CHANGE
        assert events[0].changed_fields == ["price"]

        prop = store.get_property_by_feed_id("L1")
        assert prop.price == 350000
        assert prop.revision == 2
        assert prop.alert_revision == 2

        change = store.property_changes[-1]
        assert change["change_type"] == "price"
        assert change["change_percent"] == -12.5

    def test_description_edit_is_minor(self, reconciler, store, bus) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0, PublicRemarks="Nice")])
        bus.drain()

        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=5, PublicRemarks="Very nice")])

        events = bus.drain()
        assert [e.kind for e in events] == [PropertyEventKind.UPDATED]
        prop = store.get_property_by_feed_id("L1")
        assert prop.revision == 2
        assert prop.alert_revision == 1

    def test_feature_change_is_minor(self, reconciler, store, bus) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0, features=["pool"])])
        bus.drain()
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=5, features=["pool", "garage"])])
        assert [e.kind for e in bus.drain()] == [PropertyEventKind.UPDATED]

    def test_older_record_is_ignored(self, reconciler, store) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=10, price=350000)])
        result = reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0, price=400000)])

        assert result.outcomes["L1"] == ReconcileOutcome.UNCHANGED
        assert store.get_property_by_feed_id("L1").price == 350000

    def test_out_of_order_within_batch(self, reconciler, store) -> None:
        reconciler.reconcile_batch(RESOURCE, [
            raw_listing(minutes=10, price=350000),
            raw_listing(minutes=0, price=400000),
        ])
        assert store.get_property_by_feed_id("L1").price == 350000

    def test_identity_is_stable(self, reconciler, store) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0)])
        first = store.get_property_by_feed_id("L1")
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=5, status="Pending")])
        second = store.get_property_by_feed_id("L1")

        assert second.property_id == first.property_id
        assert second.first_seen == first.first_seen
        assert second.status == ListingStatus.PENDING

    def test_lost_compare_and_swap_is_retried(self, bus, sync_config) -> None:
        store = RacingStore()
        reconciler = Reconciler(store, bus, sync_config)
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=0, price=400000)])
        reconciler.reconcile_batch(RESOURCE, [raw_listing(minutes=5, price=390000)])

        assert store.get_property_by_feed_id("L1").price == 390000
        assert store.lost


class TestIdempotence:
    """Test that re-applying batches converges on one state."""

    def test_same_batch_twice(self, reconciler, store) -> None:
        batch = [
            raw_listing(key="L1", minutes=0),
            raw_listing(key="L2", minutes=1, price=550000),
            raw_listing(key="L1", minutes=2, price=390000),
        ]
        reconciler.reconcile_batch(RESOURCE, batch)
        once = snapshot(store)

        result = reconciler.reconcile_batch(RESOURCE, batch)

        assert snapshot(store) == once
        assert set(result.outcomes.values()) == {ReconcileOutcome.UNCHANGED}
        assert result.events == []

    def test_concurrent_versions_newest_wins(self, reconciler, store) -> None:
        versions = [raw_listing(minutes=m, price=400000 - m * 1000) for m in range(6)]
        threads = [
            threading.Thread(target=reconciler.apply_record, args=(ListingNormalizer().normalize(v),))
            for v in versions
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        prop = store.get_property_by_feed_id("L1")
        assert prop.last_modified == ts(5)
        assert prop.price == 395000


class TestCursor:
    """Test sync cursor advancement."""

    def test_cursor_moves_to_newest_timestamp(self, reconciler, store) -> None:
        result = reconciler.reconcile_batch(RESOURCE, [
            raw_listing(key="L1", minutes=3),
            raw_listing(key="L2", minutes=7),
        ])
        assert result.cursor_advanced
        assert store.get_cursor(RESOURCE).watermark == ts(7)

    def test_cursor_never_moves_backwards(self, reconciler, store) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(key="L1", minutes=7)])
        reconciler.reconcile_batch(RESOURCE, [raw_listing(key="L2", minutes=3)])
        assert store.get_cursor(RESOURCE).watermark == ts(7)

    def test_one_off_batches_leave_cursor(self, reconciler, store) -> None:
        result = reconciler.reconcile_batch(RESOURCE, [raw_listing()], advance_cursor=False)
        assert not result.cursor_advanced
        assert store.get_cursor(RESOURCE).watermark is None

    def test_failed_batch_can_be_replayed(self, bus, sync_config) -> None:
        batch = [
            raw_listing(key="L1", minutes=0),
            raw_listing(key="L2", minutes=1),
            raw_listing(key="L3", minutes=2),
        ]

        clean = MemoryDatabase()
        Reconciler(clean, EventBus(), sync_config).reconcile_batch(RESOURCE, batch)

        flaky = FlakyStore(fail_feed_id="L3")
        reconciler = Reconciler(flaky, bus, sync_config)
        with pytest.raises(StoreError):
            reconciler.reconcile_batch(RESOURCE, batch)

        # Partially applied, cursor untouched
        assert set(snapshot(flaky)) == {"L1", "L2"}
        assert flaky.get_cursor(RESOURCE).watermark is None

        reconciler.reconcile_batch(RESOURCE, batch)

        assert snapshot(flaky) == snapshot(clean)
        assert flaky.get_cursor(RESOURCE).watermark == clean.get_cursor(RESOURCE).watermark


class TestErrorRate:
    """Test record-level errors and the batch failure threshold."""

    def test_bad_record_is_skipped(self, reconciler, store) -> None:
        result = reconciler.reconcile_batch(RESOURCE, [
            raw_listing(key="L1"),
            raw_listing(key="L2"),
            raw_listing(key="L3"),
            raw_listing(key="L4", price="TBD"),
        ])
        assert len(result.errors) == 1
        assert result.errors[0].feed_id == "L4"
        assert set(snapshot(store)) == {"L1", "L2", "L3"}
        assert result.cursor_advanced

    def test_non_finite_count_is_a_record_error(self, reconciler, store) -> None:
        result = reconciler.reconcile_batch(RESOURCE, [
            raw_listing(key="L1"),
            raw_listing(key="L2"),
            raw_listing(key="L3"),
            raw_listing(key="L4", bedrooms="NaN"),
        ])
        assert [e.feed_id for e in result.errors] == ["L4"]
        assert result.errors[0].field_name == "bedrooms"
        assert set(snapshot(store)) == {"L1", "L2", "L3"}

    def test_too_many_bad_records_fail_the_batch(self, reconciler, store, bus) -> None:
        with pytest.raises(BatchFailedError) as exc:
            reconciler.reconcile_batch(RESOURCE, [
                raw_listing(key="L1"),
                raw_listing(key="L2", status="???"),
                raw_listing(key="L3", price=None),
            ])

        assert len(exc.value.result.errors) == 2
        assert store.list_properties() == []
        assert store.get_cursor(RESOURCE).watermark is None
        assert len(bus) == 0
        assert "error_message" in store.sync_runs[-1]


class TestPresence:
    """Test withdrawal of listings that disappear from full syncs."""

    def test_withdrawn_after_threshold(self, reconciler, store, bus) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(key="L1"), raw_listing(key="L2")])
        bus.drain()

        assert reconciler.mark_missing({"L2"}) == []
        assert store.get_property_by_feed_id("L1").missed_syncs == 1
        assert store.get_property_by_feed_id("L1").status == ListingStatus.ACTIVE

        events = reconciler.mark_missing({"L2"})

        prop = store.get_property_by_feed_id("L1")
        assert prop.status == ListingStatus.WITHDRAWN
        assert prop.alert_revision == 2
        assert [e.kind for e in events] == [PropertyEventKind.SIGNIFICANT_CHANGE]
        assert store.get_property_by_feed_id("L2").status == ListingStatus.ACTIVE

    def test_reappearing_resets_count(self, reconciler, store) -> None:
        reconciler.reconcile_batch(RESOURCE, [raw_listing(key="L1")])
        reconciler.mark_missing(set())
        reconciler.mark_missing({"L1"})
        reconciler.mark_missing(set())

        prop = store.get_property_by_feed_id("L1")
        assert prop.status == ListingStatus.ACTIVE
        assert prop.missed_syncs == 1


class TestDiff:
    """Test field-level diffing."""

    def test_diff_lists_changed_fields(self) -> None:
        normalizer = ListingNormalizer()
        old = normalizer.normalize(raw_listing(price=400000, bedrooms=3))
        new = normalizer.normalize(raw_listing(minutes=5, price=400000, bedrooms=4, PublicRemarks="x"))
        assert diff_records(old, new) == ["bedrooms", "description"]
