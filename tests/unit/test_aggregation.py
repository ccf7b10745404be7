"""
Unit Tests - Snapshot Aggregation
"""
from datetime import datetime
from decimal import Decimal

import pytest

from booking_cdc.analytics.aggregation import (
    UNCATEGORIZED,
    AggregationWindow,
    SnapshotAccumulator,
    aggregate,
)
from booking_cdc.schemas import ChangeAction
from booking_cdc.transformation.derivation import derive


def _rows(breakdown):
    return {row.key: row for row in breakdown}


class TestAggregationWindow:
    """Tests for AggregationWindow"""

    def test_half_open_bounds(self):
        window = AggregationWindow(datetime(2024, 3, 1), datetime(2024, 3, 2))

        assert window.contains(datetime(2024, 3, 1))
        assert window.contains(datetime(2024, 3, 1, 23, 59, 59))
        assert not window.contains(datetime(2024, 3, 2))
        assert not window.contains(datetime(2024, 2, 29, 23, 59))

    def test_open_window_contains_everything(self):
        window = AggregationWindow()
        assert window.contains(datetime(1970, 1, 1))
        assert window.key == "-inf..+inf"

    def test_rejects_inverted_window(self):
        with pytest.raises(ValueError):
            AggregationWindow(datetime(2024, 3, 2), datetime(2024, 3, 1))

    def test_trailing_days(self):
        window = AggregationWindow.trailing_days(7, datetime(2024, 3, 10, 15, 30))

        assert window.end == datetime(2024, 3, 11)
        assert window.start == datetime(2024, 3, 4)
        assert window.key == "2024-03-04T00:00:00..2024-03-11T00:00:00"


class TestAggregate:
    """Tests for aggregate()"""

    def test_movie_scenario(self, m1_records):
        snapshot = aggregate(m1_records)

        assert snapshot.total_records == 5
        assert snapshot.valid_bookings == 5
        assert snapshot.active_bookings == 4
        assert snapshot.cancelled_bookings == 1
        assert snapshot.active_revenue == Decimal("53.00")
        assert snapshot.lost_revenue == Decimal("25.00")
        assert snapshot.gross_revenue == Decimal("78.00")
        assert snapshot.cancellation_rate == 0.2
        assert snapshot.data_quality_score == 1.0

        movie = _rows(snapshot.by_movie)["M1"]
        assert movie.bookings == 5
        assert movie.cancelled == 1
        assert movie.active_revenue == Decimal("53.00")

        prices = _rows(snapshot.by_price_category)
        assert prices["BUDGET"].bookings == 1
        assert prices["STANDARD"].bookings == 3
        assert prices["PREMIUM"].bookings == 1

    def test_empty_input_yields_zero_snapshot(self):
        snapshot = aggregate([])

        assert snapshot.total_records == 0
        assert snapshot.active_revenue == Decimal("0")
        assert snapshot.cancellation_rate == 0.0
        assert snapshot.data_quality_score == 0.0
        assert snapshot.by_movie == []

    def test_invalid_records_only_affect_quality(self, make_event, m1_records):
        broken = derive(make_event("B9", ticket_count=0, sequence=9))
        snapshot = aggregate(m1_records + [broken])

        assert snapshot.total_records == 6
        assert snapshot.invalid_records == 1
        assert snapshot.valid_bookings == 5
        assert snapshot.active_revenue == Decimal("53.00")
        assert snapshot.data_quality_score == round(5 / 6, 6)
        assert _rows(snapshot.by_movie)["M1"].bookings == 5

    def test_window_filters_on_effective_at(self, m1_records):
        window = AggregationWindow(datetime(2024, 3, 1, 12, 2), datetime(2024, 3, 1, 12, 4))
        snapshot = aggregate(m1_records, window=window, as_of=5)

        assert snapshot.total_records == 2
        assert snapshot.active_revenue == Decimal("35.00")
        assert snapshot.window_start == window.start
        assert snapshot.as_of_sequence == 5

    def test_uncategorised_keys(self, make_event):
        record = derive(make_event(status="PENDING", ticket_count=2, ticket_price="12.00"))
        snapshot = aggregate([record])

        assert UNCATEGORIZED in _rows(snapshot.by_status_category)
        assert snapshot.active_bookings == 0
        assert snapshot.cancelled_bookings == 0

    def test_change_action_and_day_breakdowns(self, make_event):
        records = [
            derive(make_event("B1", change_timestamp=datetime(2024, 3, 1, 9))),
            derive(make_event("B1", status="CANCELLED", change_action=ChangeAction.UPDATE,
                              change_timestamp=datetime(2024, 3, 2, 9))),
        ]
        snapshot = aggregate(records)

        actions = _rows(snapshot.by_change_action)
        assert actions["INSERT"].bookings == 1
        assert actions["UPDATE"].cancelled == 1
        assert list(_rows(snapshot.by_day)) == ["2024-03-01", "2024-03-02"]

    def test_idempotent_and_order_independent(self, m1_records):
        assert aggregate(m1_records) == aggregate(m1_records)
        assert aggregate(m1_records) == aggregate(list(reversed(m1_records)))


class TestSnapshotAccumulator:
    """Tests for resuming a fold from a stored snapshot"""

    def test_incremental_equals_full(self, m1_records):
        window = AggregationWindow()
        head, tail = m1_records[:3], m1_records[3:]

        stored = aggregate(head, window=window, as_of=3)
        acc = SnapshotAccumulator.from_snapshot(stored)
        acc.fold_window(tail, window)

        assert acc.snapshot(window, as_of=5) == aggregate(m1_records, window=window, as_of=5)

    def test_fold_window_counts_only_contained(self, m1_records):
        window = AggregationWindow(end=datetime(2024, 3, 1, 12, 3))
        acc = SnapshotAccumulator()

        assert acc.fold_window(m1_records, window) == 2
        assert acc.total_records == 2
