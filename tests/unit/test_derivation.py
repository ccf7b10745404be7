"""
Unit Tests - Derivation Rules
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal

import pytest

from booking_cdc.schemas import ChangeAction, PriceCategory, SizeCategory, StatusCategory
from booking_cdc.transformation.derivation import (
    categorize_price,
    categorize_size,
    categorize_status,
    derive,
    derive_many,
    is_valid_booking,
)


class TestCategorisation:
    """Tests for the categorisation rules"""

    @pytest.mark.parametrize(
        "count,expected",
        [
            (1, SizeCategory.SINGLE),
            (2, SizeCategory.GROUP),
            (4, SizeCategory.GROUP),
            (5, SizeCategory.LARGE_GROUP),
            (12, SizeCategory.LARGE_GROUP),
            (0, None),
            (-1, None),
            (None, None),
        ],
    )
    def test_size_boundaries(self, count, expected):
        assert categorize_size(count) == expected

    @pytest.mark.parametrize(
        "price,expected",
        [
            ("9.99", PriceCategory.BUDGET),
            ("10.00", PriceCategory.STANDARD),
            ("15.00", PriceCategory.STANDARD),
            ("20.00", PriceCategory.STANDARD),
            ("20.01", PriceCategory.PREMIUM),
            (None, None),
        ],
    )
    def test_price_boundaries(self, price, expected):
        value = Decimal(price) if price is not None else None
        assert categorize_price(value) == expected

    def test_status_categories(self):
        assert categorize_status("BOOKED") == StatusCategory.ACTIVE
        assert categorize_status("CANCELLED") == StatusCategory.INACTIVE
        assert categorize_status("PENDING") is None
        assert categorize_status(None) is None


class TestDerive:
    """Tests for derive()"""

    def test_single_standard_booking(self, make_event):
        record = derive(make_event(status="BOOKED", ticket_count=1, ticket_price="15.00"))

        assert record.total_amount == Decimal("15.00")
        assert record.booking_status_category == StatusCategory.ACTIVE
        assert record.booking_size_category == SizeCategory.SINGLE
        assert record.price_category == PriceCategory.STANDARD
        assert record.active_revenue == Decimal("15.00")
        assert record.lost_revenue == Decimal("0")
        assert record.is_valid_booking is True

    def test_cancelled_booking_is_lost_revenue(self, make_event):
        record = derive(make_event(status="CANCELLED", ticket_count=3, ticket_price="12.50"))

        assert record.total_amount == Decimal("37.50")
        assert record.booking_status_category == StatusCategory.INACTIVE
        assert record.active_revenue == Decimal("0")
        assert record.lost_revenue == Decimal("37.50")
        assert record.is_valid_booking is True

    def test_zero_tickets_is_invalid(self, make_event):
        record = derive(make_event(ticket_count=0))

        assert record.is_valid_booking is False
        assert record.booking_size_category is None
        assert record.total_amount == Decimal("0.00")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"booking_id": None},
            {"customer_id": "  "},
            {"movie_id": None},
            {"ticket_price": None},
            {"ticket_price": "0"},
            {"ticket_price": "-4.00"},
            {"ticket_price": "abc"},
            {"ticket_count": "two"},
            {"ticket_count": 2.5},
            {"ticket_count": 10**20},
            {"ticket_count": 2**31},
            {"ticket_price": "100000000"},
            {"ticket_price": "99999999.995"},
            {"ticket_price": "1e30"},
        ],
    )
    def test_malformed_fields_are_invalid_not_errors(self, make_event, overrides):
        record = derive(make_event(**overrides))
        assert record.is_valid_booking is False

    def test_revenue_split_is_exclusive(self, make_event):
        for status in ("BOOKED", "CANCELLED", "PENDING"):
            record = derive(make_event(status=status, ticket_count=2, ticket_price="11.00"))
            assert record.active_revenue == 0 or record.lost_revenue == 0

    def test_unrecognised_status_passes_through(self, make_event):
        record = derive(make_event(status="pending"))

        assert record.status == "PENDING"
        assert record.booking_status_category is None
        assert record.active_revenue == 0
        assert record.lost_revenue == 0
        assert record.is_valid_booking is True

    def test_strict_status_invalidates_unrecognised(self, make_event):
        event = make_event(status="PENDING")
        assert is_valid_booking(event, strict_status=True) is False
        assert derive(event, strict_status=True).is_valid_booking is False

    def test_effective_at_prefers_booking_date(self, make_event):
        booked = derive(make_event(booking_date="2024-02-28T18:30:00Z"))
        undated = derive(make_event(change_timestamp=datetime(2024, 3, 2, 9, 0)))

        assert booked.effective_at == datetime(2024, 2, 28, 18, 30)
        assert undated.effective_at == datetime(2024, 3, 2, 9, 0)

    def test_carries_capture_metadata(self, make_event):
        event = make_event(change_action=ChangeAction.UPDATE, sequence=17)
        record = derive(event)

        assert record.event_sequence == 17
        assert record.change_action == ChangeAction.UPDATE
        assert record.is_update is True
        assert record.change_timestamp == event.change_timestamp

    def test_idempotent(self, make_event):
        event = make_event(status="CANCELLED", ticket_count=5, ticket_price="21.00")
        assert derive(event) == derive(event)


class TestDeriveMany:
    """Tests for batch derivation"""

    def test_parallel_matches_sequential(self, make_event):
        events = [
            make_event(f"B{i}", ticket_count=(i % 6), ticket_price=str(5 + i), sequence=i)
            for i in range(1, 40)
        ]

        sequential = derive_many(events)
        with ThreadPoolExecutor(max_workers=4) as executor:
            parallel = derive_many(events, executor=executor)

        assert parallel == sequential
        assert [r.event_sequence for r in parallel] == list(range(1, 40))
