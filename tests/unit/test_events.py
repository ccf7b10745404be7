"""
Unit Tests - Change Envelope Parsing
"""
from datetime import datetime
from decimal import Decimal

import pytest

from booking_cdc.errors import MalformedEnvelopeError
from booking_cdc.ingestion.events import change_event_from_envelope, parse_operation
from booking_cdc.schemas import ChangeAction


BOOKING = {
    "booking_id": "B100",
    "customer_id": "C7",
    "movie_id": "M3",
    "status": "BOOKED",
    "ticket_count": 2,
    "ticket_price": "12.50",
    "booking_date": "2024-03-01T19:00:00",
}


class TestParseOperation:
    """Tests for operation tags"""

    @pytest.mark.parametrize(
        "tag,expected",
        [
            ("INSERT", ChangeAction.INSERT),
            ("c", ChangeAction.INSERT),
            ("r", ChangeAction.INSERT),
            ("update", ChangeAction.UPDATE),
            ("u", ChangeAction.UPDATE),
            (" DELETE ", ChangeAction.DELETE),
            ("d", ChangeAction.DELETE),
        ],
    )
    def test_aliases(self, tag, expected):
        assert parse_operation(tag) == expected

    @pytest.mark.parametrize("tag", [None, "TRUNCATE", ""])
    def test_unknown_operation_raises(self, tag):
        with pytest.raises(MalformedEnvelopeError):
            parse_operation(tag)


class TestChangeEventFromEnvelope:
    """Tests for change_event_from_envelope()"""

    def test_generic_insert(self):
        event = change_event_from_envelope({
            "operation": "INSERT",
            "before": None,
            "after": BOOKING,
            "timestamp": "2024-03-01T12:00:00Z",
        })

        assert event.change_action == ChangeAction.INSERT
        assert event.is_update is False
        assert event.booking_id == "B100"
        assert event.ticket_price == Decimal("12.50")
        assert event.total_amount == Decimal("25.00")
        assert event.change_timestamp == datetime(2024, 3, 1, 12, 0)
        assert event.dedup_key == "B100|2024-03-01T12:00:00|INSERT"
        assert event.sequence is None

    def test_debezium_update_uses_after_image(self):
        event = change_event_from_envelope({
            "op": "u",
            "before": BOOKING,
            "after": {**BOOKING, "status": "CANCELLED"},
            "ts_ms": 1709294400000,
        })

        assert event.change_action == ChangeAction.UPDATE
        assert event.is_update is True
        assert event.status == "CANCELLED"
        assert event.change_timestamp == datetime(2024, 3, 1, 12, 0)

    def test_delete_uses_before_image(self):
        event = change_event_from_envelope({
            "operation": "DELETE",
            "before": BOOKING,
            "after": None,
            "timestamp": "2024-03-01T12:00:00",
        })

        assert event.change_action == ChangeAction.DELETE
        assert event.booking_id == "B100"
        assert event.ticket_count == 2

    def test_flat_row(self):
        event = change_event_from_envelope({
            **BOOKING,
            "ticket_count": "3",
            "operation": "UPDATE",
            "is_update": "false",
            "timestamp": "2024-03-01 12:00:00",
        })

        assert event.change_action == ChangeAction.UPDATE
        assert event.is_update is False
        assert event.ticket_count == 3
        assert event.booking_date == datetime(2024, 3, 1, 19, 0)

    def test_images_may_be_json_strings(self):
        event = change_event_from_envelope({
            "operation": "INSERT",
            "after": '{"booking_id": "B5", "ticket_count": 1}',
            "timestamp": "2024-03-01T12:00:00",
        })
        assert event.booking_id == "B5"

    def test_bad_booking_fields_do_not_raise(self):
        event = change_event_from_envelope({
            "operation": "INSERT",
            "after": {"booking_id": "", "ticket_count": "lots", "ticket_price": "free"},
            "timestamp": "2024-03-01T12:00:00",
        })

        assert event.booking_id is None
        assert event.ticket_count is None
        assert event.ticket_price is None

    def test_out_of_range_numbers_become_null(self):
        event = change_event_from_envelope({
            "operation": "INSERT",
            "after": {"booking_id": "B1", "ticket_count": 10**20, "ticket_price": "1e12"},
            "timestamp": "2024-03-01T12:00:00",
        })

        assert event.ticket_count is None
        assert event.ticket_price is None
        assert event.raw_payload["after"]["ticket_count"] == 10**20

    def test_largest_storable_numbers_are_kept(self):
        event = change_event_from_envelope({
            "operation": "INSERT",
            "after": {"booking_id": "B1", "ticket_count": 2**31 - 1, "ticket_price": "99999999.99"},
            "timestamp": "2024-03-01T12:00:00",
        })

        assert event.ticket_count == 2**31 - 1
        assert event.ticket_price == Decimal("99999999.99")

    def test_raw_payload_is_kept(self):
        envelope = {"operation": "INSERT", "after": BOOKING, "timestamp": "2024-03-01T12:00:00"}
        event = change_event_from_envelope(envelope)
        assert event.raw_payload["after"]["booking_id"] == "B100"

    @pytest.mark.parametrize(
        "envelope",
        [
            "not an object",
            {"after": BOOKING, "timestamp": "2024-03-01T12:00:00"},
            {"operation": "INSERT", "after": BOOKING},
            {"operation": "INSERT", "after": BOOKING, "timestamp": "yesterday"},
            {"operation": "INSERT", "after": "{broken", "timestamp": "2024-03-01T12:00:00"},
            {"operation": "INSERT", "after": [1, 2], "timestamp": "2024-03-01T12:00:00"},
        ],
    )
    def test_malformed_envelopes_raise(self, envelope):
        with pytest.raises(MalformedEnvelopeError):
            change_event_from_envelope(envelope)
