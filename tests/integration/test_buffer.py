"""
Integration Tests - Ingestion Buffer
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from booking_cdc.database.connection import get_db
from booking_cdc.errors import DuplicateEventError
from booking_cdc.ingestion.buffer import IngestionBuffer, lock_offset, store_offset
from booking_cdc.schemas import ChangeAction

pytestmark = pytest.mark.usefixtures("database")


@pytest.fixture
def buffer():
    return IngestionBuffer(lock_stripes=8)


class TestAppend:
    """Tests for IngestionBuffer.append"""

    async def test_assigns_increasing_sequences(self, buffer, make_event):
        first = await buffer.append(make_event("B1"))
        second = await buffer.append(make_event("B2"))

        assert first.sequence is not None
        assert second.sequence > first.sequence
        assert await buffer.latest_sequence() == second.sequence

    async def test_rejects_duplicate(self, buffer, make_event):
        await buffer.append(make_event("B1"))

        with pytest.raises(DuplicateEventError) as exc_info:
            await buffer.append(make_event("B1", status="CANCELLED"))

        assert exc_info.value.dedup_key == "B1|2024-03-01T12:00:00|INSERT"
        assert await buffer.count() == 1

    async def test_same_booking_different_action_is_not_duplicate(self, buffer, make_event):
        await buffer.append(make_event("B1"))
        await buffer.append(make_event("B1", change_action=ChangeAction.UPDATE))

        assert await buffer.count() == 2

    async def test_append_many_collects_duplicates(self, buffer, make_event):
        events = [make_event("B1"), make_event("B2"), make_event("B1")]

        report = await buffer.append_many(events)

        assert report.appended_count == 2
        assert report.duplicate_count == 1
        assert report.duplicates == ["B1|2024-03-01T12:00:00|INSERT"]

    async def test_concurrent_appends_keep_per_booking_order(self, buffer, make_event):
        base = datetime(2024, 3, 1, 12, 0)
        events = [
            make_event(f"B{b}", change_timestamp=base + timedelta(minutes=m))
            for m in range(5)
            for b in range(4)
        ]

        stored = await asyncio.gather(*(buffer.append(e) for e in events))

        assert len({e.sequence for e in stored}) == len(events)
        by_booking = {}
        async for event in buffer.read_since(0):
            by_booking.setdefault(event.booking_id, []).append(event.change_timestamp)
        for timestamps in by_booking.values():
            assert timestamps == sorted(timestamps)

    async def test_concurrent_duplicates_store_once(self, buffer, make_event):
        results = await asyncio.gather(
            *(buffer.append(make_event("B1")) for _ in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, DuplicateEventError)) == 4
        assert await buffer.count() == 1


class TestReadSince:
    """Tests for cursor reads"""

    async def test_reads_in_sequence_order_across_pages(self, buffer, make_event):
        for i in range(7):
            await buffer.append(make_event(f"B{i}"))

        sequences = [e.sequence async for e in buffer.read_since(0, batch_size=3)]

        assert len(sequences) == 7
        assert sequences == sorted(sequences)

    async def test_cursor_and_until_bounds(self, buffer, make_event):
        stored = [await buffer.append(make_event(f"B{i}")) for i in range(5)]
        cursor, until = stored[1].sequence, stored[3].sequence

        events = [e async for e in buffer.read_since(cursor, until=until)]

        assert [e.booking_id for e in events] == ["B2", "B3"]

    async def test_round_trips_booking_fields(self, buffer, make_event):
        original = make_event("B1", ticket_count=3, ticket_price="12.50",
                              booking_date="2024-03-05T18:00:00")
        await buffer.append(original)

        [event] = [e async for e in buffer.read_since(0)]

        assert event.total_amount == original.total_amount
        assert event.booking_date == original.booking_date
        assert event.change_action == original.change_action

    async def test_empty_buffer(self, buffer):
        assert [e async for e in buffer.read_since(0)] == []
        assert await buffer.latest_sequence() == 0


class TestOffsets:
    """Tests for consumer offsets"""

    async def test_unknown_consumer_starts_at_zero(self, buffer):
        assert await buffer.get_offset("derivation") == 0

    async def test_offset_never_moves_backwards(self, buffer):
        async with get_db() as session:
            await store_offset(session, "derivation", 10)
        async with get_db() as session:
            await store_offset(session, "derivation", 4)

        assert await buffer.get_offset("derivation") == 10

    async def test_ensure_offset_is_idempotent(self, buffer):
        await buffer.ensure_offset("derivation")
        await buffer.ensure_offset("derivation")

        assert await buffer.get_offset("derivation") == 0

    async def test_lock_offset_returns_stored_position(self, buffer):
        async with get_db() as session:
            await store_offset(session, "derivation", 7)

        async with get_db() as session:
            assert await lock_offset(session, "derivation") == 7
            assert await lock_offset(session, "unknown") == 0
