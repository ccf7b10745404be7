"""
Test Suite Configuration
"""
from datetime import datetime
from typing import Any, Callable, List

import pytest

from booking_cdc.database.connection import close_database, init_database
from booking_cdc.schemas import ChangeAction, ChangeEvent, DerivedRecord
from booking_cdc.transformation.derivation import derive


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database file per test, shared by all sessions"""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'booking_cdc.db'}", create_schema=True)
    yield
    await close_database()


@pytest.fixture
def make_event() -> Callable[..., ChangeEvent]:
    """Factory for change events with sensible defaults"""
    def _make(
        booking_id: Any = "B1",
        *,
        customer_id: Any = "C1",
        movie_id: Any = "M1",
        status: Any = "BOOKED",
        ticket_count: Any = 1,
        ticket_price: Any = "15.00",
        change_action: ChangeAction = ChangeAction.INSERT,
        change_timestamp: datetime = datetime(2024, 3, 1, 12, 0),
        booking_date: Any = None,
        sequence: Any = None,
    ) -> ChangeEvent:
        return ChangeEvent(
            sequence=sequence,
            booking_id=booking_id,
            customer_id=customer_id,
            movie_id=movie_id,
            status=status,
            ticket_count=ticket_count,
            ticket_price=ticket_price,
            booking_date=booking_date,
            change_action=change_action,
            is_update=change_action == ChangeAction.UPDATE,
            change_timestamp=change_timestamp,
        )

    return _make


@pytest.fixture
def m1_records(make_event) -> List[DerivedRecord]:
    """Five single-ticket bookings for M1, the 25.00 one cancelled"""
    prices = ["10", "15", "20", "25", "8"]
    records = []
    for i, price in enumerate(prices, start=1):
        event = make_event(
            f"B{i}",
            status="CANCELLED" if price == "25" else "BOOKED",
            ticket_price=price,
            change_timestamp=datetime(2024, 3, 1, 12, i),
            sequence=i,
        )
        records.append(derive(event))
    return records


