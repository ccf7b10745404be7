"""
Booking Derivation Rules

Pure per-event transformation that adds business categorisations, the
revenue split and a validity flag to a ChangeEvent. Each DerivedRecord
depends only on its own event, so events can be derived in any order, in
parallel, and any number of times.

Rules (boundaries inclusive as written):
- status:  BOOKED -> ACTIVE, CANCELLED -> INACTIVE, anything else -> None
- size:    1 -> SINGLE, 2..4 -> GROUP, >=5 -> LARGE_GROUP, <=0 -> None
- price:   <10 -> BUDGET, 10..20 -> STANDARD, >20 -> PREMIUM
- revenue: total_amount is active when BOOKED, lost when CANCELLED
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from functools import partial
from typing import Iterable, List, Optional

from booking_cdc.schemas import (
    BookingStatus,
    ChangeEvent,
    DerivedRecord,
    PriceCategory,
    SizeCategory,
    StatusCategory,
    ZERO_MONEY,
)

BUDGET_CEILING = Decimal("10")
STANDARD_CEILING = Decimal("20")

STATUS_CATEGORIES = {
    BookingStatus.BOOKED.value: StatusCategory.ACTIVE,
    BookingStatus.CANCELLED.value: StatusCategory.INACTIVE,
}


def categorize_status(status: Optional[str]) -> Optional[StatusCategory]:
    return STATUS_CATEGORIES.get(status) if status else None


def categorize_size(ticket_count: Optional[int]) -> Optional[SizeCategory]:
    if ticket_count is None or ticket_count <= 0:
        return None
    if ticket_count == 1:
        return SizeCategory.SINGLE
    if ticket_count <= 4:
        return SizeCategory.GROUP
    return SizeCategory.LARGE_GROUP


def categorize_price(ticket_price: Optional[Decimal]) -> Optional[PriceCategory]:
    if ticket_price is None:
        return None
    if ticket_price < BUDGET_CEILING:
        return PriceCategory.BUDGET
    if ticket_price <= STANDARD_CEILING:
        return PriceCategory.STANDARD
    return PriceCategory.PREMIUM


def is_valid_booking(event: ChangeEvent, strict_status: bool = False) -> bool:
    """
    Validity predicate for aggregation.

    Missing identifying keys or a non-positive/missing count or price
    invalidate the booking. An unrecognised status only invalidates it when
    ``strict_status`` is set.
    """
    if not (event.booking_id and event.customer_id and event.movie_id):
        return False
    if event.ticket_count is None or event.ticket_count <= 0:
        return False
    if event.ticket_price is None or event.ticket_price <= 0:
        return False
    if strict_status and categorize_status(event.status) is None:
        return False
    return True


def derive(event: ChangeEvent, strict_status: bool = False) -> DerivedRecord:
    """
    Derive the analytics record for one change event.

    Never raises for malformed bookings; they come back with
    ``is_valid_booking=False`` so they can be audited.
    """
    total = event.total_amount
    active_revenue = ZERO_MONEY
    lost_revenue = ZERO_MONEY
    if total is not None:
        if event.status == BookingStatus.BOOKED.value:
            active_revenue = total
        elif event.status == BookingStatus.CANCELLED.value:
            lost_revenue = total

    return DerivedRecord(
        event_sequence=event.sequence,
        booking_id=event.booking_id,
        customer_id=event.customer_id,
        movie_id=event.movie_id,
        booking_date=event.booking_date,
        status=event.status,
        ticket_count=event.ticket_count,
        ticket_price=event.ticket_price,
        total_amount=total,
        created_at=event.created_at,
        updated_at=event.updated_at,
        change_action=event.change_action,
        is_update=event.is_update,
        change_timestamp=event.change_timestamp,
        effective_at=event.booking_date or event.change_timestamp,
        booking_status_category=categorize_status(event.status),
        booking_size_category=categorize_size(event.ticket_count),
        price_category=categorize_price(event.ticket_price),
        active_revenue=active_revenue,
        lost_revenue=lost_revenue,
        is_valid_booking=is_valid_booking(event, strict_status=strict_status),
    )


def derive_many(
    events: Iterable[ChangeEvent],
    strict_status: bool = False,
    executor: Optional[ThreadPoolExecutor] = None,
) -> List[DerivedRecord]:
    """Derive a batch, mapping over ``executor`` when one is given"""
    fn = partial(derive, strict_status=strict_status)
    if executor is None:
        return [fn(event) for event in events]
    return list(executor.map(fn, events))
