"""
Booking Analytics Aggregation

Pure, deterministic aggregation of derived records into AnalyticsSnapshots.

The fold state (SnapshotAccumulator) is exactly what a snapshot stores, so
a stored snapshot can be rehydrated and extended with newer records; this
is how the refresher avoids rescanning a window on every run. Sums use
Decimal, so folding in any order yields the same snapshot.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from booking_cdc.schemas import (
    AnalyticsSnapshot,
    BreakdownRow,
    DerivedRecord,
    StatusCategory,
    ZERO_MONEY,
)

UNCATEGORIZED = "UNCATEGORIZED"


@dataclass(frozen=True)
class AggregationWindow:
    """
    Half-open time window ``[start, end)`` over ``effective_at``.

    Either bound may be ``None`` for an open-ended window.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start and self.end and self.end < self.start:
            raise ValueError("Window end must not precede its start")

    def contains(self, ts: datetime) -> bool:
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts >= self.end:
            return False
        return True

    @property
    def key(self) -> str:
        """Stable identifier used to look up stored snapshots"""
        start = self.start.isoformat() if self.start else "-inf"
        end = self.end.isoformat() if self.end else "+inf"
        return f"{start}..{end}"

    @classmethod
    def trailing_days(cls, days: int, now: datetime) -> "AggregationWindow":
        """Window of whole UTC days ending after ``now``'s day"""
        end = datetime(now.year, now.month, now.day) + timedelta(days=1)
        return cls(start=end - timedelta(days=days), end=end)


@dataclass
class _Group:
    bookings: int = 0
    tickets: int = 0
    cancelled: int = 0
    active_revenue: Decimal = ZERO_MONEY
    lost_revenue: Decimal = ZERO_MONEY

    def add(self, record: DerivedRecord) -> None:
        self.bookings += 1
        self.tickets += record.ticket_count or 0
        if record.booking_status_category == StatusCategory.INACTIVE:
            self.cancelled += 1
        self.active_revenue += record.active_revenue
        self.lost_revenue += record.lost_revenue

    def row(self, key: str) -> BreakdownRow:
        return BreakdownRow(
            key=key,
            bookings=self.bookings,
            tickets=self.tickets,
            cancelled=self.cancelled,
            active_revenue=self.active_revenue,
            lost_revenue=self.lost_revenue,
        )

    @classmethod
    def from_row(cls, row: BreakdownRow) -> "_Group":
        return cls(
            bookings=row.bookings,
            tickets=row.tickets,
            cancelled=row.cancelled,
            active_revenue=row.active_revenue,
            lost_revenue=row.lost_revenue,
        )


def _enum_key(value) -> str:
    return value.value if value is not None else UNCATEGORIZED


BREAKDOWNS: Dict[str, Callable[[DerivedRecord], str]] = {
    "by_movie": lambda r: r.movie_id or UNCATEGORIZED,
    "by_size_category": lambda r: _enum_key(r.booking_size_category),
    "by_price_category": lambda r: _enum_key(r.price_category),
    "by_status_category": lambda r: _enum_key(r.booking_status_category),
    "by_change_action": lambda r: r.change_action.value,
    "by_day": lambda r: r.effective_at.date().isoformat(),
}


class SnapshotAccumulator:
    """
    Mergeable fold state behind an AnalyticsSnapshot.

    Example:
        acc = SnapshotAccumulator()
        for record in records:
            acc.fold(record)
        snapshot = acc.snapshot(window, as_of=42)
    """

    def __init__(self):
        self.total_records = 0
        self.valid_bookings = 0
        self.active_bookings = 0
        self.cancelled_bookings = 0
        self.total_tickets = 0
        self.active_revenue = ZERO_MONEY
        self.lost_revenue = ZERO_MONEY
        self.groups: Dict[str, Dict[str, _Group]] = {name: {} for name in BREAKDOWNS}

    def fold(self, record: DerivedRecord) -> None:
        """Add one record; invalid records only count towards data quality"""
        self.total_records += 1
        if not record.is_valid_booking:
            return

        self.valid_bookings += 1
        if record.booking_status_category == StatusCategory.ACTIVE:
            self.active_bookings += 1
        elif record.booking_status_category == StatusCategory.INACTIVE:
            self.cancelled_bookings += 1
        self.total_tickets += record.ticket_count or 0
        self.active_revenue += record.active_revenue
        self.lost_revenue += record.lost_revenue

        for name, key_fn in BREAKDOWNS.items():
            groups = self.groups[name]
            key = key_fn(record)
            if key not in groups:
                groups[key] = _Group()
            groups[key].add(record)

    def fold_window(self, records: Iterable[DerivedRecord], window: AggregationWindow) -> int:
        """Fold the records inside ``window``; returns how many were folded"""
        folded = 0
        for record in records:
            if window.contains(record.effective_at):
                self.fold(record)
                folded += 1
        return folded

    def snapshot(self, window: AggregationWindow, as_of: Optional[int] = None) -> AnalyticsSnapshot:
        valid = self.valid_bookings
        total = self.total_records
        return AnalyticsSnapshot(
            window_start=window.start,
            window_end=window.end,
            as_of_sequence=as_of,
            total_records=total,
            valid_bookings=valid,
            invalid_records=total - valid,
            active_bookings=self.active_bookings,
            cancelled_bookings=self.cancelled_bookings,
            total_tickets=self.total_tickets,
            active_revenue=self.active_revenue,
            lost_revenue=self.lost_revenue,
            gross_revenue=self.active_revenue + self.lost_revenue,
            cancellation_rate=round(self.cancelled_bookings / valid, 6) if valid else 0.0,
            data_quality_score=round(valid / total, 6) if total else 0.0,
            **{
                name: [groups[key].row(key) for key in sorted(groups)]
                for name, groups in self.groups.items()
            },
        )

    @classmethod
    def from_snapshot(cls, snapshot: AnalyticsSnapshot) -> "SnapshotAccumulator":
        """Rehydrate fold state from a stored snapshot"""
        acc = cls()
        acc.total_records = snapshot.total_records
        acc.valid_bookings = snapshot.valid_bookings
        acc.active_bookings = snapshot.active_bookings
        acc.cancelled_bookings = snapshot.cancelled_bookings
        acc.total_tickets = snapshot.total_tickets
        acc.active_revenue = snapshot.active_revenue
        acc.lost_revenue = snapshot.lost_revenue
        for name in BREAKDOWNS:
            rows: List[BreakdownRow] = getattr(snapshot, name)
            acc.groups[name] = {row.key: _Group.from_row(row) for row in rows}
        return acc


def aggregate(
    records: Iterable[DerivedRecord],
    window: Optional[AggregationWindow] = None,
    as_of: Optional[int] = None,
) -> AnalyticsSnapshot:
    """
    Aggregate derived records falling inside ``window``.

    An empty input yields a zero-valued snapshot. The result depends only
    on the records and the arguments, never on the clock.
    """
    window = window or AggregationWindow()
    acc = SnapshotAccumulator()
    acc.fold_window(records, window)
    return acc.snapshot(window, as_of=as_of)
