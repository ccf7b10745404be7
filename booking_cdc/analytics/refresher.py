"""
Analytics Refresher

Recomputes AnalyticsSnapshots from the derived record store.

Refreshes are cursor-gated: a run takes a point-in-time cut at the highest
derived record id and folds only the records added since the previous
snapshot of the same window. Each refresh appends a new snapshot row, so a
refresh that is cancelled part-way leaves the store untouched.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Tuple

import structlog
from sqlalchemy import func, select

from booking_cdc.analytics.aggregation import AggregationWindow, SnapshotAccumulator
from booking_cdc.config import get_settings
from booking_cdc.database.connection import get_db
from booking_cdc.database.models import AnalyticsSnapshotRow, DerivedBooking
from booking_cdc.schemas import AnalyticsSnapshot, DerivedRecord, utcnow

logger = structlog.get_logger(__name__)


class RefreshMode:
    FULL = "full"
    INCREMENTAL = "incremental"
    UNCHANGED = "unchanged"


@dataclass
class RefreshOutcome:
    """Snapshot produced by a refresh plus how it was obtained"""
    snapshot: AnalyticsSnapshot
    mode: str
    records_folded: int = 0
    computed_at: Optional[str] = None


class AnalyticsRefresher:
    """
    Maintains stored snapshots per aggregation window.

    Example:
        refresher = AnalyticsRefresher()
        snapshot = await refresher.run_once(AggregationWindow(start, end))
    """

    def __init__(
        self,
        session_scope: Callable = get_db,
        incremental: Optional[bool] = None,
        page_size: Optional[int] = None,
    ):
        pipeline = get_settings().pipeline
        self._session_scope = session_scope
        self.incremental = pipeline.incremental_aggregation if incremental is None else incremental
        self.page_size = page_size or pipeline.derivation_batch_size

    async def current_cut(self) -> int:
        """
        Highest derived record id, 0 when nothing is derived yet.

        Derivation commits under the offset row lock, so every lower id is
        already visible when this one is.
        """
        async with self._session_scope() as session:
            value = await session.scalar(select(func.max(DerivedBooking.id)))
        return int(value or 0)

    async def _latest_row(self, window: AggregationWindow) -> Optional[AnalyticsSnapshotRow]:
        async with self._session_scope() as session:
            return await session.scalar(
                select(AnalyticsSnapshotRow)
                .where(AnalyticsSnapshotRow.window_key == window.key)
                .order_by(AnalyticsSnapshotRow.id.desc())
                .limit(1)
            )

    async def latest_snapshot(self, window: AggregationWindow) -> Optional[AnalyticsSnapshot]:
        """Newest stored snapshot for ``window``, or None"""
        row = await self._latest_row(window)
        return row.to_snapshot() if row else None

    async def latest_with_timestamp(
        self, window: AggregationWindow
    ) -> Tuple[Optional[AnalyticsSnapshot], Optional[str]]:
        row = await self._latest_row(window)
        if row is None:
            return None, None
        return row.to_snapshot(), row.computed_at.isoformat() if row.computed_at else None

    async def _records(
        self,
        window: AggregationWindow,
        after_id: int,
        up_to_id: int,
    ) -> AsyncIterator[DerivedRecord]:
        """Derived records with ``after_id < id <= up_to_id`` inside the window, paged by id"""
        last = after_id
        while True:
            async with self._session_scope() as session:
                stmt = (
                    select(DerivedBooking)
                    .where(DerivedBooking.id > last, DerivedBooking.id <= up_to_id)
                    .order_by(DerivedBooking.id)
                    .limit(self.page_size)
                )
                if window.start is not None:
                    stmt = stmt.where(DerivedBooking.effective_at >= window.start)
                if window.end is not None:
                    stmt = stmt.where(DerivedBooking.effective_at < window.end)
                rows = (await session.execute(stmt)).scalars().all()

            for row in rows:
                yield row.to_record()
            if len(rows) < self.page_size:
                return
            last = rows[-1].id

    async def refresh(self, window: AggregationWindow, force: bool = False) -> RefreshOutcome:
        """
        Bring the stored snapshot for ``window`` up to the current cut.

        Args:
            window: Aggregation window
            force: Re-aggregate from scratch even if nothing changed
        """
        as_of = await self.current_cut()
        previous = await self._latest_row(window)

        if previous is not None and not force and previous.as_of_sequence == as_of:
            return RefreshOutcome(
                snapshot=previous.to_snapshot(),
                mode=RefreshMode.UNCHANGED,
                computed_at=previous.computed_at.isoformat() if previous.computed_at else None,
            )

        if previous is not None and self.incremental and not force and previous.as_of_sequence < as_of:
            accumulator = SnapshotAccumulator.from_snapshot(previous.to_snapshot())
            after_id = previous.as_of_sequence
            mode = RefreshMode.INCREMENTAL
        else:
            accumulator = SnapshotAccumulator()
            after_id = 0
            mode = RefreshMode.FULL

        folded = 0
        async for record in self._records(window, after_id, as_of):
            accumulator.fold(record)
            folded += 1

        snapshot = accumulator.snapshot(window, as_of=as_of)
        computed_at = utcnow()
        async with self._session_scope() as session:
            session.add(AnalyticsSnapshotRow(
                window_key=window.key,
                window_start=window.start,
                window_end=window.end,
                as_of_sequence=as_of,
                refresh_mode=mode,
                records_folded=folded,
                payload=snapshot.model_dump_json(),
                computed_at=computed_at,
            ))

        logger.info(
            "Analytics snapshot refreshed",
            window=window.key,
            mode=mode,
            as_of=as_of,
            records_folded=folded,
            valid_bookings=snapshot.valid_bookings,
        )
        return RefreshOutcome(
            snapshot=snapshot,
            mode=mode,
            records_folded=folded,
            computed_at=computed_at.isoformat(),
        )

    async def run_once(self, window: Optional[AggregationWindow] = None, force: bool = False) -> AnalyticsSnapshot:
        """Refresh ``window`` (default: trailing configured days) and return its snapshot"""
        if window is None:
            window = AggregationWindow.trailing_days(get_settings().pipeline.default_window_days, utcnow())
        outcome = await self.refresh(window, force=force)
        return outcome.snapshot
