"""
Query and Export Services

Read-side access to the derived record and snapshot stores:

- QueryService: filtered, ordered streams of valid or invalid records and
  chunked CSV export
- AnalyticsService: snapshot lookup with bounded re-aggregation time

Every stream opens its own session, so it can outlive the request handler
that created it (FastAPI StreamingResponse bodies run after the handler
returns). Nothing in this module writes to a store except the refresh
performed by AnalyticsService.
"""

import asyncio
import csv
import io
from datetime import date, datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import BaseModel
from sqlalchemy import Select, func, select

from booking_cdc.analytics.aggregation import BREAKDOWNS, AggregationWindow
from booking_cdc.analytics.refresher import AnalyticsRefresher
from booking_cdc.config import get_settings
from booking_cdc.database.connection import get_db
from booking_cdc.database.models import DerivedBooking
from booking_cdc.errors import AggregationTimeoutError
from booking_cdc.schemas import AnalyticsSnapshot, DerivedRecord

logger = structlog.get_logger(__name__)

# Stable export column order
CSV_COLUMNS: Tuple[str, ...] = tuple(DerivedRecord.model_fields)

SNAPSHOT_CSV_COLUMNS: Tuple[str, ...] = (
    "breakdown",
    "key",
    "bookings",
    "tickets",
    "cancelled",
    "active_revenue",
    "lost_revenue",
)


class QueryFilters(BaseModel):
    """Conjunctive record filters; ``[start, end)`` applies to ``effective_at``"""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[str] = None
    movie_id: Optional[str] = None

    @classmethod
    def from_dates(
        cls,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
        movie_id: Optional[str] = None,
    ) -> "QueryFilters":
        """Build filters from an inclusive calendar date range"""
        return cls(
            start=datetime.combine(start_date, datetime.min.time()) if start_date else None,
            end=datetime.combine(end_date + timedelta(days=1), datetime.min.time()) if end_date else None,
            status=status,
            movie_id=movie_id,
        )

    def apply(self, stmt: Select) -> Select:
        if self.start is not None:
            stmt = stmt.where(DerivedBooking.effective_at >= self.start)
        if self.end is not None:
            stmt = stmt.where(DerivedBooking.effective_at < self.end)
        if self.status:
            stmt = stmt.where(DerivedBooking.status == self.status.strip().upper())
        if self.movie_id:
            stmt = stmt.where(DerivedBooking.movie_id == self.movie_id)
        return stmt


def export_filename(generated_at: datetime) -> str:
    """Download name for a record export generated at ``generated_at``"""
    return f"booking_changes_{generated_at.strftime('%Y%m%dT%H%M%SZ')}.csv"


def _csv_chunk(rows: Iterable[Dict], fieldnames: Tuple[str, ...], header: bool) -> bytes:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, extrasaction="ignore")
    if header:
        writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def snapshot_csv(snapshot: AnalyticsSnapshot) -> bytes:
    """CSV of every breakdown row of a snapshot"""
    rows = []
    for name in BREAKDOWNS:
        for row in getattr(snapshot, name):
            rows.append({"breakdown": name, **row.model_dump(mode="json")})
    return _csv_chunk(rows, SNAPSHOT_CSV_COLUMNS, header=True)


# =============================================================================
# RECORD QUERIES
# =============================================================================

class QueryService:
    """
    Streaming access to derived records.

    Example:
        service = QueryService()
        async for record in service.query(QueryFilters(movie_id="M1")):
            ...
    """

    def __init__(self, session_scope: Callable = get_db, chunk_size: Optional[int] = None):
        self._session_scope = session_scope
        self.chunk_size = chunk_size or get_settings().pipeline.export_chunk_size

    def _statement(self, filters: QueryFilters, valid: bool) -> Select:
        stmt = select(DerivedBooking).where(DerivedBooking.is_valid_booking == valid)
        return filters.apply(stmt)

    @staticmethod
    def _ordered(stmt: Select) -> Select:
        return stmt.order_by(DerivedBooking.effective_at, DerivedBooking.event_sequence)

    async def _stream(self, stmt: Select) -> AsyncIterator[DerivedRecord]:
        async with self._session_scope() as session:
            result = await session.stream_scalars(
                self._ordered(stmt).execution_options(yield_per=self.chunk_size)
            )
            async for row in result:
                yield row.to_record()

    def query(self, filters: Optional[QueryFilters] = None) -> AsyncIterator[DerivedRecord]:
        """Valid records matching ``filters``, ordered by effective time"""
        return self._stream(self._statement(filters or QueryFilters(), valid=True))

    def audit(self, filters: Optional[QueryFilters] = None) -> AsyncIterator[DerivedRecord]:
        """Invalid records matching ``filters``, for data quality review"""
        return self._stream(self._statement(filters or QueryFilters(), valid=False))

    async def page(
        self,
        filters: Optional[QueryFilters] = None,
        limit: int = 100,
        offset: int = 0,
        valid: bool = True,
    ) -> Tuple[List[DerivedRecord], int]:
        """One page of records plus the total match count"""
        stmt = self._statement(filters or QueryFilters(), valid=valid)
        async with self._session_scope() as session:
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            rows = (await session.execute(
                self._ordered(stmt).limit(limit).offset(offset)
            )).scalars().all()
        return [row.to_record() for row in rows], int(total or 0)

    async def export_csv(self, filters: Optional[QueryFilters] = None) -> AsyncIterator[bytes]:
        """
        Stream valid records as UTF-8 CSV.

        The first chunk always carries the header, so an empty result is a
        header-only file.
        """
        header_sent = False
        pending: List[Dict] = []
        exported = 0
        async for record in self.query(filters):
            pending.append(record.model_dump(mode="json"))
            if len(pending) >= self.chunk_size:
                yield _csv_chunk(pending, CSV_COLUMNS, header=not header_sent)
                header_sent = True
                exported += len(pending)
                pending = []

        if pending or not header_sent:
            yield _csv_chunk(pending, CSV_COLUMNS, header=not header_sent)
            exported += len(pending)

        logger.info("Record export completed", rows=exported)


# =============================================================================
# SNAPSHOTS
# =============================================================================

class SnapshotResponse(BaseModel):
    """Snapshot plus freshness information"""
    snapshot: AnalyticsSnapshot
    degraded: bool = False
    reason: Optional[str] = None
    refresh_mode: Optional[str] = None
    computed_at: Optional[str] = None


class AnalyticsService:
    """
    Snapshot access with a bounded refresh.

    A refresh that exceeds the timeout is cancelled (it writes nothing) and
    the newest stored snapshot is served with ``degraded=True`` instead.
    """

    def __init__(
        self,
        refresher: Optional[AnalyticsRefresher] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.refresher = refresher or AnalyticsRefresher()
        self.timeout_seconds = timeout_seconds or get_settings().pipeline.aggregation_timeout_seconds

    async def get_snapshot(
        self,
        window: AggregationWindow,
        refresh: bool = True,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> SnapshotResponse:
        """
        Snapshot for ``window``.

        Args:
            window: Aggregation window
            refresh: Bring the snapshot up to date first; when False a
                stored snapshot is returned as-is if one exists
            force: Re-aggregate from scratch
            timeout: Override the configured refresh deadline

        Raises:
            AggregationTimeoutError: the refresh timed out and no snapshot
                for the window has been stored yet
        """
        if not refresh:
            stored, computed_at = await self.refresher.latest_with_timestamp(window)
            if stored is not None:
                return SnapshotResponse(snapshot=stored, refresh_mode="stored", computed_at=computed_at)

        deadline = timeout or self.timeout_seconds
        try:
            outcome = await asyncio.wait_for(self.refresher.refresh(window, force=force), deadline)
        except asyncio.TimeoutError as exc:
            logger.warning("Snapshot refresh timed out", window=window.key, timeout_seconds=deadline)
            stored, computed_at = await self.refresher.latest_with_timestamp(window)
            if stored is None:
                raise AggregationTimeoutError(deadline, window.key) from exc
            return SnapshotResponse(
                snapshot=stored,
                degraded=True,
                reason=f"Refresh exceeded {deadline}s; serving the last stored snapshot",
                refresh_mode="stored",
                computed_at=computed_at,
            )

        return SnapshotResponse(
            snapshot=outcome.snapshot,
            refresh_mode=outcome.mode,
            computed_at=outcome.computed_at,
        )
