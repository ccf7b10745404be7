"""
Change Ingestion Buffer

Durable, append-only store of captured booking changes with:
- Duplicate rejection on (booking_id, change_timestamp, change_action)
- Per-booking append serialisation (striped locks)
- Lazy, restartable cursor reads for downstream consumers
- Persisted consumer offsets
"""

import asyncio
import zlib
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_cdc.config import get_settings
from booking_cdc.database.connection import get_db
from booking_cdc.database.models import BookingChangeEvent, ConsumerOffset
from booking_cdc.errors import DuplicateEventError
from booking_cdc.schemas import ChangeEvent, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class AppendReport:
    """Outcome of a multi-event append"""
    appended: List[ChangeEvent] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)

    @property
    def appended_count(self) -> int:
        return len(self.appended)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicates)


class IngestionBuffer:
    """
    Append-only change event buffer backed by ``booking_change_events``.

    Appends for the same booking are serialised through a striped lock so
    per-entity order matches call order; different bookings append
    concurrently. Stored events are never updated or deleted.

    Example:
        buffer = IngestionBuffer()
        stored = await buffer.append(event)
        async for event in buffer.read_since(cursor):
            ...
    """

    def __init__(
        self,
        session_scope: Callable = get_db,
        lock_stripes: Optional[int] = None,
    ):
        stripes = lock_stripes or get_settings().pipeline.append_lock_stripes
        self._session_scope = session_scope
        self._locks = [asyncio.Lock() for _ in range(stripes)]

    def _lock_for(self, booking_id: Optional[str]) -> asyncio.Lock:
        stripe = zlib.crc32((booking_id or "").encode("utf-8")) % len(self._locks)
        return self._locks[stripe]

    async def append(self, event: ChangeEvent) -> ChangeEvent:
        """
        Store one change event.

        Returns:
            The stored event with its assigned sequence

        Raises:
            DuplicateEventError: an event with the same dedup key is stored
        """
        async with self._lock_for(event.booking_id):
            row = BookingChangeEvent.from_event(event)
            try:
                async with self._session_scope() as session:
                    session.add(row)
                    await session.flush()
                    sequence = row.sequence_id
            except IntegrityError as exc:
                logger.info(
                    "Duplicate change event ignored",
                    booking_id=event.booking_id,
                    dedup_key=event.dedup_key,
                )
                raise DuplicateEventError(event.dedup_key) from exc

        logger.debug(
            "Change event buffered",
            sequence=sequence,
            booking_id=event.booking_id,
            change_action=event.change_action.value,
        )
        return event.model_copy(update={"sequence": sequence})

    async def append_many(self, events: Iterable[ChangeEvent]) -> AppendReport:
        """Append events in order, collecting duplicates instead of raising"""
        report = AppendReport()
        for event in events:
            try:
                report.appended.append(await self.append(event))
            except DuplicateEventError as exc:
                report.duplicates.append(exc.dedup_key)
        return report

    async def read_since(
        self,
        cursor: int,
        until: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> AsyncIterator[ChangeEvent]:
        """
        Lazily yield stored events with ``sequence > cursor`` in order.

        Pages are fetched by keyset pagination, so the iterator can be
        abandoned and restarted from the last sequence seen.
        """
        page_size = batch_size or get_settings().pipeline.derivation_batch_size
        last = cursor
        while True:
            async with self._session_scope() as session:
                stmt = (
                    select(BookingChangeEvent)
                    .where(BookingChangeEvent.sequence_id > last)
                    .order_by(BookingChangeEvent.sequence_id)
                    .limit(page_size)
                )
                if until is not None:
                    stmt = stmt.where(BookingChangeEvent.sequence_id <= until)
                rows = (await session.execute(stmt)).scalars().all()

            if not rows:
                return
            for row in rows:
                yield row.to_event()
            last = rows[-1].sequence_id
            if len(rows) < page_size:
                return

    async def latest_sequence(self) -> int:
        """Highest stored sequence, 0 when the buffer is empty"""
        async with self._session_scope() as session:
            value = await session.scalar(select(func.max(BookingChangeEvent.sequence_id)))
        return int(value or 0)

    async def count(self) -> int:
        async with self._session_scope() as session:
            value = await session.scalar(select(func.count()).select_from(BookingChangeEvent))
        return int(value or 0)

    async def get_offset(self, consumer: str) -> int:
        """Stored cursor for a consumer, 0 when it has never run"""
        async with self._session_scope() as session:
            return await load_offset(session, consumer)

    async def ensure_offset(self, consumer: str) -> None:
        """Create a consumer's offset row at 0 if it does not exist yet"""
        try:
            async with self._session_scope() as session:
                if await session.get(ConsumerOffset, consumer) is None:
                    session.add(ConsumerOffset(consumer=consumer, position=0, updated_at=utcnow()))
        except IntegrityError:
            logger.debug("Consumer offset created concurrently", consumer=consumer)


async def load_offset(session: AsyncSession, consumer: str) -> int:
    row = await session.get(ConsumerOffset, consumer)
    return row.position if row else 0


async def lock_offset(session: AsyncSession, consumer: str) -> int:
    """
    Lock a consumer's offset row until the caller's transaction ends.

    The row is touched with an UPDATE, which holds its row lock on
    PostgreSQL and the database write lock on SQLite. Writers that hold the
    lock commit one after another, so the rows they insert become visible in
    primary key order. Returns the stored position.
    """
    await session.execute(
        update(ConsumerOffset)
        .where(ConsumerOffset.consumer == consumer)
        .values(updated_at=utcnow())
    )
    position = await session.scalar(
        select(ConsumerOffset.position).where(ConsumerOffset.consumer == consumer)
    )
    return int(position or 0)


async def store_offset(session: AsyncSession, consumer: str, position: int) -> None:
    """Advance a consumer offset inside the caller's transaction; never moves backwards"""
    row = await session.get(ConsumerOffset, consumer)
    if row is None:
        session.add(ConsumerOffset(consumer=consumer, position=position, updated_at=utcnow()))
    elif position > row.position:
        row.position = position
        row.updated_at = utcnow()
