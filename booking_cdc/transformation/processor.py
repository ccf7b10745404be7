"""
Derivation Processor

Incremental consumer that turns buffered change events into derived
records. Each run:

1. Reads events after the stored offset, re-reading a bounded tail
   (``reorder_window``) to pick up events that committed late
2. Skips events that already have a derived record
3. Derives the rest on a worker pool
4. Writes derived rows and advances the offset in one transaction per page,
   holding a row lock on the consumer offset so writers in other processes
   commit in turn

Running it repeatedly with no new events is a no-op, which makes it safe
for scheduler retries.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy import select

from booking_cdc.config import get_settings
from booking_cdc.database.connection import get_db
from booking_cdc.database.models import DerivedBooking
from booking_cdc.ingestion.buffer import IngestionBuffer, lock_offset, store_offset
from booking_cdc.quality.validators import ValidationResult, profile_records
from booking_cdc.schemas import ChangeEvent, DerivedRecord, utcnow
from booking_cdc.transformation.derivation import derive

logger = structlog.get_logger(__name__)

DERIVED_RECORDS = Counter(
    "booking_cdc_derived_records_total",
    "Derived records written",
    ["valid"],
)

DERIVATION_RUN_TIME = Histogram(
    "booking_cdc_derivation_run_seconds",
    "Time spent in a derivation run",
)

DERIVATION_CONSUMER = "derivation"


@dataclass
class DerivationRunResult:
    """Result of one derivation run"""
    events_read: int = 0
    records_derived: int = 0
    already_derived: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    start_offset: int = 0
    end_offset: int = 0
    duration_seconds: float = 0.0
    quality: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events_read": self.events_read,
            "records_derived": self.records_derived,
            "already_derived": self.already_derived,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "duration_seconds": round(self.duration_seconds, 4),
            "quality": self.quality,
        }


class DerivationProcessor:
    """
    Exactly-once derivation of buffered change events.

    Only one run executes at a time per processor; concurrent callers wait
    for the active run and then find nothing left to do. Across processes,
    page commits are serialised on the offset row, so derived record ids
    become visible in increasing order.

    Example:
        processor = DerivationProcessor(buffer)
        result = await processor.run_once()
    """

    def __init__(
        self,
        buffer: Optional[IngestionBuffer] = None,
        session_scope: Callable = get_db,
        consumer: str = DERIVATION_CONSUMER,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        reorder_window: Optional[int] = None,
        strict_status: Optional[bool] = None,
    ):
        pipeline = get_settings().pipeline
        self.buffer = buffer or IngestionBuffer(session_scope=session_scope)
        self.consumer = consumer
        self.batch_size = batch_size or pipeline.derivation_batch_size
        self.max_workers = max_workers or pipeline.derivation_workers
        self.reorder_window = pipeline.reorder_window if reorder_window is None else reorder_window
        if self.reorder_window < 0:
            raise ValueError("reorder_window must be at least 0")
        self.strict_status = pipeline.strict_status_validation if strict_status is None else strict_status
        self._session_scope = session_scope
        self._run_lock = asyncio.Lock()

    async def _already_derived(self, sequences: List[int]) -> set:
        async with self._session_scope() as session:
            rows = await session.execute(
                select(DerivedBooking.event_sequence).where(DerivedBooking.event_sequence.in_(sequences))
            )
            return set(rows.scalars().all())

    async def _derive_page(self, executor: ThreadPoolExecutor, events: List[ChangeEvent]) -> List[DerivedRecord]:
        loop = asyncio.get_running_loop()
        derive_one = partial(derive, strict_status=self.strict_status)
        return list(await asyncio.gather(*(
            loop.run_in_executor(executor, derive_one, event) for event in events
        )))

    async def _commit_page(self, records: List[DerivedRecord], page_end: int) -> List[DerivedRecord]:
        """Write a page under the offset row lock; returns the records actually written"""
        async with self._session_scope() as session:
            await lock_offset(session, self.consumer)
            if records:
                # another process may have derived these while we held no lock
                taken = await session.execute(
                    select(DerivedBooking.event_sequence)
                    .where(DerivedBooking.event_sequence.in_([r.event_sequence for r in records]))
                )
                done = set(taken.scalars().all())
                records = [r for r in records if r.event_sequence not in done]
            session.add_all(DerivedBooking.from_record(r) for r in records)
            await store_offset(session, self.consumer, page_end)
        return records

    async def run_once(self) -> DerivationRunResult:
        """Derive every buffered event that has no derived record yet"""
        async with self._run_lock:
            started = utcnow()
            result = DerivationRunResult()
            profile: Optional[ValidationResult] = None

            await self.buffer.ensure_offset(self.consumer)
            offset = await self.buffer.get_offset(self.consumer)
            result.start_offset = offset
            result.end_offset = offset
            read_from = max(0, offset - self.reorder_window)

            logger.info(
                "Derivation run started",
                consumer=self.consumer,
                offset=offset,
                read_from=read_from,
            )

            page: List[ChangeEvent] = []
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="derive") as executor:
                async for event in self.buffer.read_since(read_from, batch_size=self.batch_size):
                    page.append(event)
                    if len(page) >= self.batch_size:
                        profile = self._merge_profile(profile, await self._process_page(executor, page, result))
                        page = []
                if page:
                    profile = self._merge_profile(profile, await self._process_page(executor, page, result))

            if profile is not None:
                result.quality = profile.summary()

            result.duration_seconds = (utcnow() - started).total_seconds()
            DERIVATION_RUN_TIME.observe(result.duration_seconds)

            logger.info(
                "Derivation run completed",
                consumer=self.consumer,
                events_read=result.events_read,
                records_derived=result.records_derived,
                already_derived=result.already_derived,
                invalid_records=result.invalid_records,
                end_offset=result.end_offset,
            )
            return result

    @staticmethod
    def _merge_profile(
        profile: Optional[ValidationResult],
        records: List[DerivedRecord],
    ) -> Optional[ValidationResult]:
        if not records:
            return profile
        page_profile = profile_records(records)
        return page_profile if profile is None else profile.merge(page_profile)

    async def _process_page(
        self,
        executor: ThreadPoolExecutor,
        page: List[ChangeEvent],
        result: DerivationRunResult,
    ) -> List[DerivedRecord]:
        result.events_read += len(page)
        done = await self._already_derived([e.sequence for e in page])
        pending = [e for e in page if e.sequence not in done]
        result.already_derived += len(page) - len(pending)

        derived = await self._derive_page(executor, pending) if pending else []
        page_end = page[-1].sequence
        records = await self._commit_page(derived, page_end)
        result.already_derived += len(derived) - len(records)
        result.end_offset = max(result.end_offset, page_end)

        valid = sum(1 for r in records if r.is_valid_booking)
        result.records_derived += len(records)
        result.valid_records += valid
        result.invalid_records += len(records) - valid
        if valid:
            DERIVED_RECORDS.labels(valid="true").inc(valid)
        if len(records) - valid:
            DERIVED_RECORDS.labels(valid="false").inc(len(records) - valid)
        return records
