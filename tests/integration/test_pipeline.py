"""
Integration Tests - Derivation, Refresh and Pipeline Runs
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from booking_cdc.analytics.aggregation import AggregationWindow, aggregate
from booking_cdc.analytics.refresher import AnalyticsRefresher, RefreshMode
from booking_cdc.database.connection import get_db
from booking_cdc.database.models import AnalyticsSnapshotRow, DerivedBooking
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.scheduling.job_log import JobRunLog, JobStatus
from booking_cdc.scheduling.pipeline import DERIVE_JOB, REFRESH_JOB, CDCPipeline
from booking_cdc.transformation.derivation import derive
from booking_cdc.transformation.processor import DerivationProcessor

pytestmark = pytest.mark.usefixtures("database")

MARCH = AggregationWindow(datetime(2024, 3, 1), datetime(2024, 4, 1))


@pytest.fixture
def buffer():
    return IngestionBuffer(lock_stripes=8)


@pytest.fixture
def processor(buffer):
    return DerivationProcessor(buffer=buffer, batch_size=3, max_workers=2, reorder_window=5)


async def _append_m1(buffer, make_event, ids=range(1, 6)):
    prices = {1: "10", 2: "15", 3: "20", 4: "25", 5: "8"}
    for i in ids:
        await buffer.append(make_event(
            f"B{i}",
            status="CANCELLED" if i == 4 else "BOOKED",
            ticket_price=prices[i],
            change_timestamp=datetime(2024, 3, 1, 12, i),
        ))


async def _derived_count() -> int:
    async with get_db() as session:
        return await session.scalar(select(func.count()).select_from(DerivedBooking))


class TestDerivationProcessor:
    """Tests for exactly-once derivation"""

    async def test_derives_every_buffered_event(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event)

        result = await processor.run_once()

        assert result.events_read == 5
        assert result.records_derived == 5
        assert result.valid_records == 5
        assert result.end_offset == await buffer.latest_sequence()
        assert result.quality["status"] == "passed"
        assert await _derived_count() == 5

    async def test_rerun_is_a_noop(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event)
        await processor.run_once()

        again = await processor.run_once()

        assert again.records_derived == 0
        assert again.already_derived == 5
        assert await _derived_count() == 5

    async def test_picks_up_new_events_only(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event, ids=range(1, 4))
        await processor.run_once()
        await _append_m1(buffer, make_event, ids=range(4, 6))

        result = await processor.run_once()

        assert result.records_derived == 2
        assert await _derived_count() == 5
        assert await buffer.get_offset(processor.consumer) == await buffer.latest_sequence()

    async def test_invalid_events_are_kept_for_audit(self, buffer, processor, make_event):
        await buffer.append(make_event("B1", ticket_count=0))

        result = await processor.run_once()

        assert result.invalid_records == 1
        async with get_db() as session:
            row = await session.scalar(select(DerivedBooking))
        assert row.is_valid_booking is False

    async def test_concurrent_runs_derive_once(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event)

        results = await asyncio.gather(processor.run_once(), processor.run_once())

        assert sum(r.records_derived for r in results) == 5
        assert await _derived_count() == 5

    async def test_separate_processors_derive_once(self, buffer, make_event):
        await _append_m1(buffer, make_event)
        first = DerivationProcessor(buffer=buffer, batch_size=2)
        second = DerivationProcessor(buffer=IngestionBuffer(lock_stripes=4), batch_size=2)

        results = await asyncio.gather(first.run_once(), second.run_once())

        assert sum(r.records_derived for r in results) == 5
        assert await _derived_count() == 5

    async def test_page_commit_skips_records_written_elsewhere(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event)
        await processor.run_once()
        events = [e async for e in buffer.read_since(0)]

        written = await DerivationProcessor(buffer=buffer)._commit_page(
            [derive(e) for e in events], events[-1].sequence
        )

        assert written == []
        assert await _derived_count() == 5

    async def test_oversized_fields_become_invalid_records(self, buffer, processor, make_event):
        await buffer.append(make_event(
            "B" * 300, movie_id="M" * 300, status="X" * 100, ticket_count=10**20, ticket_price="1e12",
        ))

        result = await processor.run_once()

        assert result.invalid_records == 1
        async with get_db() as session:
            row = await session.scalar(select(DerivedBooking))
        assert row.booking_id == "B" * 300
        assert row.ticket_count is None
        assert row.is_valid_booking is False

    async def test_quality_profile_covers_every_page(self, buffer, processor, make_event):
        await buffer.append(make_event("B0", ticket_count=0, change_timestamp=datetime(2024, 3, 1, 11)))
        await _append_m1(buffer, make_event)

        result = await processor.run_once()

        failures = {f["name"]: f["failed_rows"] for f in result.quality["failures"]}
        assert result.quality["status"] == "partial"
        assert failures["range_ticket_count"] == 1

    def test_negative_reorder_window_is_rejected(self, buffer):
        with pytest.raises(ValueError):
            DerivationProcessor(buffer=buffer, reorder_window=-1)


class TestAnalyticsRefresher:
    """Tests for cursor-gated snapshot refresh"""

    async def test_full_then_unchanged_then_incremental(self, buffer, processor, make_event, m1_records):
        refresher = AnalyticsRefresher(page_size=2)
        await _append_m1(buffer, make_event, ids=range(1, 4))
        await processor.run_once()

        first = await refresher.refresh(MARCH)
        assert first.mode == RefreshMode.FULL
        assert first.records_folded == 3

        second = await refresher.refresh(MARCH)
        assert second.mode == RefreshMode.UNCHANGED
        assert second.snapshot == first.snapshot

        await _append_m1(buffer, make_event, ids=range(4, 6))
        await processor.run_once()

        third = await refresher.refresh(MARCH)
        assert third.mode == RefreshMode.INCREMENTAL
        assert third.records_folded == 2
        assert third.snapshot.active_revenue == Decimal("53.00")
        assert third.snapshot.lost_revenue == Decimal("25.00")
        assert third.snapshot.cancellation_rate == 0.2

        expected = aggregate(m1_records, window=MARCH, as_of=third.snapshot.as_of_sequence)
        assert third.snapshot == expected

    async def test_force_recomputes_from_scratch(self, buffer, processor, make_event):
        refresher = AnalyticsRefresher()
        await _append_m1(buffer, make_event)
        await processor.run_once()
        await refresher.refresh(MARCH)

        forced = await refresher.refresh(MARCH, force=True)

        assert forced.mode == RefreshMode.FULL
        assert forced.records_folded == 5

    async def test_empty_window_snapshot(self, buffer, processor, make_event):
        await _append_m1(buffer, make_event)
        await processor.run_once()
        april = AggregationWindow(datetime(2024, 4, 1), datetime(2024, 5, 1))

        outcome = await AnalyticsRefresher().refresh(april)

        assert outcome.snapshot.total_records == 0
        assert outcome.snapshot.cancellation_rate == 0.0

    async def test_snapshots_are_appended(self, buffer, processor, make_event):
        refresher = AnalyticsRefresher()
        await _append_m1(buffer, make_event)
        await processor.run_once()

        await refresher.refresh(MARCH)
        await refresher.refresh(MARCH, force=True)

        async with get_db() as session:
            rows = await session.scalar(select(func.count()).select_from(AnalyticsSnapshotRow))
        assert rows == 2
        assert (await refresher.latest_snapshot(MARCH)).valid_bookings == 5

    async def test_run_once_defaults_to_trailing_window(self):
        snapshot = await AnalyticsRefresher().run_once()

        assert snapshot.window_end - snapshot.window_start == timedelta(days=30)


class TestJobRunLog:
    """Tests for the job run log"""

    async def test_start_and_finish(self):
        log = JobRunLog()
        run_id = await log.start("derive_records")
        await log.finish(run_id, JobStatus.SUCCEEDED, records_processed=3, detail={"events_read": 3})

        [run] = await log.recent()

        assert run.status == JobStatus.SUCCEEDED
        assert run.records_processed == 3
        assert run.detail == {"events_read": 3}
        assert run.finished_at is not None

    async def test_finish_unknown_run(self):
        with pytest.raises(LookupError):
            await JobRunLog().finish(999, JobStatus.FAILED)

    async def test_recent_newest_first_and_filtered(self):
        log = JobRunLog()
        for name in ("a", "b", "a"):
            await log.start(name)

        runs = await log.recent()
        assert [r.id for r in runs] == sorted((r.id for r in runs), reverse=True)
        assert len(await log.recent(job_name="a")) == 2


class TestCDCPipeline:
    """Tests for the derive-then-aggregate tick"""

    async def test_run_once_records_both_jobs(self, buffer, processor, make_event):
        pipeline = CDCPipeline(processor=processor, refresher=AnalyticsRefresher())
        await _append_m1(buffer, make_event)

        result = await pipeline.run_once(MARCH)

        assert result.derivation.records_derived == 5
        assert result.refresh.mode == RefreshMode.FULL
        assert result.refresh.snapshot.active_revenue == Decimal("53.00")
        assert result.to_dict()["window"] == MARCH.key

        runs = await pipeline.job_log.recent()
        assert {r.job_name for r in runs} == {DERIVE_JOB, REFRESH_JOB}
        assert all(r.status == JobStatus.SUCCEEDED for r in runs)

    async def test_repeated_ticks_change_nothing(self, buffer, processor, make_event):
        pipeline = CDCPipeline(processor=processor, refresher=AnalyticsRefresher())
        await _append_m1(buffer, make_event)
        first = await pipeline.run_once(MARCH)

        second = await pipeline.run_once(MARCH)

        assert second.derivation.records_derived == 0
        assert second.refresh.mode == RefreshMode.UNCHANGED
        assert second.refresh.snapshot == first.refresh.snapshot

    async def test_failed_step_is_recorded(self, processor):
        class BrokenRefresher(AnalyticsRefresher):
            async def refresh(self, window, force=False):
                raise RuntimeError("boom")

        pipeline = CDCPipeline(processor=processor, refresher=BrokenRefresher())

        with pytest.raises(RuntimeError):
            await pipeline.run_once(MARCH)

        [failed] = await pipeline.job_log.recent(job_name=REFRESH_JOB)
        assert failed.status == JobStatus.FAILED
        assert "boom" in failed.error
