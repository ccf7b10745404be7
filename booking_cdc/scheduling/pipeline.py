"""
CDC Pipeline Runner

One scheduled tick of the pipeline: derive newly buffered events, then
refresh the analytics snapshot. Each step is recorded in the job run log.

A tick may be retried or fired concurrently by an external scheduler:
buffered events are deduplicated, derivation skips events it already
handled, and the refresh is gated on the derived-record cut, so repeated
ticks with no new input change nothing.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from booking_cdc.analytics.aggregation import AggregationWindow
from booking_cdc.analytics.refresher import AnalyticsRefresher, RefreshOutcome
from booking_cdc.config import get_settings
from booking_cdc.errors import PipelineRunError
from booking_cdc.scheduling.job_log import JobRunLog, JobStatus
from booking_cdc.schemas import utcnow
from booking_cdc.transformation.processor import DerivationProcessor, DerivationRunResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DERIVE_JOB = "derive_records"
REFRESH_JOB = "refresh_snapshot"


@dataclass
class PipelineRunResult:
    derivation: DerivationRunResult
    refresh: RefreshOutcome
    window_key: str
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window_key,
            "derivation": self.derivation.to_dict(),
            "refresh": {
                "mode": self.refresh.mode,
                "records_folded": self.refresh.records_folded,
                "as_of_sequence": self.refresh.snapshot.as_of_sequence,
                "valid_bookings": self.refresh.snapshot.valid_bookings,
            },
            "duration_seconds": round(self.duration_seconds, 4),
        }


class CDCPipeline:
    """
    Example:
        pipeline = CDCPipeline()
        result = await pipeline.run_once()
    """

    def __init__(
        self,
        processor: Optional[DerivationProcessor] = None,
        refresher: Optional[AnalyticsRefresher] = None,
        job_log: Optional[JobRunLog] = None,
    ):
        self.processor = processor or DerivationProcessor()
        self.refresher = refresher or AnalyticsRefresher()
        self.job_log = job_log or JobRunLog()

    async def _tracked(
        self,
        job_name: str,
        step: Callable[[], Awaitable[Tuple[T, int, Dict[str, Any]]]],
    ) -> T:
        try:
            run_id = await self.job_log.start(job_name)
        except SQLAlchemyError as exc:
            raise PipelineRunError(job_name, None, str(exc)) from exc

        try:
            outcome, processed, detail = await step()
        except Exception as exc:
            await self._record_failure(run_id, exc)
            if isinstance(exc, SQLAlchemyError):
                raise PipelineRunError(job_name, run_id, str(exc)) from exc
            raise

        await self.job_log.finish(run_id, JobStatus.SUCCEEDED, processed, detail)
        return outcome

    async def _record_failure(self, run_id: int, exc: Exception) -> None:
        try:
            await self.job_log.finish(run_id, JobStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
        except SQLAlchemyError as log_exc:
            logger.warning("Could not record job failure", run_id=run_id, error=str(log_exc))

    async def derive(self) -> DerivationRunResult:
        async def step():
            result = await self.processor.run_once()
            return result, result.records_derived, result.to_dict()

        return await self._tracked(DERIVE_JOB, step)

    async def refresh(self, window: AggregationWindow, force: bool = False) -> RefreshOutcome:
        async def step():
            outcome = await self.refresher.refresh(window, force=force)
            detail = {
                "window": window.key,
                "mode": outcome.mode,
                "as_of_sequence": outcome.snapshot.as_of_sequence,
            }
            return outcome, outcome.records_folded, detail

        return await self._tracked(REFRESH_JOB, step)

    async def run_once(self, window: Optional[AggregationWindow] = None) -> PipelineRunResult:
        """
        Run derivation then aggregation once.

        Raises:
            PipelineRunError: a database failure interrupted a step; the
                failed run is recorded and the tick can be retried
        """
        if window is None:
            window = AggregationWindow.trailing_days(get_settings().pipeline.default_window_days, utcnow())

        started = utcnow()
        derivation = await self.derive()
        refresh = await self.refresh(window)

        result = PipelineRunResult(
            derivation=derivation,
            refresh=refresh,
            window_key=window.key,
            duration_seconds=(utcnow() - started).total_seconds(),
        )
        logger.info("Pipeline tick completed", **result.to_dict())
        return result
