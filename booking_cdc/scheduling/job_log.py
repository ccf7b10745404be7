"""
Job Run Log

Inspectable history of scheduled pipeline runs stored in ``job_runs``.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from booking_cdc.database.connection import get_db
from booking_cdc.database.models import JobRun
from booking_cdc.schemas import utcnow

logger = structlog.get_logger(__name__)


class JobStatus:
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobRunInfo(BaseModel):
    """Read model of one job run"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_name: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    records_processed: int = 0
    detail: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class JobRunLog:
    """
    Example:
        log = JobRunLog()
        run_id = await log.start("derive_records")
        await log.finish(run_id, JobStatus.SUCCEEDED, records_processed=120)
    """

    def __init__(self, session_scope: Callable = get_db):
        self._session_scope = session_scope

    async def start(self, job_name: str) -> int:
        async with self._session_scope() as session:
            run = JobRun(job_name=job_name, status=JobStatus.RUNNING, started_at=utcnow())
            session.add(run)
            await session.flush()
            run_id = run.id
        logger.info("Job started", job_name=job_name, run_id=run_id)
        return run_id

    async def finish(
        self,
        run_id: int,
        status: str,
        records_processed: int = 0,
        detail: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._session_scope() as session:
            run = await session.get(JobRun, run_id)
            if run is None:
                raise LookupError(f"Unknown job run: {run_id}")
            run.status = status
            run.finished_at = utcnow()
            run.records_processed = records_processed
            run.detail = detail
            run.error = error
            job_name = run.job_name

        log = logger.error if status == JobStatus.FAILED else logger.info
        log(
            "Job finished",
            job_name=job_name,
            run_id=run_id,
            status=status,
            records_processed=records_processed,
            error=error,
        )

    async def recent(self, limit: int = 20, job_name: Optional[str] = None) -> List[JobRunInfo]:
        """Most recent runs first"""
        stmt = select(JobRun).order_by(JobRun.id.desc()).limit(limit)
        if job_name:
            stmt = stmt.where(JobRun.job_name == job_name)
        async with self._session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [JobRunInfo.model_validate(row) for row in rows]
