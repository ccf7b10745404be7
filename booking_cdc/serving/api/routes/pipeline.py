"""
Pipeline Control Endpoints

Trigger for external schedulers and the job run history.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query

from booking_cdc.analytics.aggregation import AggregationWindow
from booking_cdc.scheduling.job_log import JobRunInfo, JobRunLog
from booking_cdc.scheduling.pipeline import CDCPipeline
from booking_cdc.serving.api.dependencies import analytics_window, get_job_log, get_pipeline
from booking_cdc.serving.cache import snapshot_cache

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/run")
async def run_pipeline(
    window: AggregationWindow = Depends(analytics_window),
    pipeline: CDCPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Run one derive-then-aggregate tick; safe to call repeatedly"""
    result = await pipeline.run_once(window)
    if result.derivation.records_derived:
        await snapshot_cache.invalidate_all()
    return result.to_dict()


@router.get("/runs", response_model=List[JobRunInfo])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    job_name: Optional[str] = Query(None),
    job_log: JobRunLog = Depends(get_job_log),
) -> List[JobRunInfo]:
    """Most recent job runs first"""
    return await job_log.recent(limit=limit, job_name=job_name)
