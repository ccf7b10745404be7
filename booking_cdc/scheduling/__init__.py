"""
Scheduling Module
"""
from .job_log import JobRunInfo, JobRunLog, JobStatus
from .pipeline import CDCPipeline, PipelineRunResult

__all__ = [
    "JobRunInfo",
    "JobRunLog",
    "JobStatus",
    "CDCPipeline",
    "PipelineRunResult",
]
