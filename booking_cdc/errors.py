"""
Exception Hierarchy

Typed, recoverable conditions surfaced by the CDC pipeline. Field-level
data problems never raise; they are absorbed into ``is_valid_booking``.
"""

from typing import Any, Dict, Optional

__all__ = [
    "BookingCDCError",
    "DuplicateEventError",
    "MalformedEnvelopeError",
    "AggregationTimeoutError",
    "PipelineRunError",
]


class BookingCDCError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging and API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class DuplicateEventError(BookingCDCError):
    """A change event with the same dedup key is already buffered."""

    def __init__(self, dedup_key: str) -> None:
        self.dedup_key = dedup_key
        super().__init__(
            f"Change event already ingested: {dedup_key}",
            details={"dedup_key": dedup_key},
        )


class MalformedEnvelopeError(BookingCDCError):
    """The source envelope has no interpretable operation or timestamp."""


class AggregationTimeoutError(BookingCDCError):
    """Re-aggregation exceeded its deadline and no stored snapshot exists."""

    def __init__(self, timeout_seconds: float, window_key: str) -> None:
        self.timeout_seconds = timeout_seconds
        self.window_key = window_key
        super().__init__(
            f"Aggregation did not finish within {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds, "window": window_key},
        )


class PipelineRunError(BookingCDCError):
    """A scheduled pipeline step failed; safe to retry."""

    def __init__(self, job_name: str, run_id: Optional[int], cause: str) -> None:
        self.job_name = job_name
        self.run_id = run_id
        super().__init__(
            f"Pipeline job '{job_name}' failed: {cause}",
            details={"job_name": job_name, "run_id": run_id},
        )
