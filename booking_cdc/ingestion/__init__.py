"""
Change Ingestion Module
"""
from .batch_loader import BatchFileConfig, BatchLoader, FileFormat, LoadResult, LoadStatus
from .buffer import AppendReport, IngestionBuffer
from .events import change_event_from_envelope, parse_operation
from .stream_consumer import ConsumeOutcome, StreamConsumer

__all__ = [
    "BatchFileConfig",
    "BatchLoader",
    "FileFormat",
    "LoadResult",
    "LoadStatus",
    "AppendReport",
    "IngestionBuffer",
    "change_event_from_envelope",
    "parse_operation",
    "ConsumeOutcome",
    "StreamConsumer",
]
