"""
Serving Module
"""
from .cache import CacheManager, close_redis, get_redis, init_redis, snapshot_cache
from .query import (
    CSV_COLUMNS,
    AnalyticsService,
    QueryFilters,
    QueryService,
    SnapshotResponse,
    export_filename,
    snapshot_csv,
)

__all__ = [
    "CacheManager",
    "close_redis",
    "get_redis",
    "init_redis",
    "snapshot_cache",
    "CSV_COLUMNS",
    "AnalyticsService",
    "QueryFilters",
    "QueryService",
    "SnapshotResponse",
    "export_filename",
    "snapshot_csv",
]
