"""
Analytics Module
"""
from .aggregation import AggregationWindow, SnapshotAccumulator, aggregate
from .refresher import AnalyticsRefresher, RefreshMode, RefreshOutcome

__all__ = [
    "AggregationWindow",
    "SnapshotAccumulator",
    "aggregate",
    "AnalyticsRefresher",
    "RefreshMode",
    "RefreshOutcome",
]
