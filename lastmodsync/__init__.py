from lastmodsync.query import BEGINNING_OF_TIME, Filter, LastModified, Query, Sort
from lastmodsync.sync import MergeCycle, ObservingCursor, Synchronizer
from lastmodsync.poll import Poller
from lastmodsync.watermark import resolve_watermark

__all__ = [
    "BEGINNING_OF_TIME",
    "Filter",
    "LastModified",
    "MergeCycle",
    "ObservingCursor",
    "Poller",
    "Query",
    "Sort",
    "Synchronizer",
    "resolve_watermark",
]
