"""Concurrent, idempotent collection of paginated API data into raw tables."""

from .collector import ApiCollector, ApiCollectorArgs
from .errors import CollectorError, FetchError, ParseError, PersistenceError, SourceQueryError
from .iterator import BatchedCursorIterator, open_batched_cursor
from .models import InputBatch, Pager, RawRecord, RequestData, RunStats

__all__ = [
    "ApiCollector",
    "ApiCollectorArgs",
    "BatchedCursorIterator",
    "CollectorError",
    "FetchError",
    "InputBatch",
    "Pager",
    "ParseError",
    "PersistenceError",
    "RawRecord",
    "RequestData",
    "RunStats",
    "SourceQueryError",
    "open_batched_cursor",
]
