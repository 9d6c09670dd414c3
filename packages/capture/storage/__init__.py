# storage package
from packages.capture.storage.db import DatabasePool, get_db_pool, reset_db_pool
from packages.capture.storage.queries import (
    CaptureQueries,
    CaptureStore,
    EventQueries,
    MarketQueries,
    TagQueries,
    get_capture_store,
)
from packages.capture.storage.schema import apply_schema

__all__ = [
    "DatabasePool",
    "get_db_pool",
    "reset_db_pool",
    "apply_schema",
    "CaptureQueries",
    "EventQueries",
    "MarketQueries",
    "TagQueries",
    "CaptureStore",
    "get_capture_store",
]
