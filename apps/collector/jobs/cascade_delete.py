"""
Cascade delete of a capture request and everything it produced.

Runs as its own step chain: each step removes one bounded batch from the
first child table that still has rows for the request, then continues.
Once every child table is empty the request row itself is removed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apps.collector.jobs.step_queue import Continue, Done, StepResult
from packages.capture.settings import settings
from packages.capture.storage.queries import CASCADE_TABLES

logger = logging.getLogger(__name__)

CASCADE_DELETE_STEP = "cascade_delete"


async def cascade_delete(
    request_id,
    store,
    client=None,
    batch_size: Optional[int] = None,
) -> StepResult:
    """Delete one batch of a request's rows; finish with the request itself."""
    batch_size = batch_size or settings.delete_batch_size

    for table in CASCADE_TABLES:
        deleted = await asyncio.to_thread(
            store.requests.delete_request_rows, table, request_id, batch_size,
        )
        if deleted:
            logger.debug(f"Deleted {deleted} {table} rows for request {request_id}")
            return Continue(CASCADE_DELETE_STEP, {"request_id": request_id})

    removed = await asyncio.to_thread(store.requests.delete_request, request_id)
    if removed:
        logger.info(f"Deleted capture request {request_id}")
    return Done(reason="deleted")
