"""
Periodic capture admission.

Each tick:
1. fails processing requests whose heartbeat (updated_at) went stale
2. starts cascade delete chains for requests marked for deletion
3. claims the oldest pending request, if none is processing, and enqueues
   its discovery step
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from uuid import UUID

from apps.collector.jobs.cascade_delete import CASCADE_DELETE_STEP
from apps.collector.jobs.discovery import DISCOVERY_STEP
from apps.collector.jobs.step_queue import StepQueue
from packages.capture.models import STALE_PROCESSING_MESSAGE, now_ms
from packages.capture.settings import settings

logger = logging.getLogger(__name__)


async def fail_stale_requests(store, timeout_seconds: Optional[int] = None) -> list[dict]:
    timeout_seconds = timeout_seconds or settings.stale_processing_timeout_seconds
    cutoff = now_ms() - timeout_seconds * 1000
    stale = await asyncio.to_thread(
        store.requests.fail_stale_processing, cutoff, STALE_PROCESSING_MESSAGE,
    )
    for row in stale:
        logger.warning(f"Request {row['id']} timed out in processing; marked failed")
    return stale


async def schedule_deletions(queue: StepQueue, store) -> int:
    rows = await asyncio.to_thread(store.requests.list_deleting)
    started = 0
    for row in rows:
        if queue.is_queued(CASCADE_DELETE_STEP, request_id=row["id"]):
            continue
        queue.enqueue(CASCADE_DELETE_STEP, request_id=row["id"])
        started += 1
    if started:
        logger.info(f"Started {started} cascade delete(s)")
    return started


async def check_pending_captures(queue: StepQueue, store) -> Optional[UUID]:
    """
    Run one admission tick.

    Returns:
        Id of the request promoted to processing, or None
    """
    await fail_stale_requests(store)
    await schedule_deletions(queue, store)

    claimed = await asyncio.to_thread(store.requests.claim_next_pending)
    if claimed is None:
        logger.debug("No pending capture admitted")
        return None

    request_id = claimed["id"]
    logger.info(f"Admitted capture request {request_id} ({claimed.get('name') or 'unnamed'})")
    queue.enqueue(DISCOVERY_STEP, request_id=request_id)
    return request_id
