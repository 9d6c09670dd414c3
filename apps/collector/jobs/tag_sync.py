"""
Tag cache refresh - pulls the full Gamma tag list and upserts it.
Runs daily at midnight UTC.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apps.collector.adapters.polymarket import PolymarketClient, normalize_tags
from apps.collector.jobs.step_queue import Done, StepResult
from packages.capture.settings import settings

logger = logging.getLogger(__name__)

TAG_SYNC_STEP = "tag_sync"


def seconds_until_next_midnight_utc(now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    next_midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (next_midnight - now).total_seconds()


async def fetch_all_tags(client: PolymarketClient) -> list[dict]:
    """Page /tags until an empty page."""
    tags: list[dict] = []
    offset = 0
    limit = settings.tag_page_size

    while True:
        page = await client.fetch_tags(limit, offset)
        if not page:
            break
        tags.extend(normalize_tags(page))
        offset += limit
        await client.throttle(settings.api_delay_ms)

    return tags


async def sync_tags(store, client: PolymarketClient) -> StepResult:
    """Refresh the cached tag list; returns Done with the synced count."""
    tags = await fetch_all_tags(client)
    logger.info(f"Fetched {len(tags)} tags from Polymarket")

    batch_size = settings.tag_save_batch_size
    for i in range(0, len(tags), batch_size):
        batch = tags[i:i + batch_size]
        await asyncio.to_thread(store.tags.upsert_tags, batch)
        logger.debug(f"Saved tags {i + 1} to {i + len(batch)}")

    logger.info(f"Synced {len(tags)} tags")
    return Done(reason=f"{len(tags)} tags")
