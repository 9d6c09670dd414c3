"""
Polymarket Capture Collector - Main Entry Point

Runs the step worker that drives capture pipelines, plus the periodic
triggers that feed it: pending-capture admission every 30 seconds and the
tag cache refresh daily at midnight UTC.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

import psycopg

from apps.collector.adapters.polymarket import (
    PolymarketClient,
    close_polymarket_client,
    get_polymarket_client,
)
from apps.collector.jobs.batch_processor import (
    EVENT_BATCH_STEP,
    MARKET_BATCH_STEP,
    process_event_batch,
    process_market_batch,
)
from apps.collector.jobs.capture_scheduler import check_pending_captures
from apps.collector.jobs.cascade_delete import CASCADE_DELETE_STEP, cascade_delete
from apps.collector.jobs.discovery import DISCOVERY_STEP, run_discovery
from apps.collector.jobs.step_queue import StepQueue
from apps.collector.jobs.tag_sync import TAG_SYNC_STEP, seconds_until_next_midnight_utc, sync_tags
from packages.capture.settings import settings
from packages.capture.storage import apply_schema, get_capture_store, get_db_pool, reset_db_pool

logger = logging.getLogger("collector")


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class Shutdown:
    """Signal-driven shutdown flag."""
    def __init__(self) -> None:
        self._stop = asyncio.Event()

    def request(self) -> None:
        self._stop.set()

    async def wait(self) -> None:
        await self._stop.wait()

    @property
    def event(self) -> asyncio.Event:
        return self._stop

    @property
    def is_set(self) -> bool:
        return self._stop.is_set()


def build_step_queue(store=None, client: Optional[PolymarketClient] = None) -> StepQueue:
    """Queue with every pipeline step registered against one store and client."""
    queue = StepQueue(context={
        "store": store or get_capture_store(),
        "client": client or get_polymarket_client(),
    })
    queue.register(DISCOVERY_STEP, run_discovery)
    queue.register(MARKET_BATCH_STEP, process_market_batch)
    queue.register(EVENT_BATCH_STEP, process_event_batch)
    queue.register(CASCADE_DELETE_STEP, cascade_delete)
    queue.register(TAG_SYNC_STEP, sync_tags)
    return queue


async def run_capture_admission_loop(shutdown: Shutdown, queue: StepQueue) -> None:
    """Background loop admitting pending capture requests."""
    interval = settings.capture_poll_interval_seconds
    logger.info(f"Capture admission loop starting (interval={interval}s)")
    while not shutdown.is_set:
        try:
            await check_pending_captures(queue, queue.context["store"])
        except Exception:
            logger.exception("Error in capture admission loop")

        try:
            await asyncio.wait_for(shutdown.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            continue


async def run_tag_sync_loop(shutdown: Shutdown, queue: StepQueue) -> None:
    """Enqueue a tag sync every day at 00:00 UTC."""
    logger.info("Tag sync loop starting (daily at 00:00 UTC)")
    while not shutdown.is_set:
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=seconds_until_next_midnight_utc())
            break
        except asyncio.TimeoutError:
            pass
        if not queue.is_queued(TAG_SYNC_STEP):
            queue.enqueue(TAG_SYNC_STEP)


async def _amain() -> None:
    _configure_logging()
    logger.info("Starting capture collector…")

    # Initialize DB pool early (fails fast)
    db = get_db_pool()
    try:
        apply_schema(db)
    except psycopg.Error:
        logger.exception("Database connectivity check failed.")
        sys.exit(1)

    shutdown = Shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.request)
        except NotImplementedError:
            # Windows / some runtimes
            signal.signal(sig, lambda *_: shutdown.request())

    queue = build_step_queue()

    tasks = [
        asyncio.create_task(queue.run_forever(shutdown.event)),
        asyncio.create_task(run_capture_admission_loop(shutdown, queue)),
        asyncio.create_task(run_tag_sync_loop(shutdown, queue)),
    ]

    try:
        await shutdown.wait()
    finally:
        logger.info("Shutting down…")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_polymarket_client()
        reset_db_pool()
        logger.info("Collector stopped.")


def main() -> None:
    asyncio.run(_amain())


if __name__ == "__main__":
    main()
