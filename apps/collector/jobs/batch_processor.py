"""
Batch processing steps - fetch price history for a request's discovered
markets (or events) one fixed-size slice at a time.

Each step handles ``offset .. offset + batch size`` and continues at the next
offset; an empty slice finalizes the request. Per-token failures are logged
and skipped, per-entity failures count towards ``progress.failed``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from uuid import UUID

from apps.collector.adapters.polymarket import PolymarketClient, normalize_market
from apps.collector.jobs.step_queue import Continue, Done, StepResult
from packages.capture.analytics.downsampling import downsample_price_history
from packages.capture.models import (
    CaptureProgress,
    CaptureRequest,
    CaptureStatus,
    Event,
    Market,
    PricePoint,
    now_ms,
)
from packages.capture.settings import settings

logger = logging.getLogger(__name__)

MARKET_BATCH_STEP = "batch.markets"
EVENT_BATCH_STEP = "batch.events"

DEFAULT_LOOKBACK_SECONDS = 365 * 24 * 60 * 60
NOON_HOUR = 12


def finalize_status(progress: CaptureProgress) -> CaptureStatus:
    """Terminal status for a fully processed request."""
    if progress.failed == 0:
        return CaptureStatus.COMPLETED
    if progress.processed > 0:
        return CaptureStatus.PARTIALLY_COMPLETED
    return CaptureStatus.FAILED


def price_window(
    start_date: Optional[int],
    end_date: Optional[int],
    closed_time: Optional[int],
    now: Optional[int] = None,
) -> tuple[int, int]:
    """
    (start_ts, end_ts) in unix seconds for a market's price history.

    The actual close time wins over the scheduled end date, which is often
    earlier than the start for long-running markets.
    """
    now_s = (now if now is not None else now_ms()) // 1000
    start_ts = start_date // 1000 if start_date else now_s - DEFAULT_LOOKBACK_SECONDS

    if closed_time:
        end_ts = closed_time // 1000
    elif end_date and start_date and end_date > start_date:
        end_ts = end_date // 1000
    else:
        end_ts = now_s

    if end_ts <= start_ts:
        end_ts = now_s
    return start_ts, end_ts


def build_summary_rows(
    market_id: UUID,
    request: CaptureRequest,
    token_id: str,
    outcome_label: str,
    points: list[PricePoint],
) -> list[dict]:
    """Down-sample a series into daily_price_summary rows."""
    samples = downsample_price_history(
        points,
        target_hours=settings.snapshot_hours_utc,
        tolerance_minutes=settings.snapshot_tolerance_minutes,
    )
    return [
        {
            "market_id": market_id,
            "capture_request_id": request.id,
            "user_id": request.user_id,
            "clob_token_id": token_id,
            "outcome_label": outcome_label,
            "date": s.date,
            "hour": s.hour,
            "price": s.price,
            # Legacy OHLC columns carry the snapshot price
            "noon_price": s.price,
            "open_price": s.price,
            "close_price": s.price,
            "high_price": s.price,
            "low_price": s.price,
        }
        for s in samples
    ]


def build_raw_rows(
    market_id: UUID,
    request: CaptureRequest,
    token_id: str,
    outcome_label: str,
    points: list[PricePoint],
) -> list[dict]:
    noon_ts = {
        s.timestamp_ms
        for s in downsample_price_history(
            points,
            target_hours=(NOON_HOUR,),
            tolerance_minutes=settings.snapshot_tolerance_minutes,
        )
    }
    return [
        {
            "market_id": market_id,
            "capture_request_id": request.id,
            "user_id": request.user_id,
            "clob_token_id": token_id,
            "outcome_label": outcome_label,
            "timestamp": p.t * 1000,
            "price": p.p,
            "is_noon_snapshot": p.t * 1000 in noon_ts,
        }
        for p in points
    ]


async def save_price_history(
    store,
    request: CaptureRequest,
    market_id: UUID,
    token_id: str,
    outcome_label: str,
    points: list[PricePoint],
) -> int:
    """Persist a token's series; returns the number of summary rows written."""
    rows = build_summary_rows(market_id, request, token_id, outcome_label, points)
    await asyncio.to_thread(store.markets.save_price_summaries, rows)
    if settings.store_raw_price_history:
        raw = build_raw_rows(market_id, request, token_id, outcome_label, points)
        await asyncio.to_thread(store.markets.insert_raw_price_history, raw)
    return len(rows)


async def capture_market_prices(
    market: Market,
    request: CaptureRequest,
    store,
    client: PolymarketClient,
) -> int:
    """Fetch and store price history for every outcome token of a market."""
    start_ts, end_ts = price_window(market.start_date, market.end_date, market.closed_time)
    tokens = market.outcome_tokens()
    if not tokens:
        logger.debug(f"No clob token ids for market {market.polymarket_market_id}")
        return 0

    saved = 0
    for outcome_label, token_id in tokens:
        try:
            points = await client.fetch_price_history(
                token_id, start_ts, end_ts, settings.price_history_fidelity,
            )
            if points:
                await save_price_history(store, request, market.id, token_id, outcome_label, points)
                saved += 1
            else:
                logger.debug(f"No price history for {outcome_label} (token {token_id})")
            await client.throttle(settings.clob_delay_ms)
        except Exception as e:
            logger.warning(f"Failed to fetch price history for token {token_id}: {e}")
    return saved


async def _load_processing_request(request_id, store) -> Optional[CaptureRequest]:
    row = await asyncio.to_thread(store.requests.get_request, request_id)
    if row is None:
        logger.info(f"Request {request_id} no longer exists, stopping")
        return None
    request = CaptureRequest.from_row(row)
    if request.is_deleting:
        logger.info(f"Request {request_id} is being deleted, stopping")
        return None
    if request.status != CaptureStatus.PROCESSING:
        logger.info(f"Request {request_id} is {request.status.value}, stopping")
        return None
    return request


async def finalize_request(request_id, store) -> Optional[CaptureStatus]:
    """Move a processing request to its terminal status."""
    request = await _load_processing_request(request_id, store)
    if request is None:
        return None

    if request.progress.remaining:
        logger.warning(f"Request {request_id} finalized with {request.progress.remaining} entities never reached")
    status = finalize_status(request.progress)
    await asyncio.to_thread(store.requests.transition_status, request.id, status)
    logger.info(
        f"Finalized request {request_id}: {status.value} "
        f"({request.progress.processed} processed, {request.progress.failed} failed)"
    )
    return status


async def _record(store, request_id, ok: bool) -> None:
    await asyncio.to_thread(
        store.requests.increment_progress,
        request_id,
        1 if ok else 0,
        0 if ok else 1,
    )


async def process_market_batch(
    request_id,
    offset: int,
    store,
    client: PolymarketClient,
) -> StepResult:
    """Process one slice of a request's markets."""
    request = await _load_processing_request(request_id, store)
    if request is None:
        return Done(reason="not processing")

    batch_size = settings.markets_per_batch
    rows = await asyncio.to_thread(store.markets.get_markets_page, request.id, offset, batch_size)
    if not rows:
        await finalize_request(request_id, store)
        return Done(reason="finalized")

    logger.info(f"Request {request_id}: processing markets {offset + 1} to {offset + len(rows)}")

    for row in rows:
        market = Market.model_validate(row)
        try:
            if market.polymarket_event_id and market.event_id is None:
                event = await asyncio.to_thread(
                    store.events.get_event_by_polymarket_id, market.polymarket_event_id,
                )
                if event:
                    await asyncio.to_thread(
                        store.markets.link_market_to_event,
                        market.id,
                        event["id"],
                        event.get("category"),
                    )
            await capture_market_prices(market, request, store, client)
            ok = True
        except Exception:
            logger.exception(f"Failed to process market {market.polymarket_market_id}")
            ok = False
        await _record(store, request.id, ok)

    next_offset = offset + batch_size
    await asyncio.to_thread(store.requests.set_cursor, request.id, next_offset)
    return Continue(MARKET_BATCH_STEP, {"request_id": request_id, "offset": next_offset})


async def _process_event(event: Event, request: CaptureRequest, store, client: PolymarketClient) -> None:
    full_event = await client.fetch_event(event.polymarket_event_id)
    await client.throttle(settings.api_delay_ms)

    for raw in full_event.get("markets") or []:
        data = normalize_market(raw)
        data.update({
            "category": data["category"] or event.category,
            "polymarket_event_id": event.polymarket_event_id,
            "event_title": event.title,
            "event_slug": event.slug,
        })
        row = await asyncio.to_thread(
            store.markets.insert_market, request.id, request.user_id, event.id, data,
        )
        await capture_market_prices(Market.model_validate(row), request, store, client)


async def process_event_batch(
    request_id,
    offset: int,
    store,
    client: PolymarketClient,
) -> StepResult:
    """Process one slice of a request's events, saving their markets on the way."""
    request = await _load_processing_request(request_id, store)
    if request is None:
        return Done(reason="not processing")

    batch_size = settings.events_per_batch
    rows = await asyncio.to_thread(store.events.get_events_page, request.id, offset, batch_size)
    if not rows:
        await finalize_request(request_id, store)
        return Done(reason="finalized")

    logger.info(f"Request {request_id}: processing events {offset + 1} to {offset + len(rows)}")

    for row in rows:
        event = Event.model_validate(row)
        try:
            await _process_event(event, request, store, client)
            ok = True
        except Exception:
            logger.exception(f"Failed to process event {event.polymarket_event_id}")
            ok = False
        await _record(store, request.id, ok)

    next_offset = offset + batch_size
    await asyncio.to_thread(store.requests.set_cursor, request.id, next_offset)
    return Continue(EVENT_BATCH_STEP, {"request_id": request_id, "offset": next_offset})
