"""
Discovery step - finds the closed markets (or events) a capture request
covers and persists them before batch processing starts.

Three strategies, chosen by the request's filters:
1. category set   -> events by tag slug, markets extracted from each event
2. tag ids set    -> events by curated series/tag id, processed per event
3. neither        -> markets directly, then their parent events
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apps.collector.adapters.polymarket import (
    PolymarketClient,
    normalize_event,
    normalize_market,
    parse_iso_ms,
    parse_json_array,
    to_iso,
)
from apps.collector.jobs.batch_processor import EVENT_BATCH_STEP, MARKET_BATCH_STEP
from apps.collector.jobs.step_queue import Continue, Done, StepResult
from packages.capture.categories import get_category, infer_event_category, to_tag_slug
from packages.capture.models import CaptureRequest, CaptureStatus
from packages.capture.settings import settings

logger = logging.getLogger(__name__)

DISCOVERY_STEP = "discovery"


def matches_search(term: Optional[str], *texts: Optional[str]) -> bool:
    """Case-insensitive substring match of ``term`` against any text."""
    if not term:
        return True
    needle = term.lower()
    return any(needle in text.lower() for text in texts if text)


def _tag_labels(event: dict) -> list[str]:
    return [t.get("label", "") for t in event.get("tags") or [] if isinstance(t, dict)]


def _event_category(event: dict) -> Optional[str]:
    return infer_event_category(event.get("category"), _tag_labels(event))


async def discover_by_category(
    request: CaptureRequest,
    client: PolymarketClient,
) -> tuple[list[dict], dict[str, dict]]:
    """
    Closed markets from events carrying the request's category tag.

    Returns:
        (raw markets with an event back-reference, raw events by id)
    """
    tag_slug = to_tag_slug(request.category)
    page_size = settings.category_page_size
    start_min = to_iso(request.date_range_start)
    start_max = to_iso(request.date_range_end)

    markets: list[dict] = []
    events_by_id: dict[str, dict] = {}
    offset = 0

    logger.info(f"Fetching closed events with tag '{tag_slug}' for request {request.id}")

    while len(markets) < request.limit:
        events = await client.fetch_events_by_tag_slug(
            tag_slug,
            limit=page_size,
            offset=offset,
            closed=True,
            start_date_min=start_min,
            start_date_max=start_max,
        )
        if not events:
            logger.debug(f"No more events at offset {offset}")
            break

        for event in events:
            event_id = str(event.get("id"))
            events_by_id[event_id] = event

            for market in event.get("markets") or []:
                if not market.get("closed"):
                    continue
                start_ms = parse_iso_ms(market.get("startDate"))
                if start_ms is not None and not (
                    request.date_range_start <= start_ms <= request.date_range_end
                ):
                    continue

                full_market = market
                if not parse_json_array(market.get("clobTokenIds")) and market.get("id"):
                    try:
                        full_market = await client.fetch_market(str(market["id"]))
                        await client.throttle(settings.api_delay_ms)
                    except Exception as e:
                        logger.error(f"Failed to fetch market {market['id']}: {e}")

                markets.append({
                    **full_market,
                    "events": [{"id": event_id, "slug": event.get("slug"), "title": event.get("title")}],
                })
                if len(markets) >= request.limit:
                    break
            if len(markets) >= request.limit:
                break

        offset += page_size
        await client.throttle(settings.api_delay_ms)

    logger.info(f"Found {len(markets)} markets from {len(events_by_id)} events with tag '{tag_slug}'")
    return markets, events_by_id


async def discover_global(
    request: CaptureRequest,
    client: PolymarketClient,
) -> tuple[list[dict], dict[str, dict]]:
    """
    Closed markets started in the window, then each referenced event.

    Returns:
        (distinct raw markets, fetched raw events by id)
    """
    page_size = settings.market_page_size
    start_min = to_iso(request.date_range_start)
    start_max = to_iso(request.date_range_end)

    markets: list[dict] = []
    seen: set[str] = set()
    offset = 0

    while len(markets) < request.limit:
        page = await client.fetch_markets(
            limit=page_size,
            offset=offset,
            closed=True,
            start_date_min=start_min,
            start_date_max=start_max,
        )
        if not page:
            break

        for market in page:
            market_id = str(market.get("id"))
            if market_id in seen:
                continue
            seen.add(market_id)
            markets.append(market)
            if len(markets) >= request.limit:
                break

        logger.debug(f"Fetched {len(page)} markets at offset {offset}, total {len(markets)}")
        if len(markets) >= request.limit or len(page) < page_size:
            break
        offset += page_size
        await client.throttle(settings.api_delay_ms)

    event_ids: list[str] = []
    for market in markets:
        refs = market.get("events") or []
        if refs and isinstance(refs[0], dict) and refs[0].get("id") is not None:
            event_id = str(refs[0]["id"])
            if event_id not in event_ids:
                event_ids.append(event_id)

    logger.info(f"Found {len(markets)} markets referencing {len(event_ids)} events")

    events_by_id: dict[str, dict] = {}
    for event_id in event_ids:
        try:
            events_by_id[event_id] = await client.fetch_event(event_id)
            await client.throttle(settings.api_delay_ms)
        except Exception as e:
            logger.error(f"Failed to fetch event {event_id}: {e}")

    return markets[:request.limit], events_by_id


async def discover_by_tag_set(
    request: CaptureRequest,
    client: PolymarketClient,
) -> list[dict]:
    """Closed events created in the window across the request's curated categories."""
    page_size = settings.event_page_size
    events: list[dict] = []
    seen: set[str] = set()

    for category_id in request.tag_ids:
        category = get_category(category_id)
        if category is None:
            logger.warning(f"Unknown category id: {category_id}")
            continue

        offset = 0
        while offset < settings.max_event_offset and len(events) < request.limit:
            if category.type == "sport" and category.series_id:
                page = await client.fetch_events_by_series(
                    category.series_id, limit=page_size, offset=offset, closed=True,
                )
            elif category.type == "tag" and category.tag_id:
                page = await client.fetch_events_by_tag_id(
                    category.tag_id, limit=page_size, offset=offset, closed=True,
                )
            else:
                logger.warning(f"Category {category.id} has no series or tag id")
                break

            if not page:
                break

            in_range = 0
            for event in page:
                event_id = str(event.get("id"))
                if event_id in seen:
                    continue
                created_ms = parse_iso_ms(event.get("createdAt"))
                if created_ms is None:
                    continue
                if request.date_range_start <= created_ms <= request.date_range_end:
                    seen.add(event_id)
                    events.append(event)
                    in_range += 1
                    if len(events) >= request.limit:
                        break

            logger.debug(f"{category.label} offset {offset}: {len(page)} events, {in_range} in range")
            if len(page) < page_size:
                break
            offset += page_size
            await client.throttle(settings.api_delay_ms)

    logger.info(f"Found {len(events)} matching events across {len(request.tag_ids)} categories")
    return events


async def _finish_empty(request: CaptureRequest, store) -> StepResult:
    logger.info(f"No entities found for request {request.id}; marking completed")
    await asyncio.to_thread(store.requests.transition_status, request.id, CaptureStatus.COMPLETED)
    return Done(reason="empty")


async def _discover_markets(request: CaptureRequest, store, client: PolymarketClient) -> StepResult:
    if request.category:
        raw_markets, events_by_id = await discover_by_category(request, client)
    else:
        raw_markets, events_by_id = await discover_global(request, client)

    markets = [normalize_market(m) for m in raw_markets]
    markets = [
        m for m in markets
        if matches_search(request.search_term, m["question"], m["event_title"])
    ]
    if not markets:
        return await _finish_empty(request, store)

    referenced = []
    for market in markets:
        event_id = market["polymarket_event_id"]
        if event_id and event_id in events_by_id and event_id not in referenced:
            referenced.append(event_id)
    events = [
        normalize_event(events_by_id[event_id], category=_event_category(events_by_id[event_id]))
        for event_id in referenced
    ]

    await asyncio.to_thread(store.requests.set_total, request.id, len(markets))
    await asyncio.to_thread(store.markets.save_discovered_markets, request.id, request.user_id, markets)
    await asyncio.to_thread(store.events.upsert_events, request.id, request.user_id, events)

    logger.info(f"Request {request.id}: saved {len(markets)} markets and {len(events)} events")
    return Continue(MARKET_BATCH_STEP, {"request_id": request.id, "offset": 0})


async def _discover_events(request: CaptureRequest, store, client: PolymarketClient) -> StepResult:
    raw_events = await discover_by_tag_set(request, client)
    raw_events = [
        e for e in raw_events
        if matches_search(
            request.search_term,
            e.get("title"),
            *(m.get("question") for m in e.get("markets") or []),
        )
    ]
    if not raw_events:
        return await _finish_empty(request, store)

    events = [normalize_event(e, category=_event_category(e)) for e in raw_events]

    saved = await asyncio.to_thread(
        store.events.save_discovered_events, request.id, request.user_id, events,
    )
    await asyncio.to_thread(store.requests.set_total, request.id, saved)

    logger.info(f"Request {request.id}: saved {saved} of {len(events)} events")
    return Continue(EVENT_BATCH_STEP, {"request_id": request.id, "offset": 0})


async def run_discovery(request_id, store, client: PolymarketClient) -> StepResult:
    """
    Discover and persist a processing request's markets or events.

    Zero results complete the request; any error fails it with the error
    text. Otherwise continues into the matching batch processor at offset 0.
    """
    row = await asyncio.to_thread(store.requests.get_request, request_id)
    if row is None:
        logger.warning(f"Request {request_id} not found, skipping discovery")
        return Done(reason="missing")

    request = CaptureRequest.from_row(row)
    if request.status != CaptureStatus.PROCESSING:
        logger.info(f"Request {request_id} is {request.status.value}, skipping discovery")
        return Done(reason="not processing")

    try:
        if request.tag_ids:
            return await _discover_events(request, store, client)
        return await _discover_markets(request, store, client)
    except Exception as e:
        logger.exception(f"Discovery failed for request {request_id}")
        await asyncio.to_thread(
            store.requests.transition_status,
            request.id,
            CaptureStatus.FAILED,
            str(e) or type(e).__name__,
        )
        return Done(reason="failed")
