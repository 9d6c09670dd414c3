import pytest

from apps.collector.adapters.polymarket import normalize_event, normalize_market
from apps.collector.jobs.batch_processor import (
    EVENT_BATCH_STEP,
    MARKET_BATCH_STEP,
    build_raw_rows,
    finalize_status,
    price_window,
    process_event_batch,
    process_market_batch,
)
from apps.collector.jobs.step_queue import Done
from apps.collector.main import build_step_queue
from packages.capture.models import CaptureProgress, CaptureRequest, PricePoint
from packages.capture.settings import settings
from tests.fakes import gamma_market

H = 3600
NOW_MS = 1_800_000_000_000
YEAR = 365 * 24 * H


def _history(request):
    """Two points per call: 00:00 and 06:00 UTC of the requested start day."""
    start = int(request.url.params["startTs"])
    return {"history": [{"t": start, "p": 0.4}, {"t": start + 6 * H, "p": 0.6}]}


def _seed_markets(store, request, *raw_markets):
    markets = [normalize_market(m) for m in raw_markets]
    store.markets.save_discovered_markets(request["id"], request["user_id"], markets)
    store.requests.set_total(request["id"], len(markets))


# =============================================================================
# Pure helpers
# =============================================================================

@pytest.mark.parametrize(
    "processed,failed,expected",
    [
        (5, 0, "completed"),
        (0, 0, "completed"),
        (4, 1, "partially_completed"),
        (0, 3, "failed"),
    ],
)
def test_finalize_status(processed, failed, expected):
    progress = CaptureProgress(total=processed + failed, processed=processed, failed=failed)
    assert finalize_status(progress).value == expected


@pytest.mark.parametrize(
    "start,end,closed,expected",
    [
        (1_700_000_000_000, 1_700_100_000_000, None, (1_700_000_000, 1_700_100_000)),
        (1_700_000_000_000, 1_700_100_000_000, 1_700_050_000_000, (1_700_000_000, 1_700_050_000)),
        (1_700_000_000_000, 1_690_000_000_000, None, (1_700_000_000, 1_800_000_000)),
        (None, 1_700_100_000_000, None, (1_800_000_000 - YEAR, 1_800_000_000)),
        (1_700_000_000_000, None, 1_690_000_000_000, (1_700_000_000, 1_800_000_000)),
    ],
)
def test_price_window(start, end, closed, expected):
    assert price_window(start, end, closed, now=NOW_MS) == expected


def test_raw_rows_flag_the_noon_snapshot(store):
    row = store.requests.add(status="processing")
    request = CaptureRequest.from_row(row)
    day = 1_704_067_200
    points = [
        PricePoint(t=day + 11 * H, p=0.3),
        PricePoint(t=day + 12 * H + 600, p=0.4),
        PricePoint(t=day + 18 * H, p=0.5),
    ]

    rows = build_raw_rows(row["id"], request, "T1", "Yes", points)

    assert [r["is_noon_snapshot"] for r in rows] == [False, True, False]
    assert rows[0]["timestamp"] == (day + 11 * H) * 1000


# =============================================================================
# Market batches
# =============================================================================

@pytest.mark.asyncio
async def test_market_batches_run_until_empty_slice(store, client, upstream):
    upstream.route("/prices-history", _history)
    request = store.requests.add(status="processing")
    _seed_markets(store, request, *(gamma_market(f"m{i}") for i in range(25)))
    queue = build_step_queue(store, client)
    queue.enqueue(MARKET_BATCH_STEP, request_id=request["id"], offset=0)

    steps = await queue.drain()

    assert steps == 4
    assert store.markets.page_reads == [(0, 10), (10, 10), (20, 10), (30, 10)]
    row = store.requests.get_request(request["id"])
    assert row["status"] == "completed"
    assert (row["progress_processed"], row["progress_failed"]) == (25, 0)
    assert row["cursor_offset"] == 30
    # two tokens x two slots per market
    assert len(store.markets.list_daily_summaries_for_request(request["id"])) == 25 * 4


@pytest.mark.asyncio
async def test_token_failure_is_not_fatal(store, client, upstream):
    def handler(request):
        if request.url.params["market"] == "T-no":
            raise RuntimeError("connection reset")
        return _history(request)

    upstream.route("/prices-history", handler)
    request = store.requests.add(status="processing")
    _seed_markets(store, request, gamma_market("m1"))

    await process_market_batch(request["id"], 0, store, client)
    await process_market_batch(request["id"], 10, store, client)

    row = store.requests.get_request(request["id"])
    assert row["status"] == "completed"
    assert row["progress_processed"] == 1
    summaries = store.markets.list_daily_summaries_for_request(request["id"])
    assert {s["clob_token_id"] for s in summaries} == {"T-yes"}


@pytest.mark.asyncio
async def test_entity_failure_leads_to_partial_completion(store, client, upstream, monkeypatch):
    upstream.route("/prices-history", _history)
    request = store.requests.add(status="processing")
    _seed_markets(
        store,
        request,
        gamma_market("m1", event={"id": "E-bad", "slug": "bad", "title": "Bad"}),
        gamma_market("m2"),
    )

    def broken_lookup(pm_id):
        raise RuntimeError("lookup failed")

    monkeypatch.setattr(store.events, "get_event_by_polymarket_id", broken_lookup)

    await process_market_batch(request["id"], 0, store, client)
    result = await process_market_batch(request["id"], 10, store, client)

    assert result == Done(reason="finalized")
    row = store.requests.get_request(request["id"])
    assert row["status"] == "partially_completed"
    assert (row["progress_processed"], row["progress_failed"]) == (1, 1)


@pytest.mark.asyncio
async def test_market_is_linked_to_saved_event(store, client, upstream):
    upstream.route("/prices-history", _history)
    request = store.requests.add(status="processing")
    ref = {"id": "E1", "slug": "e1", "title": "Event One"}
    _seed_markets(store, request, gamma_market("m1", event=ref))
    store.events.upsert_events(
        request["id"], request["user_id"], [normalize_event(ref, category="politics")],
    )
    event = store.events.get_event_by_polymarket_id("E1")

    await process_market_batch(request["id"], 0, store, client)

    market = store.markets.list_markets_for_request(request["id"])[0]
    assert market["event_id"] == event["id"]
    assert market["category"] == "politics"


@pytest.mark.asyncio
async def test_summaries_are_upserted_per_slot(store, client, upstream):
    upstream.route("/prices-history", _history)
    request = store.requests.add(status="processing")
    _seed_markets(store, request, gamma_market("m1"))

    await process_market_batch(request["id"], 0, store, client)
    await process_market_batch(request["id"], 0, store, client)

    summaries = store.markets.list_daily_summaries_for_request(request["id"])
    assert sorted((s["clob_token_id"], s["hour"]) for s in summaries) == [
        ("T-no", 0), ("T-no", 6), ("T-yes", 0), ("T-yes", 6),
    ]
    assert all(s["date"] == "2023-11-15" for s in summaries)
    assert all(s["noon_price"] == s["price"] for s in summaries)


@pytest.mark.asyncio
async def test_raw_history_only_when_enabled(store, client, upstream, monkeypatch):
    upstream.route("/prices-history", _history)
    request = store.requests.add(status="processing")
    _seed_markets(store, request, gamma_market("m1"))

    await process_market_batch(request["id"], 0, store, client)
    assert store.tables.price_history == []

    monkeypatch.setattr(settings, "store_raw_price_history", True)
    await process_market_batch(request["id"], 0, store, client)
    assert len(store.tables.price_history) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["failed", "completed", "pending"])
async def test_batch_stops_when_request_not_processing(store, client, status):
    request = store.requests.add(status=status)

    result = await process_market_batch(request["id"], 0, store, client)

    assert result == Done(reason="not processing")
    assert store.markets.page_reads == []
    assert store.requests.get_request(request["id"])["status"] == status


@pytest.mark.asyncio
async def test_batch_stops_when_request_deleted(store, client):
    request = store.requests.add(status="processing")
    store.requests.delete_request(request["id"])

    result = await process_market_batch(request["id"], 0, store, client)

    assert result == Done(reason="not processing")


@pytest.mark.asyncio
async def test_batch_stops_when_request_marked_deleting(store, client):
    request = store.requests.add(status="processing")
    store.requests.mark_deleting(request["id"])

    result = await process_market_batch(request["id"], 0, store, client)

    assert result == Done(reason="not processing")
    assert store.markets.page_reads == []


@pytest.mark.asyncio
async def test_finalize_warns_about_unreached_entities(store, client, caplog):
    request = store.requests.add(status="processing", progress_total=3)

    with caplog.at_level("WARNING"):
        result = await process_event_batch(request["id"], 0, store, client)

    assert result == Done(reason="finalized")
    assert "3 entities never reached" in caplog.text
    assert store.requests.get_request(request["id"])["status"] == "completed"


# =============================================================================
# Event batches
# =============================================================================

@pytest.mark.asyncio
async def test_event_batch_saves_embedded_markets(store, client, upstream):
    upstream.route("/prices-history", _history)
    upstream.route("/events/N1", lambda request: {
        "id": "N1",
        "slug": "n1",
        "title": "Lakers vs Celtics",
        "markets": [gamma_market("m1"), gamma_market("m2")],
    })
    request = store.requests.add(status="processing", tag_ids=["nba"])
    store.events.save_discovered_events(
        request["id"], request["user_id"],
        [normalize_event({"id": "N1", "slug": "n1", "title": "Lakers vs Celtics"}, category="nba")],
    )
    store.requests.set_total(request["id"], 1)
    queue = build_step_queue(store, client)
    queue.enqueue(EVENT_BATCH_STEP, request_id=request["id"], offset=0)

    steps = await queue.drain()

    assert steps == 2
    event = store.events.get_event_by_polymarket_id("N1")
    markets = store.markets.list_markets_for_event(event["id"])
    assert [m["polymarket_market_id"] for m in markets] == ["m1", "m2"]
    assert all(m["category"] == "nba" for m in markets)
    assert all(m["event_title"] == "Lakers vs Celtics" for m in markets)
    assert len(store.markets.list_daily_summaries_for_request(request["id"])) == 8
    row = store.requests.get_request(request["id"])
    assert row["status"] == "completed"
    assert row["progress_processed"] == 1


@pytest.mark.asyncio
async def test_event_fetch_failure_counts_as_failed(store, client, upstream):
    request = store.requests.add(status="processing", tag_ids=["nba"])
    store.events.save_discovered_events(
        request["id"], request["user_id"],
        [normalize_event({"id": "gone", "slug": "gone", "title": "Gone"})],
    )

    await process_event_batch(request["id"], 0, store, client)
    await process_event_batch(request["id"], 5, store, client)

    row = store.requests.get_request(request["id"])
    assert (row["progress_processed"], row["progress_failed"]) == (0, 1)
    assert row["status"] == "failed"
