import asyncio
from datetime import datetime, timezone

import pytest

from apps.collector.jobs.capture_scheduler import check_pending_captures, fail_stale_requests
from apps.collector.jobs.cascade_delete import CASCADE_DELETE_STEP, cascade_delete
from apps.collector.jobs.discovery import DISCOVERY_STEP
from apps.collector.jobs.step_queue import Continue, Done, StepQueue
from apps.collector.jobs.tag_sync import TAG_SYNC_STEP, seconds_until_next_midnight_utc
from apps.collector.main import build_step_queue
from packages.capture.models import DELETING_SENTINEL, STALE_PROCESSING_MESSAGE, now_ms
from packages.capture.settings import settings
from tests.fakes import gamma_market

H = 3600


def _history(request):
    start = int(request.url.params["startTs"])
    return {"history": [{"t": start, "p": 0.4}, {"t": start + 6 * H, "p": 0.6}]}


@pytest.fixture
def gamma(upstream):
    ref = {"id": "E1", "slug": "e1", "title": "Event One"}
    upstream.route("/markets", lambda request: (
        [gamma_market("m1", event=ref), gamma_market("m2", event=ref)]
        if request.url.params["offset"] == "0" else []
    ))
    upstream.route("/events/E1", lambda request: {**ref, "closed": True, "category": "Politics"})
    upstream.route("/prices-history", _history)
    return upstream


# =============================================================================
# Admission and full runs
# =============================================================================

@pytest.mark.asyncio
async def test_capture_runs_end_to_end(store, client, gamma):
    request = store.requests.add(name="Election week")
    queue = build_step_queue(store, client)

    claimed = await check_pending_captures(queue, store)
    assert claimed == request["id"]
    assert queue.is_queued(DISCOVERY_STEP, request_id=request["id"])

    await queue.drain()

    row = store.requests.get_request(request["id"])
    assert row["status"] == "completed"
    assert (row["progress_total"], row["progress_processed"], row["progress_failed"]) == (2, 2, 0)
    assert row["completed_at"] is not None

    event = store.events.get_event_by_polymarket_id("E1")
    markets = store.markets.list_markets_for_request(request["id"])
    assert all(m["event_id"] == event["id"] for m in markets)
    assert all(m["category"] == "Politics" for m in markets)
    assert len(store.markets.list_daily_summaries_for_request(request["id"])) == 8
    assert store.tables.price_history == []


@pytest.mark.asyncio
async def test_only_one_request_processing_at_a_time(store, client, gamma):
    first = store.requests.add()
    second = store.requests.add()
    queue = build_step_queue(store, client)

    assert await check_pending_captures(queue, store) == first["id"]
    assert await check_pending_captures(queue, store) is None
    assert store.requests.get_request(second["id"])["status"] == "pending"

    await queue.drain()

    assert await check_pending_captures(queue, store) == second["id"]
    await queue.drain()
    assert store.requests.get_request(second["id"])["status"] == "completed"


@pytest.mark.asyncio
async def test_tag_set_recapture_takes_over_known_event(store, client, upstream):
    game = {"id": "N1", "slug": "n1", "title": "Lakers vs Celtics", "createdAt": "2023-11-15T00:00:00Z"}
    upstream.route("/events", lambda request: (
        [game] if request.url.params.get("series_id") == "2" and request.url.params["offset"] == "0" else []
    ))
    upstream.route("/events/N1", lambda request: {**game, "markets": [gamma_market("m1")]})
    upstream.route("/prices-history", _history)
    first = store.requests.add(tag_ids=["nba"])
    second = store.requests.add(tag_ids=["nba"])
    queue = build_step_queue(store, client)

    for _ in range(2):
        await check_pending_captures(queue, store)
        await queue.drain()

    assert store.requests.get_request(first["id"])["status"] == "completed"
    row = store.requests.get_request(second["id"])
    assert row["status"] == "completed"
    assert (row["progress_total"], row["progress_processed"], row["progress_failed"]) == (1, 1, 0)
    assert len(store.tables.events) == 1
    events = store.events.list_events_for_request(second["id"])
    assert [e["polymarket_event_id"] for e in events] == ["N1"]
    assert len(store.markets.list_markets_for_request(second["id"])) == 1
    assert len(store.markets.list_daily_summaries_for_request(second["id"])) == 4


@pytest.mark.asyncio
async def test_stale_processing_request_is_failed(store, client):
    stale = store.requests.add(status="processing", updated_at=now_ms() - 10 * 60 * 1000)
    fresh_pending = store.requests.add()
    queue = build_step_queue(store, client)

    claimed = await check_pending_captures(queue, store)

    row = store.requests.get_request(stale["id"])
    assert row["status"] == "failed"
    assert row["error_message"] == STALE_PROCESSING_MESSAGE
    assert claimed == fresh_pending["id"]


@pytest.mark.asyncio
async def test_recent_processing_request_is_left_alone(store):
    request = store.requests.add(status="processing")

    assert await fail_stale_requests(store, timeout_seconds=300) == []
    assert store.requests.get_request(request["id"])["status"] == "processing"


# =============================================================================
# Cascade delete
# =============================================================================

@pytest.mark.asyncio
async def test_cascade_delete_removes_everything(store, client, gamma, monkeypatch):
    request = store.requests.add()
    other = store.requests.add(status="completed")
    store.markets.save_discovered_markets(other["id"], other["user_id"], [{"polymarket_market_id": "keep"}])
    queue = build_step_queue(store, client)
    await check_pending_captures(queue, store)
    await queue.drain()

    monkeypatch.setattr(settings, "delete_batch_size", 3)
    assert store.requests.mark_deleting(request["id"])["error_message"] == DELETING_SENTINEL
    assert store.requests.mark_deleting(request["id"]) is None

    await check_pending_captures(queue, store)
    assert queue.is_queued(CASCADE_DELETE_STEP, request_id=request["id"])
    await check_pending_captures(queue, store)
    assert len(queue) == 1

    steps = await queue.drain()

    # 8 summaries, 2 markets, 1 event in batches of 3, then the request row
    assert steps == 3 + 1 + 1 + 1
    assert store.requests.get_request(request["id"]) is None
    assert store.markets.list_daily_summaries_for_request(request["id"]) == []
    assert store.markets.list_markets_for_request(request["id"]) == []
    assert store.events.list_events_for_request(request["id"]) == []
    assert len(store.markets.list_markets_for_request(other["id"])) == 1


@pytest.mark.asyncio
async def test_deleting_mid_run_stops_the_batch_chain(store, client, gamma):
    request = store.requests.add()
    queue = build_step_queue(store, client)
    await check_pending_captures(queue, store)
    await queue.run_next(respect_schedule=False)  # discovery

    store.requests.mark_deleting(request["id"])
    result = await queue.run_next(respect_schedule=False)

    assert result == Done(reason="not processing")
    assert len(queue) == 0
    assert store.markets.list_daily_summaries_for_request(request["id"]) == []


@pytest.mark.asyncio
async def test_cascade_delete_of_missing_request_is_done(store):
    result = await cascade_delete("00000000-0000-0000-0000-000000000000", store)
    assert result == Done(reason="deleted")


# =============================================================================
# Tag sync
# =============================================================================

@pytest.mark.asyncio
async def test_tag_sync_pages_and_saves_in_batches(store, client, upstream, sleeps):
    pages = {0: 100, 100: 100, 200: 30}

    def handler(request):
        offset = int(request.url.params["offset"])
        return [
            {"id": offset + i, "label": f"Tag {offset + i}", "slug": f"tag-{offset + i}"}
            for i in range(pages.get(offset, 0))
        ]

    upstream.route("/tags", handler)
    queue = build_step_queue(store, client)
    queue.enqueue(TAG_SYNC_STEP)

    result = await queue.run_next(respect_schedule=False)

    assert isinstance(result, Done)
    assert store.tags.batches == [50, 50, 50, 50, 30]
    assert len(store.tags.list_tags()) == 230
    assert len(upstream.calls("/tags")) == 4
    assert sleeps == [100, 100, 100]


def test_seconds_until_next_midnight_utc():
    now = datetime(2024, 3, 1, 18, 30, tzinfo=timezone.utc)
    assert seconds_until_next_midnight_utc(now) == 5.5 * 3600
    assert seconds_until_next_midnight_utc(datetime(2024, 3, 1, tzinfo=timezone.utc)) == 24 * 3600


# =============================================================================
# Step queue
# =============================================================================

@pytest.mark.asyncio
async def test_step_queue_injects_context_and_follows_continuations():
    seen = []

    async def count(n, sink):
        sink.append(n)
        return Continue("count", {"n": n + 1}) if n < 3 else Done(reason="done")

    queue = StepQueue(context={"sink": seen})
    queue.register("count", count)
    queue.enqueue("count", n=1)

    assert await queue.drain() == 3
    assert seen == [1, 2, 3]
    assert queue.steps_run == 3


@pytest.mark.asyncio
async def test_step_queue_drops_chain_on_exception():
    async def explode():
        raise RuntimeError("boom")

    queue = StepQueue()
    queue.register("explode", explode)
    queue.enqueue("explode")

    result = await queue.run_next(respect_schedule=False)

    assert result == Done(reason="error")
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_step_queue_respects_delay():
    async def noop():
        return None

    queue = StepQueue()
    queue.register("noop", noop)
    queue.enqueue("noop", delay=60)

    assert await queue.run_next() is None
    assert queue.is_queued("noop")
    assert await queue.run_next(respect_schedule=False) == Done()


def test_step_queue_rejects_unknown_step():
    with pytest.raises(KeyError):
        StepQueue().enqueue("nope")


@pytest.mark.asyncio
async def test_run_forever_stops_on_event():
    ran = []

    async def record(stop):
        ran.append(True)
        stop.set()

    stop = asyncio.Event()
    queue = StepQueue(context={"stop": stop})
    queue.register("record", record)
    queue.enqueue("record")

    await asyncio.wait_for(queue.run_forever(stop), timeout=5)

    assert ran == [True]
