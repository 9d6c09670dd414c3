import json

import httpx
import pytest

from apps.collector.adapters.polymarket import (
    PolymarketAPIError,
    RetryExhaustedError,
    derive_resolved_outcome,
    normalize_event,
    normalize_market,
    parse_iso_ms,
    parse_json_array,
    to_iso,
)
from tests.fakes import gamma_market

DAY = 24 * 60 * 60


# =============================================================================
# Decoding
# =============================================================================

@pytest.mark.parametrize(
    "value,expected",
    [
        (None, []),
        ("", []),
        (["Yes", "No"], ["Yes", "No"]),
        ('["Yes", "No"]', ["Yes", "No"]),
        ('["1", 0.5]', ["1", "0.5"]),
        ("not json", []),
        ('{"a": 1}', []),
        ("42", []),
    ],
)
def test_parse_json_array(value, expected):
    assert parse_json_array(value) == expected


def test_resolved_outcome_first_price_at_threshold():
    assert derive_resolved_outcome(["Yes", "No"], ["0.995", "0.005"]) == "Yes"
    assert derive_resolved_outcome(["Yes", "No"], ["0", "1"]) == "No"


def test_resolved_outcome_missing_label_falls_back_to_index():
    assert derive_resolved_outcome(["Yes"], ["0.2", "0.99"]) == "Outcome 1"


def test_resolved_outcome_none_when_undecided_or_empty():
    assert derive_resolved_outcome(["Yes", "No"], ["0.5", "0.5"]) is None
    assert derive_resolved_outcome([], ["1"]) is None
    assert derive_resolved_outcome(["Yes"], []) is None


def test_parse_iso_ms():
    assert parse_iso_ms("2023-11-15T00:00:00Z") == 1_700_006_400_000
    assert parse_iso_ms("2023-11-15") == 1_700_006_400_000
    assert parse_iso_ms("2023-11-15T01:00:00+01:00") == 1_700_006_400_000
    assert parse_iso_ms("garbage") is None
    assert parse_iso_ms(None) is None


def test_to_iso_round_trips_through_parse():
    assert to_iso(1_700_006_400_000) == "2023-11-15T00:00:00.000Z"


def test_normalize_market_decodes_and_resolves():
    raw = gamma_market("m1", prices=("0", "1"), event={"id": 9, "slug": "ev", "title": "Event"})
    market = normalize_market(raw)

    assert market["polymarket_market_id"] == "m1"
    assert market["outcomes"] == ["Yes", "No"]
    assert market["clob_token_ids"] == ["T-yes", "T-no"]
    assert market["resolved_outcome"] == "No"
    assert market["volume"] == 1234.5
    assert market["liquidity"] == 100.0
    assert market["polymarket_event_id"] == "9"
    assert market["event_title"] == "Event"
    assert market["start_date"] == 1_700_006_400_000


def test_normalize_market_open_market_has_no_resolution():
    market = normalize_market(gamma_market("m1", closed=False, prices=("1", "0")))
    assert market["resolved_outcome"] is None


def test_normalize_event_prefers_given_category():
    raw = {"id": 5, "slug": "s", "title": "T", "category": "Sports", "tags": [{"id": 1, "label": "NBA", "slug": "nba"}]}
    event = normalize_event(raw, category="nba")
    assert event["polymarket_event_id"] == "5"
    assert event["category"] == "nba"
    assert event["tags"] == [{"id": "1", "label": "NBA", "slug": "nba"}]


# =============================================================================
# Retry policy
# =============================================================================

def _sequence(*responses):
    """Handler replaying responses in order (exceptions are raised)."""
    items = list(responses)

    def handler(request):
        item = items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler


@pytest.mark.asyncio
async def test_retry_rate_limit_backs_off_exponentially(client, upstream, sleeps):
    upstream.route("/events/1", _sequence(
        httpx.Response(429),
        httpx.Response(429),
        httpx.Response(200, json={"id": "1"}),
    ))

    event = await client.fetch_event("1")

    assert event == {"id": "1"}
    assert sleeps == [1000, 2000]


@pytest.mark.asyncio
async def test_retry_rate_limit_delay_is_capped(client, upstream, sleeps):
    upstream.route("/tags", lambda request: httpx.Response(429))

    with pytest.raises(RetryExhaustedError, match="Max retries exceeded"):
        await client.fetch_with_retry(
            "https://gamma.test/tags", max_retries=5, initial_delay=10_000, max_delay=30_000,
        )

    assert sleeps == [10_000, 20_000, 30_000, 30_000, 30_000]


@pytest.mark.asyncio
async def test_retry_server_error_uses_fixed_delay(client, upstream, sleeps):
    upstream.route("/markets/7", _sequence(
        httpx.Response(503),
        httpx.Response(500),
        httpx.Response(200, json={"id": "7"}),
    ))

    assert await client.fetch_market("7") == {"id": "7"}
    assert sleeps == [2000, 2000]


@pytest.mark.asyncio
async def test_retry_network_error_reraises_last_error(client, upstream, sleeps):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.route("/events/1", boom)

    with pytest.raises(httpx.ConnectError):
        await client.fetch_event("1")

    assert sleeps == [1000, 2000, 4000, 8000, 16000]
    assert len(upstream.calls("/events/1")) == 5


@pytest.mark.asyncio
async def test_retry_delay_follows_each_failure_kind(client, upstream, sleeps):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        if len(calls) == 2:
            return httpx.Response(502)
        if len(calls) == 3:
            return httpx.Response(429)
        return httpx.Response(200, json=[])

    upstream.route("/tags", handler)

    response = await client.fetch_with_retry("https://gamma.test/tags")

    assert response.status_code == 200
    assert sleeps == [1000, 2000, 4000]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(client, upstream, sleeps):
    upstream.route("/events/404", lambda request: httpx.Response(404, text="missing"))

    with pytest.raises(PolymarketAPIError) as exc_info:
        await client.fetch_event("404")

    assert exc_info.value.status_code == 404
    assert exc_info.value.body == "missing"
    assert sleeps == []
    assert len(upstream.calls("/events/404")) == 1


# =============================================================================
# Endpoints
# =============================================================================

@pytest.mark.asyncio
async def test_fetch_markets_query_params(client, upstream):
    upstream.route("/markets", lambda request: [])

    await client.fetch_markets(
        limit=100, offset=200, closed=True,
        start_date_min="2023-11-01T00:00:00.000Z", start_date_max="2023-11-30T00:00:00.000Z",
    )

    params = upstream.calls("/markets")[0].url.params
    assert params["limit"] == "100"
    assert params["offset"] == "200"
    assert params["closed"] == "true"
    assert params["order"] == "startDate"
    assert params["ascending"] == "true"
    assert params["start_date_min"] == "2023-11-01T00:00:00.000Z"


@pytest.mark.asyncio
async def test_fetch_events_by_series_orders_by_end_date(client, upstream):
    upstream.route("/events", lambda request: [{"id": "1"}])

    events = await client.fetch_events_by_series("10", limit=100, offset=0)

    params = upstream.calls("/events")[0].url.params
    assert events == [{"id": "1"}]
    assert params["series_id"] == "10"
    assert params["order"] == "endDate"
    assert params["ascending"] == "false"


# =============================================================================
# Price history
# =============================================================================

@pytest.mark.asyncio
async def test_price_history_short_span_is_single_call(client, upstream, sleeps):
    upstream.route("/prices-history", lambda request: {"history": [{"t": 1, "p": 0.5}]})

    points = await client.fetch_price_history("T1", 0, 7 * DAY, fidelity=60)

    assert [(p.t, p.p) for p in points] == [(1, 0.5)]
    call = upstream.calls("/prices-history")[0]
    assert call.url.params["market"] == "T1"
    assert call.url.params["fidelity"] == "60"
    assert sleeps == []


@pytest.mark.asyncio
async def test_price_history_long_span_is_chunked(client, upstream, sleeps):
    def handler(request):
        start = int(request.url.params["startTs"])
        return {"history": [{"t": start, "p": 0.1}]}

    upstream.route("/prices-history", handler)
    start = 1_700_000_000

    points = await client.fetch_price_history("T1", start, start + 30 * DAY, fidelity=60)

    calls = upstream.calls("/prices-history")
    spans = [(int(c.url.params["startTs"]), int(c.url.params["endTs"])) for c in calls]
    assert spans == [
        (start, start + 14 * DAY),
        (start + 14 * DAY, start + 28 * DAY),
        (start + 28 * DAY, start + 30 * DAY),
    ]
    assert all(end - begin <= 14 * DAY for begin, end in spans)
    assert [p.t for p in points] == [s for s, _ in spans]
    assert sleeps == [50, 50, 50]


@pytest.mark.asyncio
async def test_price_history_failed_chunk_is_skipped(client, upstream):
    start = 1_700_000_000

    def handler(request):
        chunk_start = int(request.url.params["startTs"])
        if chunk_start == start + 14 * DAY:
            return httpx.Response(400, text="bad interval")
        return {"history": [{"t": chunk_start, "p": 0.3}]}

    upstream.route("/prices-history", handler)

    points = await client.fetch_price_history("T1", start, start + 20 * DAY)

    assert [p.t for p in points] == [start]
    spans = [
        (int(c.url.params["startTs"]), int(c.url.params["endTs"]))
        for c in upstream.calls("/prices-history")
    ]
    assert spans == [(start, start + 14 * DAY), (start + 14 * DAY, start + 20 * DAY)]


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_chunk", [
    httpx.Response(200, text="<html>gateway</html>"),
    httpx.Response(200, json={"history": [{"t": 1}]}),
])
async def test_price_history_undecodable_chunk_is_skipped(client, upstream, bad_chunk):
    start = 1_700_000_000

    def handler(request):
        chunk_start = int(request.url.params["startTs"])
        if chunk_start == start + 14 * DAY:
            return bad_chunk
        return {"history": [{"t": chunk_start, "p": 0.3}]}

    upstream.route("/prices-history", handler)

    points = await client.fetch_price_history("T1", start, start + 20 * DAY)

    assert [p.t for p in points] == [start]
    assert len(upstream.calls("/prices-history")) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"error": "interval too long"}, {"foo": "bar"}, {"history": []}])
async def test_price_history_error_or_missing_history_is_empty(client, upstream, body):
    upstream.route("/prices-history", lambda request: body)

    assert await client.fetch_price_history("T1", 0, DAY) == []


@pytest.mark.asyncio
async def test_fetch_tags(client, upstream):
    upstream.route("/tags", lambda request: json.loads('[{"id": 1, "label": "Politics", "slug": "politics"}]'))

    tags = await client.fetch_tags(100, 0)

    assert tags[0]["label"] == "Politics"
    assert upstream.calls("/tags")[0].url.params["limit"] == "100"
