"""
Polymarket API adapter using the Gamma and CLOB APIs.

Endpoints:
- Markets: https://gamma-api.polymarket.com/markets
- Events: https://gamma-api.polymarket.com/events
- Tags: https://gamma-api.polymarket.com/tags
- Price history: https://clob.polymarket.com/prices-history

Both APIs are public and don't require authentication for read operations.
Every request goes through ``fetch_with_retry``, which retries rate limits,
server errors and network failures with backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from packages.capture.models import PricePoint
from packages.capture.settings import settings

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
RESOLVED_PRICE_THRESHOLD = 0.99


class PolymarketAPIError(Exception):
    """Upstream answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "", url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"Polymarket API error {status_code}" + (f" for {url}" if url else ""))


class RetryExhaustedError(Exception):
    """Retries ran out without a network exception to re-raise."""

    def __init__(self, message: str = "Max retries exceeded"):
        super().__init__(message)


async def sleep(ms: int) -> None:
    """Suspend for ``ms`` milliseconds."""
    if ms > 0:
        await asyncio.sleep(ms / 1000)


async def _sleep_seconds(seconds: float) -> None:
    await sleep(round(seconds * 1000))


# =============================================================================
# Retry policy
# =============================================================================

def is_retryable_response(response: httpx.Response) -> bool:
    return response.status_code == 429 or response.status_code >= 500


class RetryPolicy:
    """
    tenacity callbacks for one upstream URL.

    Every failed attempt is followed by a wait, the last one included,
    before the error surfaces.
    """

    def __init__(self, url: str, initial_delay: int, max_delay: int):
        self.url = url
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    def delay_ms(self, retry_state: RetryCallState) -> int:
        backoff = self.initial_delay * 2 ** (retry_state.attempt_number - 1)
        outcome = retry_state.outcome
        if outcome.failed:
            return backoff
        if outcome.result().status_code == 429:
            return min(backoff, self.max_delay)
        return settings.server_error_delay_ms

    def wait(self, retry_state: RetryCallState) -> float:
        return self.delay_ms(retry_state) / 1000

    def log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        delay = self.delay_ms(retry_state)
        if outcome.failed:
            logger.warning(f"Network error fetching {self.url}: {outcome.exception()}; retrying in {delay}ms")
        elif outcome.result().status_code == 429:
            logger.info(f"Rate limited by {self.url}, waiting {delay}ms before retry")
        else:
            logger.warning(f"Server error {outcome.result().status_code} from {self.url}, retrying")

    async def exhausted(self, retry_state: RetryCallState) -> httpx.Response:
        """Wait out the last attempt, then re-raise its error or give up."""
        self.log_retry(retry_state)
        await sleep(self.delay_ms(retry_state))
        logger.error(f"Giving up on {self.url} after {retry_state.attempt_number} attempts")
        if retry_state.outcome.failed:
            raise retry_state.outcome.exception()
        raise RetryExhaustedError()


# =============================================================================
# Decoding helpers
# =============================================================================

def parse_json_array(value: Any) -> list[str]:
    """
    Decode a Gamma array field.

    Gamma returns outcomes, outcomePrices and clobTokenIds either as real
    arrays or as JSON-encoded strings like '["Yes", "No"]'. Anything that is
    not an array decodes to an empty list.
    """
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, list):
        return []
    return ["" if item is None else str(item) for item in value]


def derive_resolved_outcome(outcomes: list[str], outcome_prices: list[str]) -> Optional[str]:
    """Label of the first outcome priced at or above 0.99, if any."""
    if not outcomes or not outcome_prices:
        return None
    for i, raw_price in enumerate(outcome_prices):
        try:
            price = float(raw_price)
        except (TypeError, ValueError):
            continue
        if price >= RESOLVED_PRICE_THRESHOLD:
            if i < len(outcomes) and outcomes[i]:
                return outcomes[i]
            return f"Outcome {i}"
    return None


def parse_iso_ms(value: Any) -> Optional[int]:
    """Convert an ISO-8601 string to epoch millis; None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def to_iso(ms: int) -> str:
    """Epoch millis to the ISO form Gamma accepts for date filters."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_tags(tags: Any) -> list[dict]:
    """Keep only well-formed {id, label, slug} tag triples."""
    result = []
    for tag in tags or []:
        if not isinstance(tag, dict) or tag.get("id") is None:
            continue
        result.append({
            "id": str(tag["id"]),
            "label": tag.get("label") or "",
            "slug": tag.get("slug") or "",
        })
    return result


def normalize_market(data: dict) -> dict:
    """
    Map a raw Gamma market onto stored market fields.

    Array fields are decoded and, for closed markets, the resolved outcome
    is derived from the outcome prices.
    """
    outcomes = parse_json_array(data.get("outcomes"))
    outcome_prices = parse_json_array(data.get("outcomePrices"))
    clob_token_ids = parse_json_array(data.get("clobTokenIds"))
    closed = bool(data.get("closed", False))

    events = data.get("events") or []
    event_ref = events[0] if events and isinstance(events[0], dict) else {}

    volume = data.get("volumeNum")
    if volume is None:
        volume = data.get("volume")
    liquidity = data.get("liquidityNum")
    if liquidity is None:
        liquidity = data.get("liquidity")

    return {
        "polymarket_market_id": str(data.get("id")),
        "question": data.get("question") or "",
        "description": data.get("description"),
        "slug": data.get("slug"),
        "condition_id": data.get("conditionId") or "",
        "category": data.get("category"),
        "outcomes": outcomes,
        "outcome_prices": outcome_prices,
        "clob_token_ids": clob_token_ids,
        "active": bool(data.get("active", False)),
        "closed": closed,
        "volume": _to_float(volume),
        "liquidity": _to_float(liquidity),
        "polymarket_created_at": parse_iso_ms(data.get("createdAt")),
        "start_date": parse_iso_ms(data.get("startDate")),
        "end_date": parse_iso_ms(data.get("endDate")),
        "closed_time": parse_iso_ms(data.get("closedTime")),
        "last_trade_price": _to_float(data.get("lastTradePrice")),
        "best_bid": _to_float(data.get("bestBid")),
        "best_ask": _to_float(data.get("bestAsk")),
        "spread": _to_float(data.get("spread")),
        "uma_resolution_status": data.get("umaResolutionStatus"),
        "resolved_by": data.get("resolvedBy"),
        "resolved_outcome": derive_resolved_outcome(outcomes, outcome_prices) if closed else None,
        "polymarket_event_id": str(event_ref["id"]) if event_ref.get("id") is not None else None,
        "event_title": event_ref.get("title"),
        "event_slug": event_ref.get("slug"),
        "tags": normalize_tags(data.get("tags")),
    }


def normalize_event(data: dict, category: Optional[str] = None) -> dict:
    """Map a raw Gamma event onto stored event fields."""
    return {
        "polymarket_event_id": str(data.get("id")),
        "slug": data.get("slug") or "",
        "title": data.get("title") or "",
        "description": data.get("description"),
        "category": category if category is not None else data.get("category"),
        "active": bool(data.get("active", False)),
        "closed": bool(data.get("closed", False)),
        "polymarket_created_at": parse_iso_ms(data.get("createdAt")),
        "start_date": parse_iso_ms(data.get("startDate")),
        "end_date": parse_iso_ms(data.get("endDate")),
        "closed_time": parse_iso_ms(data.get("closedTime")),
        "tags": normalize_tags(data.get("tags")),
    }


# =============================================================================
# Client
# =============================================================================

class PolymarketClient:
    """
    Async client for the Gamma and CLOB APIs.

    Non-success responses surface as PolymarketAPIError; exhausted retries
    re-raise the last network error or RetryExhaustedError.
    """

    def __init__(
        self,
        gamma_base: Optional[str] = None,
        clob_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gamma_base = (gamma_base or settings.gamma_api_base).rstrip("/")
        self.clob_base = (clob_base or settings.clob_api_base).rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout or settings.http_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def throttle(self, delay_ms: int) -> None:
        """Pause between upstream calls."""
        await sleep(delay_ms)

    async def fetch_with_retry(
        self,
        url: str,
        params: Optional[dict] = None,
        max_retries: Optional[int] = None,
        initial_delay: Optional[int] = None,
        max_delay: Optional[int] = None,
    ) -> httpx.Response:
        """
        GET ``url`` with retries.

        429 backs off exponentially (capped at ``max_delay``), 5xx waits a
        fixed delay, network errors back off exponentially without a cap.
        Any other response, including other 4xx, is returned as-is.
        """
        policy = RetryPolicy(
            url,
            initial_delay if initial_delay is not None else settings.retry_initial_delay_ms,
            max_delay if max_delay is not None else settings.retry_max_delay_ms,
        )
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries if max_retries is not None else settings.retry_max_attempts),
            retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(is_retryable_response),
            wait=policy.wait,
            sleep=_sleep_seconds,
            before_sleep=policy.log_retry,
            retry_error_callback=policy.exhausted,
        )
        return await retrying(self.client.get, url, params=params)

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        response = await self.fetch_with_retry(url, params)
        if not response.is_success:
            logger.error(f"HTTP error {response.status_code} fetching {url}")
            raise PolymarketAPIError(response.status_code, response.text, url)
        return response.json()

    # -------------------------------------------------------------------------
    # Gamma
    # -------------------------------------------------------------------------

    async def fetch_markets(
        self,
        limit: int,
        offset: int,
        closed: Optional[bool] = None,
        start_date_min: Optional[str] = None,
        start_date_max: Optional[str] = None,
    ) -> list[dict]:
        """Page through /markets ordered by start date, oldest first."""
        params: dict[str, Any] = {
            "limit": limit,
            "offset": offset,
            "order": "startDate",
            "ascending": "true",
        }
        if closed is not None:
            params["closed"] = str(closed).lower()
        if start_date_min:
            params["start_date_min"] = start_date_min
        if start_date_max:
            params["start_date_max"] = start_date_max

        logger.debug(f"Fetching markets: {params}")
        return await self._get_json(f"{self.gamma_base}/markets", params) or []

    async def fetch_events_by_tag_slug(
        self,
        tag_slug: str,
        limit: int,
        offset: int,
        closed: bool = True,
        start_date_min: Optional[str] = None,
        start_date_max: Optional[str] = None,
    ) -> list[dict]:
        """Events carrying a tag slug, ordered by start date, oldest first."""
        params: dict[str, Any] = {
            "tag_slug": tag_slug,
            "closed": str(closed).lower(),
            "limit": limit,
            "offset": offset,
            "order": "startDate",
            "ascending": "true",
        }
        if start_date_min:
            params["start_date_min"] = start_date_min
        if start_date_max:
            params["start_date_max"] = start_date_max

        logger.debug(f"Fetching events by tag slug: {params}")
        return await self._get_json(f"{self.gamma_base}/events", params) or []

    async def fetch_events_by_tag_id(
        self,
        tag_id: str,
        limit: int,
        offset: int,
        closed: bool = True,
    ) -> list[dict]:
        """Events for a tag id, most recently ended first."""
        params = {
            "tag_id": tag_id,
            "closed": str(closed).lower(),
            "limit": limit,
            "offset": offset,
            "order": "endDate",
            "ascending": "false",
        }
        return await self._get_json(f"{self.gamma_base}/events", params) or []

    async def fetch_events_by_series(
        self,
        series_id: str,
        limit: int,
        offset: int,
        closed: bool = True,
    ) -> list[dict]:
        """Events for a sports series id, most recently ended first."""
        params = {
            "series_id": series_id,
            "closed": str(closed).lower(),
            "limit": limit,
            "offset": offset,
            "order": "endDate",
            "ascending": "false",
        }
        return await self._get_json(f"{self.gamma_base}/events", params) or []

    async def fetch_event(self, event_id: str) -> dict:
        """Full event including its embedded markets."""
        return await self._get_json(f"{self.gamma_base}/events/{event_id}")

    async def fetch_market(self, market_id: str) -> dict:
        """Full market with trading data."""
        logger.debug(f"Fetching market {market_id}")
        return await self._get_json(f"{self.gamma_base}/markets/{market_id}")

    async def fetch_tags(self, limit: int, offset: int) -> list[dict]:
        return await self._get_json(
            f"{self.gamma_base}/tags",
            {"limit": limit, "offset": offset},
        ) or []

    # -------------------------------------------------------------------------
    # CLOB
    # -------------------------------------------------------------------------

    async def fetch_price_history(
        self,
        token_id: str,
        start_ts: int,
        end_ts: int,
        fidelity: Optional[int] = None,
    ) -> list[PricePoint]:
        """
        Price history for a token between two unix-second timestamps.

        The CLOB rejects long intervals, so spans over the configured
        maximum are fetched as sequential chunks. A failing chunk is logged
        and skipped; the rest are concatenated in order.
        """
        fidelity = fidelity or settings.price_history_fidelity
        max_interval = settings.clob_max_interval_days * SECONDS_PER_DAY

        if end_ts - start_ts <= max_interval:
            return await self._fetch_price_history_chunk(token_id, start_ts, end_ts, fidelity)

        logger.debug(
            f"Interval of {round((end_ts - start_ts) / SECONDS_PER_DAY)} days for {token_id} "
            f"exceeds max, fetching in chunks"
        )
        history: list[PricePoint] = []
        chunk_start = start_ts
        while chunk_start < end_ts:
            chunk_end = min(chunk_start + max_interval, end_ts)
            try:
                history.extend(
                    await self._fetch_price_history_chunk(token_id, chunk_start, chunk_end, fidelity)
                )
            except Exception as e:
                logger.error(f"CLOB chunk {chunk_start}-{chunk_end} failed for {token_id}: {e}")
            chunk_start = chunk_end
            await sleep(settings.clob_chunk_delay_ms)

        logger.debug(f"Fetched {len(history)} total points across chunks for {token_id}")
        return history

    async def _fetch_price_history_chunk(
        self,
        token_id: str,
        start_ts: int,
        end_ts: int,
        fidelity: int,
    ) -> list[PricePoint]:
        params = {
            "market": token_id,
            "startTs": start_ts,
            "endTs": end_ts,
            "fidelity": fidelity,
        }
        data = await self._get_json(f"{self.clob_base}/prices-history", params)

        if not isinstance(data, dict):
            return []
        if data.get("error"):
            logger.error(f"CLOB error response for {token_id}: {data['error']}")
            return []
        history = data.get("history")
        if not history:
            if history is None:
                logger.info(f"CLOB returned no history field for {token_id}")
            return []

        return [PricePoint(t=point["t"], p=point["p"]) for point in history]


# Module-level singleton for convenience
_client: Optional[PolymarketClient] = None


def get_polymarket_client() -> PolymarketClient:
    """Get or create the Polymarket client singleton."""
    global _client
    if _client is None:
        _client = PolymarketClient()
    return _client


async def close_polymarket_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
