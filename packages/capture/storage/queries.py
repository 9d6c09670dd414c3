"""
Raw SQL queries for the capture store.
Centralized query definitions for consistency and maintainability.

This is the persisted-store surface the pipeline consumes: get-by-id,
insert, patch and indexed scans over capture requests, events, markets,
price rows and tags. Rows are returned as plain dicts.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from psycopg.types.json import Jsonb

from packages.capture.models import (
    DELETING_SENTINEL,
    CaptureRequestCreate,
    CaptureStatus,
    now_ms,
)
from packages.capture.storage.db import get_db_pool

# Serializes admission so two schedulers cannot both promote a request
ADMISSION_LOCK_KEY = 727_001

MARKET_COLUMNS = (
    "event_id",
    "capture_request_id",
    "user_id",
    "polymarket_market_id",
    "question",
    "description",
    "slug",
    "condition_id",
    "category",
    "outcomes",
    "outcome_prices",
    "clob_token_ids",
    "active",
    "closed",
    "volume",
    "liquidity",
    "polymarket_created_at",
    "start_date",
    "end_date",
    "closed_time",
    "last_trade_price",
    "best_bid",
    "best_ask",
    "spread",
    "uma_resolution_status",
    "resolved_by",
    "resolved_outcome",
    "polymarket_event_id",
    "event_title",
    "event_slug",
    "tags",
    "created_at",
)

EVENT_COLUMNS = (
    "capture_request_id",
    "user_id",
    "polymarket_event_id",
    "slug",
    "title",
    "description",
    "category",
    "active",
    "closed",
    "polymarket_created_at",
    "start_date",
    "end_date",
    "closed_time",
    "tags",
    "created_at",
)

JSON_COLUMNS = {"outcomes", "outcome_prices", "clob_token_ids", "tags"}

# Child tables first so foreign keys never block a delete batch
CASCADE_TABLES = ("daily_price_summary", "price_history", "markets", "events")


def _params(columns: tuple[str, ...], row: dict) -> tuple:
    return tuple(
        Jsonb(row.get(col) or []) if col in JSON_COLUMNS else row.get(col)
        for col in columns
    )


def _first(rows: Optional[list[dict]]) -> Optional[dict]:
    return rows[0] if rows else None


@dataclass
class CaptureQueries:
    """
    SQL query methods for capture requests and their lifecycle.
    Uses raw SQL for explicit control over guarded status updates.
    """

    # =========================================================================
    # CAPTURE REQUESTS
    # =========================================================================

    @staticmethod
    def create_request(
        user_id: str,
        payload: CaptureRequestCreate,
        limit: int,
        tag_labels: list[str],
    ) -> dict:
        """Insert a new pending capture request."""
        db = get_db_pool()
        now = now_ms()
        query = """
            INSERT INTO capture_requests (
                user_id, name, status, tag_ids, tag_labels, category, search_term,
                date_range_start, date_range_end, "limit", created_at, updated_at
            )
            VALUES (%s, %s, 'pending', %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        result = db.execute(
            query,
            (
                user_id,
                payload.name,
                Jsonb(payload.tag_ids),
                Jsonb(tag_labels),
                payload.category,
                payload.search_term,
                payload.date_range_start,
                payload.date_range_end,
                limit,
                now,
                now,
            ),
            fetch=True,
        )
        return result[0]

    @staticmethod
    def get_request(request_id: UUID) -> Optional[dict]:
        db = get_db_pool()
        return _first(db.execute(
            "SELECT * FROM capture_requests WHERE id = %s",
            (str(request_id),),
            fetch=True,
        ))

    @staticmethod
    def list_requests_for_user(user_id: str) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM capture_requests
            WHERE user_id = %s
            ORDER BY created_at DESC
        """
        return db.execute(query, (user_id,), fetch=True) or []

    @staticmethod
    def get_user_stats(user_id: str) -> dict:
        """Totals shown on the dashboard header."""
        db = get_db_pool()
        query = """
            SELECT
                (SELECT COUNT(*) FROM capture_requests WHERE user_id = %s) AS total_requests,
                (SELECT COUNT(*) FROM events WHERE user_id = %s) AS total_events,
                (SELECT COUNT(*) FROM markets WHERE user_id = %s) AS total_markets,
                (SELECT COUNT(*) FROM capture_requests
                    WHERE user_id = %s AND status = 'processing') AS in_progress
        """
        row = _first(db.execute(query, (user_id,) * 4, fetch=True)) or {}
        return {key: int(row.get(key) or 0) for key in (
            "total_requests", "total_events", "total_markets", "in_progress",
        )}

    @staticmethod
    def get_processing() -> Optional[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM capture_requests
            WHERE status = 'processing'
            ORDER BY updated_at ASC
            LIMIT 1
        """
        return _first(db.execute(query, fetch=True))

    @staticmethod
    def fail_stale_processing(cutoff_ms: int, message: str) -> list[dict]:
        """Force-fail processing requests not updated since ``cutoff_ms``."""
        db = get_db_pool()
        now = now_ms()
        query = """
            UPDATE capture_requests
            SET status = 'failed', error_message = %s, updated_at = %s, completed_at = %s
            WHERE status = 'processing' AND updated_at < %s
            RETURNING *
        """
        return db.execute(query, (message, now, now, cutoff_ms), fetch=True) or []

    @staticmethod
    def claim_next_pending() -> Optional[dict]:
        """
        Promote the oldest pending request to processing.

        Returns None (claims nothing) while any request is processing.
        """
        db = get_db_pool()
        with db.transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", (ADMISSION_LOCK_KEY,))
            cur.execute(
                """
                UPDATE capture_requests
                SET status = 'processing', updated_at = %s
                WHERE id = (
                    SELECT id FROM capture_requests
                    WHERE status = 'pending'
                    ORDER BY created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                AND NOT EXISTS (
                    SELECT 1 FROM capture_requests WHERE status = 'processing'
                )
                RETURNING *
                """,
                (now_ms(),),
            )
            return cur.fetchone()

    @staticmethod
    def transition_status(
        request_id: UUID,
        target: CaptureStatus,
        error_message: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Move a request to ``target`` if its current status allows it.

        Returns the updated row, or None when the transition was rejected.
        """
        db = get_db_pool()
        now = now_ms()
        sources = [s.value for s in CaptureStatus.sources_for(target)]
        query = """
            UPDATE capture_requests
            SET status = %s,
                updated_at = %s,
                completed_at = CASE WHEN %s THEN %s ELSE completed_at END,
                error_message = COALESCE(%s, error_message)
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
        """
        return _first(db.execute(
            query,
            (
                target.value,
                now,
                target.is_terminal,
                now,
                error_message,
                str(request_id),
                sources,
            ),
            fetch=True,
        ))

    @staticmethod
    def set_total(request_id: UUID, total: int) -> None:
        db = get_db_pool()
        db.execute(
            "UPDATE capture_requests SET progress_total = %s, updated_at = %s WHERE id = %s",
            (total, now_ms(), str(request_id)),
        )

    @staticmethod
    def increment_progress(request_id: UUID, processed: int = 0, failed: int = 0) -> Optional[dict]:
        db = get_db_pool()
        query = """
            UPDATE capture_requests
            SET progress_processed = progress_processed + %s,
                progress_failed = progress_failed + %s,
                updated_at = %s
            WHERE id = %s
            RETURNING *
        """
        return _first(db.execute(query, (processed, failed, now_ms(), str(request_id)), fetch=True))

    @staticmethod
    def set_cursor(request_id: UUID, offset: int) -> None:
        db = get_db_pool()
        db.execute(
            "UPDATE capture_requests SET cursor_offset = %s, updated_at = %s WHERE id = %s",
            (offset, now_ms(), str(request_id)),
        )

    @staticmethod
    def mark_deleting(request_id: UUID) -> Optional[dict]:
        """Force a request into failed with the deleting sentinel."""
        db = get_db_pool()
        now = now_ms()
        query = """
            UPDATE capture_requests
            SET status = 'failed', error_message = %s, updated_at = %s,
                completed_at = COALESCE(completed_at, %s)
            WHERE id = %s AND error_message IS DISTINCT FROM %s
            RETURNING *
        """
        return _first(db.execute(
            query,
            (DELETING_SENTINEL, now, now, str(request_id), DELETING_SENTINEL),
            fetch=True,
        ))

    @staticmethod
    def list_deleting() -> list[dict]:
        """Requests marked for deletion whose rows may still exist."""
        db = get_db_pool()
        return db.execute(
            "SELECT * FROM capture_requests WHERE error_message = %s ORDER BY updated_at ASC",
            (DELETING_SENTINEL,),
            fetch=True,
        ) or []

    @staticmethod
    def reset_processing(message: str = "Manually stopped") -> int:
        """Fail every processing request; returns how many were stopped."""
        db = get_db_pool()
        now = now_ms()
        rows = db.execute(
            """
            UPDATE capture_requests
            SET status = 'failed', error_message = %s, updated_at = %s, completed_at = %s
            WHERE status = 'processing'
            RETURNING id
            """,
            (message, now, now),
            fetch=True,
        ) or []
        return len(rows)

    # =========================================================================
    # CASCADE DELETE
    # =========================================================================

    @staticmethod
    def delete_request_rows(table: str, request_id: UUID, batch_size: int) -> int:
        """Delete up to ``batch_size`` rows of ``table`` owned by a request."""
        if table not in CASCADE_TABLES:
            raise ValueError(f"Unknown cascade table: {table}")
        db = get_db_pool()
        rows = db.execute(
            f"""
            WITH deleted AS (
                DELETE FROM {table}
                WHERE ctid IN (
                    SELECT ctid FROM {table}
                    WHERE capture_request_id = %s
                    LIMIT %s
                )
                RETURNING 1
            )
            SELECT COUNT(*) AS cnt FROM deleted
            """,
            (str(request_id), batch_size),
            fetch=True,
        )
        return int(rows[0]["cnt"]) if rows else 0

    @staticmethod
    def delete_request(request_id: UUID) -> bool:
        db = get_db_pool()
        rows = db.execute(
            "DELETE FROM capture_requests WHERE id = %s RETURNING id",
            (str(request_id),),
            fetch=True,
        )
        return bool(rows)


@dataclass
class EventQueries:
    """SQL query methods for captured events."""

    @staticmethod
    def save_discovered_events(request_id: UUID, user_id: str, events: list[dict]) -> int:
        """
        Insert events for a request. An upstream id already stored by an
        earlier request moves to this one, so the event batch pages over it.

        Returns the number of events this request now owns.
        """
        if not events:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = f"""
            INSERT INTO events ({", ".join(EVENT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(EVENT_COLUMNS))})
            ON CONFLICT (polymarket_event_id) DO UPDATE SET
                capture_request_id = EXCLUDED.capture_request_id,
                user_id = EXCLUDED.user_id,
                category = EXCLUDED.category,
                closed = EXCLUDED.closed,
                closed_time = EXCLUDED.closed_time
            RETURNING id
        """
        saved = 0
        with db.transaction() as cur:
            for event in events:
                cur.execute(query, _params(EVENT_COLUMNS, {
                    **event,
                    "capture_request_id": str(request_id),
                    "user_id": user_id,
                    "created_at": now,
                }))
                if cur.fetchone() is not None:
                    saved += 1
        return saved

    @staticmethod
    def upsert_events(request_id: UUID, user_id: str, events: list[dict]) -> int:
        """
        Insert each event if absent; otherwise patch category, closed and
        closed_time only. All events are written in one transaction.
        """
        if not events:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = f"""
            INSERT INTO events ({", ".join(EVENT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(EVENT_COLUMNS))})
            ON CONFLICT (polymarket_event_id) DO UPDATE SET
                category = EXCLUDED.category,
                closed = EXCLUDED.closed,
                closed_time = EXCLUDED.closed_time
        """
        with db.transaction() as cur:
            for event in events:
                cur.execute(query, _params(EVENT_COLUMNS, {
                    **event,
                    "capture_request_id": str(request_id),
                    "user_id": user_id,
                    "created_at": now,
                }))
        return len(events)

    @staticmethod
    def get_event(event_id: UUID) -> Optional[dict]:
        db = get_db_pool()
        return _first(db.execute("SELECT * FROM events WHERE id = %s", (str(event_id),), fetch=True))

    @staticmethod
    def get_event_by_polymarket_id(polymarket_event_id: str) -> Optional[dict]:
        db = get_db_pool()
        return _first(db.execute(
            "SELECT * FROM events WHERE polymarket_event_id = %s",
            (polymarket_event_id,),
            fetch=True,
        ))

    @staticmethod
    def get_events_page(request_id: UUID, offset: int, limit: int) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM events
            WHERE capture_request_id = %s
            ORDER BY created_at ASC, id ASC
            LIMIT %s OFFSET %s
        """
        return db.execute(query, (str(request_id), limit, offset), fetch=True) or []

    @staticmethod
    def list_events_for_request(request_id: UUID) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM events
            WHERE capture_request_id = %s
            ORDER BY created_at ASC, id ASC
        """
        return db.execute(query, (str(request_id),), fetch=True) or []


@dataclass
class MarketQueries:
    """SQL query methods for captured markets and their price data."""

    @staticmethod
    def save_discovered_markets(request_id: UUID, user_id: str, markets: list[dict]) -> int:
        """Insert a discovered market set for a request in one transaction."""
        if not markets:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = f"""
            INSERT INTO markets ({", ".join(MARKET_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(MARKET_COLUMNS))})
        """
        params_seq = [
            _params(MARKET_COLUMNS, {
                **market,
                "capture_request_id": str(request_id),
                "user_id": user_id,
                "created_at": now,
            })
            for market in markets
        ]
        return db.execute_many(query, params_seq)

    @staticmethod
    def insert_market(request_id: UUID, user_id: str, event_id: UUID, market: dict) -> dict:
        """Insert one market already linked to a stored event."""
        db = get_db_pool()
        query = f"""
            INSERT INTO markets ({", ".join(MARKET_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(MARKET_COLUMNS))})
            RETURNING *
        """
        result = db.execute(query, _params(MARKET_COLUMNS, {
            **market,
            "event_id": str(event_id),
            "capture_request_id": str(request_id),
            "user_id": user_id,
            "created_at": now_ms(),
        }), fetch=True)
        return result[0]

    @staticmethod
    def get_market(market_id: UUID) -> Optional[dict]:
        db = get_db_pool()
        return _first(db.execute("SELECT * FROM markets WHERE id = %s", (str(market_id),), fetch=True))

    @staticmethod
    def get_markets_page(request_id: UUID, offset: int, limit: int) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM markets
            WHERE capture_request_id = %s
            ORDER BY seq ASC
            LIMIT %s OFFSET %s
        """
        return db.execute(query, (str(request_id), limit, offset), fetch=True) or []

    @staticmethod
    def list_markets_for_request(request_id: UUID) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM markets
            WHERE capture_request_id = %s
            ORDER BY seq ASC
        """
        return db.execute(query, (str(request_id),), fetch=True) or []

    @staticmethod
    def list_markets_for_event(event_id: UUID) -> list[dict]:
        db = get_db_pool()
        return db.execute(
            "SELECT * FROM markets WHERE event_id = %s ORDER BY seq ASC",
            (str(event_id),),
            fetch=True,
        ) or []

    @staticmethod
    def link_market_to_event(market_id: UUID, event_id: UUID, category: Optional[str]) -> None:
        db = get_db_pool()
        db.execute(
            "UPDATE markets SET event_id = %s, category = %s WHERE id = %s",
            (str(event_id), category, str(market_id)),
        )

    @staticmethod
    def save_price_summaries(rows: list[dict]) -> int:
        """Upsert down-sampled rows, one per (market, token, date, hour) slot."""
        if not rows:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = """
            INSERT INTO daily_price_summary (
                market_id, capture_request_id, user_id, clob_token_id, outcome_label,
                date, hour, price, noon_price, open_price, close_price, high_price,
                low_price, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (market_id, clob_token_id, date, hour) DO UPDATE SET
                price = EXCLUDED.price,
                noon_price = EXCLUDED.noon_price,
                open_price = EXCLUDED.open_price,
                close_price = EXCLUDED.close_price,
                high_price = EXCLUDED.high_price,
                low_price = EXCLUDED.low_price
        """
        params_seq = [
            (
                str(r["market_id"]),
                str(r["capture_request_id"]),
                r["user_id"],
                r["clob_token_id"],
                r["outcome_label"],
                r["date"],
                r["hour"],
                r["price"],
                r["noon_price"],
                r["open_price"],
                r["close_price"],
                r["high_price"],
                r["low_price"],
                now,
            )
            for r in rows
        ]
        return db.execute_many(query, params_seq)

    @staticmethod
    def insert_raw_price_history(rows: list[dict]) -> int:
        """Append raw price points (duplicates across re-runs are not filtered)."""
        if not rows:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = """
            INSERT INTO price_history (
                market_id, capture_request_id, user_id, clob_token_id, outcome_label,
                timestamp, price, is_noon_snapshot, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params_seq = [
            (
                str(r["market_id"]),
                str(r["capture_request_id"]),
                r["user_id"],
                r["clob_token_id"],
                r["outcome_label"],
                r["timestamp"],
                r["price"],
                r["is_noon_snapshot"],
                now,
            )
            for r in rows
        ]
        return db.execute_many(query, params_seq)

    @staticmethod
    def list_daily_summaries_for_market(market_id: UUID) -> list[dict]:
        db = get_db_pool()
        query = """
            SELECT * FROM daily_price_summary
            WHERE market_id = %s
            ORDER BY clob_token_id, date, hour
        """
        return db.execute(query, (str(market_id),), fetch=True) or []

    @staticmethod
    def list_daily_summaries_for_request(request_id: UUID) -> list[dict]:
        db = get_db_pool()
        return db.execute(
            "SELECT * FROM daily_price_summary WHERE capture_request_id = %s",
            (str(request_id),),
            fetch=True,
        ) or []


@dataclass
class TagQueries:
    """SQL query methods for the cached tag list."""

    @staticmethod
    def upsert_tags(tags: list[dict]) -> int:
        if not tags:
            return 0
        db = get_db_pool()
        now = now_ms()
        query = """
            INSERT INTO polymarket_tags (polymarket_tag_id, label, slug, last_fetched_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (polymarket_tag_id) DO UPDATE SET
                label = EXCLUDED.label,
                slug = EXCLUDED.slug,
                last_fetched_at = EXCLUDED.last_fetched_at
        """
        return db.execute_many(
            query,
            [(str(t["id"]), t["label"], t["slug"], now) for t in tags],
        )

    @staticmethod
    def list_tags() -> list[dict]:
        db = get_db_pool()
        return db.execute("SELECT * FROM polymarket_tags ORDER BY label", fetch=True) or []


@dataclass
class CaptureStore:
    """
    Bundle of the query classes a pipeline step needs.

    Steps receive a store instead of importing query classes directly so the
    whole persisted surface can be swapped in one place.
    """
    requests: type = CaptureQueries
    events: type = EventQueries
    markets: type = MarketQueries
    tags: type = TagQueries


def get_capture_store() -> CaptureStore:
    return CaptureStore()
