"""
DDL for the capture store. Idempotent; applied at collector/API startup.
"""

import logging

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS capture_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id TEXT NOT NULL,
    name TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'partially_completed', 'failed')),
    tag_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    tag_labels JSONB NOT NULL DEFAULT '[]'::jsonb,
    category TEXT,
    search_term TEXT,
    date_range_start BIGINT NOT NULL,
    date_range_end BIGINT NOT NULL,
    "limit" INTEGER NOT NULL DEFAULT 100,
    progress_total INTEGER NOT NULL DEFAULT 0,
    progress_processed INTEGER NOT NULL DEFAULT 0,
    progress_failed INTEGER NOT NULL DEFAULT 0,
    cursor_offset INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL,
    completed_at BIGINT,
    CHECK (date_range_start < date_range_end)
);
CREATE INDEX IF NOT EXISTS idx_capture_requests_user ON capture_requests (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_capture_requests_status ON capture_requests (status, created_at);

CREATE TABLE IF NOT EXISTS events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    capture_request_id UUID NOT NULL REFERENCES capture_requests(id),
    user_id TEXT NOT NULL,
    polymarket_event_id TEXT NOT NULL UNIQUE,
    slug TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    category TEXT,
    active BOOLEAN NOT NULL DEFAULT FALSE,
    closed BOOLEAN NOT NULL DEFAULT FALSE,
    polymarket_created_at BIGINT,
    start_date BIGINT,
    end_date BIGINT,
    closed_time BIGINT,
    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at BIGINT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_request ON events (capture_request_id, created_at, id);
CREATE INDEX IF NOT EXISTS idx_events_user ON events (user_id);
CREATE INDEX IF NOT EXISTS idx_events_category ON events (category);

CREATE TABLE IF NOT EXISTS markets (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_id UUID REFERENCES events(id) ON DELETE SET NULL,
    capture_request_id UUID NOT NULL REFERENCES capture_requests(id),
    user_id TEXT NOT NULL,
    polymarket_market_id TEXT NOT NULL,
    question TEXT NOT NULL,
    description TEXT,
    slug TEXT,
    condition_id TEXT NOT NULL DEFAULT '',
    category TEXT,
    outcomes JSONB NOT NULL DEFAULT '[]'::jsonb,
    outcome_prices JSONB NOT NULL DEFAULT '[]'::jsonb,
    clob_token_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    active BOOLEAN NOT NULL DEFAULT FALSE,
    closed BOOLEAN NOT NULL DEFAULT FALSE,
    volume DOUBLE PRECISION,
    liquidity DOUBLE PRECISION,
    polymarket_created_at BIGINT,
    start_date BIGINT,
    end_date BIGINT,
    closed_time BIGINT,
    last_trade_price DOUBLE PRECISION,
    best_bid DOUBLE PRECISION,
    best_ask DOUBLE PRECISION,
    spread DOUBLE PRECISION,
    uma_resolution_status TEXT,
    resolved_by TEXT,
    resolved_outcome TEXT,
    polymarket_event_id TEXT,
    event_title TEXT,
    event_slug TEXT,
    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at BIGINT NOT NULL,
    seq BIGSERIAL
);
CREATE INDEX IF NOT EXISTS idx_markets_request ON markets (capture_request_id, seq);
CREATE INDEX IF NOT EXISTS idx_markets_event ON markets (event_id);
CREATE INDEX IF NOT EXISTS idx_markets_user ON markets (user_id);

CREATE TABLE IF NOT EXISTS price_history (
    id BIGSERIAL PRIMARY KEY,
    market_id UUID NOT NULL REFERENCES markets(id),
    capture_request_id UUID NOT NULL REFERENCES capture_requests(id),
    user_id TEXT NOT NULL,
    clob_token_id TEXT NOT NULL,
    outcome_label TEXT NOT NULL,
    timestamp BIGINT NOT NULL,
    price DOUBLE PRECISION NOT NULL,
    is_noon_snapshot BOOLEAN NOT NULL DEFAULT FALSE,
    created_at BIGINT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_price_history_market_token_time
    ON price_history (market_id, clob_token_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_price_history_request ON price_history (capture_request_id);

CREATE TABLE IF NOT EXISTS daily_price_summary (
    id BIGSERIAL PRIMARY KEY,
    market_id UUID NOT NULL REFERENCES markets(id),
    capture_request_id UUID NOT NULL REFERENCES capture_requests(id),
    user_id TEXT NOT NULL,
    clob_token_id TEXT NOT NULL,
    outcome_label TEXT NOT NULL,
    date TEXT NOT NULL,
    hour INTEGER NOT NULL CHECK (hour BETWEEN 0 AND 23),
    price DOUBLE PRECISION NOT NULL,
    noon_price DOUBLE PRECISION NOT NULL,
    open_price DOUBLE PRECISION NOT NULL,
    close_price DOUBLE PRECISION NOT NULL,
    high_price DOUBLE PRECISION NOT NULL,
    low_price DOUBLE PRECISION NOT NULL,
    created_at BIGINT NOT NULL,
    UNIQUE (market_id, clob_token_id, date, hour)
);
CREATE INDEX IF NOT EXISTS idx_daily_price_summary_request ON daily_price_summary (capture_request_id);

CREATE TABLE IF NOT EXISTS polymarket_tags (
    polymarket_tag_id TEXT PRIMARY KEY,
    label TEXT NOT NULL,
    slug TEXT NOT NULL,
    last_fetched_at BIGINT NOT NULL
);
"""


def apply_schema(db) -> None:
    """Create tables and indexes if they do not exist."""
    db.execute(SCHEMA_SQL)
    logger.info("Capture store schema applied")
