"""
Pydantic models for capture requests, events, markets and price summaries.
Used for validation and serialization throughout the application.

All timestamps are integer epoch milliseconds (UTC).
"""

import time
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class CaptureStatus(str, Enum):
    """Lifecycle status of a capture request."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "CaptureStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]

    @classmethod
    def sources_for(cls, target: "CaptureStatus") -> list["CaptureStatus"]:
        """Statuses from which ``target`` may be entered."""
        return [s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]


TERMINAL_STATUSES = frozenset({
    CaptureStatus.COMPLETED,
    CaptureStatus.PARTIALLY_COMPLETED,
    CaptureStatus.FAILED,
})

ALLOWED_TRANSITIONS: dict[CaptureStatus, frozenset[CaptureStatus]] = {
    CaptureStatus.PENDING: frozenset({CaptureStatus.PROCESSING}),
    CaptureStatus.PROCESSING: TERMINAL_STATUSES,
    CaptureStatus.COMPLETED: frozenset(),
    CaptureStatus.PARTIALLY_COMPLETED: frozenset(),
    CaptureStatus.FAILED: frozenset(),
}

# Error message stored while a cascade delete is in flight
DELETING_SENTINEL = "Deleting..."
STALE_PROCESSING_MESSAGE = "Processing timed out - request was stuck"


# =============================================================================
# Capture Requests
# =============================================================================

class CaptureProgress(BaseModel):
    """Counters tracked while a request is processed."""
    total: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)

    @property
    def remaining(self) -> int:
        return max(self.total - self.processed - self.failed, 0)


class CaptureRequestCreate(BaseModel):
    """Payload for creating a capture request."""
    name: Optional[str] = Field(default=None, max_length=200)
    date_range_start: int = Field(..., ge=0, description="Epoch millis")
    date_range_end: int = Field(..., ge=0, description="Epoch millis")
    limit: Optional[int] = Field(default=None, ge=1, le=10_000)
    category: Optional[str] = Field(default=None, max_length=128)
    search_term: Optional[str] = Field(default=None, max_length=200)
    tag_ids: list[str] = Field(default_factory=list)

    @field_validator("category", "search_term", "name")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def validate_window(self) -> "CaptureRequestCreate":
        if self.date_range_start >= self.date_range_end:
            raise ValueError("Start date must be before end date")
        if self.date_range_end > now_ms():
            raise ValueError("Date range must be in the past")
        return self


class CaptureRequest(BaseModel):
    """Full capture request record."""
    id: UUID
    user_id: str
    name: Optional[str] = None
    status: CaptureStatus
    tag_ids: list[str] = Field(default_factory=list)
    tag_labels: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    search_term: Optional[str] = None
    date_range_start: int
    date_range_end: int
    limit: int
    progress: CaptureProgress = Field(default_factory=CaptureProgress)
    cursor_offset: int = 0
    error_message: Optional[str] = None
    created_at: int
    updated_at: int
    completed_at: Optional[int] = None

    class Config:
        from_attributes = True

    @property
    def is_deleting(self) -> bool:
        return self.error_message == DELETING_SENTINEL

    @classmethod
    def from_row(cls, row: dict) -> "CaptureRequest":
        """Build from a capture_requests row (flat progress columns)."""
        data = dict(row)
        data["progress"] = CaptureProgress(
            total=data.pop("progress_total", 0) or 0,
            processed=data.pop("progress_processed", 0) or 0,
            failed=data.pop("progress_failed", 0) or 0,
        )
        return cls.model_validate(data)


# =============================================================================
# Upstream entities
# =============================================================================

class TagRef(BaseModel):
    """Tag triple as returned by the Gamma API."""
    id: str
    label: str
    slug: str

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)


class Event(BaseModel):
    """Persisted Polymarket event."""
    id: UUID
    capture_request_id: UUID
    user_id: str
    polymarket_event_id: str
    slug: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    active: bool = False
    closed: bool = False
    polymarket_created_at: Optional[int] = None
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    closed_time: Optional[int] = None
    tags: list[TagRef] = Field(default_factory=list)
    created_at: int

    class Config:
        from_attributes = True


class Market(BaseModel):
    """Persisted Polymarket market."""
    id: UUID
    event_id: Optional[UUID] = None
    capture_request_id: UUID
    user_id: str
    polymarket_market_id: str
    question: str
    description: Optional[str] = None
    slug: Optional[str] = None
    condition_id: str = ""
    category: Optional[str] = None
    outcomes: list[str] = Field(default_factory=list)
    outcome_prices: list[str] = Field(default_factory=list)
    clob_token_ids: list[str] = Field(default_factory=list)
    active: bool = False
    closed: bool = False
    volume: Optional[float] = None
    liquidity: Optional[float] = None
    polymarket_created_at: Optional[int] = None
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    closed_time: Optional[int] = None
    last_trade_price: Optional[float] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    spread: Optional[float] = None
    uma_resolution_status: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_outcome: Optional[str] = None
    polymarket_event_id: Optional[str] = None
    event_title: Optional[str] = None
    event_slug: Optional[str] = None
    tags: list[TagRef] = Field(default_factory=list)
    created_at: int

    class Config:
        from_attributes = True

    def outcome_tokens(self) -> list[tuple[str, str]]:
        """(outcome label, clob token id) pairs, labelling missing outcomes by index."""
        return [
            (self.outcomes[i] if i < len(self.outcomes) and self.outcomes[i] else f"Outcome {i}", token_id)
            for i, token_id in enumerate(self.clob_token_ids)
        ]


class MarketWithEvent(Market):
    """Market joined with its linked event, if any."""
    event: Optional[Event] = None


# =============================================================================
# Price data
# =============================================================================

class PricePoint(BaseModel):
    """One CLOB price-history sample."""
    t: int = Field(..., description="Unix seconds")
    p: float


class DailyPriceSummary(BaseModel):
    """Down-sampled price at a fixed UTC hour."""
    market_id: UUID
    capture_request_id: UUID
    user_id: str
    clob_token_id: str
    outcome_label: str
    date: str  # YYYY-MM-DD
    hour: int = Field(..., ge=0, le=23)
    price: float
    noon_price: float
    open_price: float
    close_price: float
    high_price: float
    low_price: float
    created_at: int

    class Config:
        from_attributes = True


class PolymarketTag(BaseModel):
    """Cached upstream tag."""
    polymarket_tag_id: str
    label: str
    slug: str
    last_fetched_at: int

    class Config:
        from_attributes = True
