"""
Markets router - captured market detail and down-sampled prices.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from apps.api.dependencies import get_store, get_user_id
from packages.capture.models import DailyPriceSummary, Event, MarketWithEvent
from packages.capture.storage import CaptureStore

router = APIRouter()


def _get_owned_market(market_id: UUID, user_id: str, store: CaptureStore) -> dict:
    row = store.markets.get_market(market_id)
    if not row or row["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Market not found")
    return row


@router.get("/{market_id}", response_model=MarketWithEvent)
def get_market(
    market_id: UUID,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    """Market with its linked event, if any."""
    row = _get_owned_market(market_id, user_id, store)
    event = store.events.get_event(row["event_id"]) if row.get("event_id") else None
    return MarketWithEvent.model_validate({
        **row,
        "event": Event.model_validate(event) if event else None,
    })


@router.get("/{market_id}/daily-prices", response_model=List[DailyPriceSummary])
def get_daily_prices(
    market_id: UUID,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    """Fixed-hour price snapshots for every outcome token, oldest first."""
    _get_owned_market(market_id, user_id, store)
    return [
        DailyPriceSummary.model_validate(r)
        for r in store.markets.list_daily_summaries_for_market(market_id)
    ]
