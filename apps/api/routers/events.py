"""
Events router - captured event detail and its markets.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from apps.api.dependencies import get_store, get_user_id
from packages.capture.models import Event, Market
from packages.capture.storage import CaptureStore

router = APIRouter()


def _get_owned_event(event_id: UUID, user_id: str, store: CaptureStore) -> dict:
    row = store.events.get_event(event_id)
    if not row or row["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Event not found")
    return row


@router.get("/{event_id}", response_model=Event)
def get_event(
    event_id: UUID,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    return Event.model_validate(_get_owned_event(event_id, user_id, store))


@router.get("/{event_id}/markets", response_model=List[Market])
def list_event_markets(
    event_id: UUID,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    _get_owned_event(event_id, user_id, store)
    return [Market.model_validate(m) for m in store.markets.list_markets_for_event(event_id)]
