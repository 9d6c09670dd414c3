"""
Captures router - create, inspect and delete capture requests.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from apps.api.dependencies import get_owned_request, get_store, get_user_id
from apps.api.limiter import CREATE_CAPTURE_LIMIT, limiter
from packages.capture.analytics import SkewAnalysis, compute_skew_analysis
from packages.capture.categories import get_category
from packages.capture.models import CaptureRequest, CaptureRequestCreate, Event, Market
from packages.capture.settings import settings
from packages.capture.storage import CaptureStore

router = APIRouter()


# ============================================================================
# Models
# ============================================================================

class CaptureStatsResponse(BaseModel):
    total_requests: int
    total_events: int
    total_markets: int
    in_progress: int


class DeleteResponse(BaseModel):
    id: UUID
    status: str = "deleting"


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/", response_model=CaptureRequest, status_code=status.HTTP_201_CREATED)
@limiter.limit(CREATE_CAPTURE_LIMIT)
def create_capture(
    request: Request,
    data: CaptureRequestCreate,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    """Create a pending capture request; the collector picks it up."""
    tag_labels = []
    for tag_id in data.tag_ids:
        category = get_category(tag_id)
        if category is None:
            raise HTTPException(status_code=422, detail=f"Unknown category id: {tag_id}")
        tag_labels.append(category.label)

    row = store.requests.create_request(
        user_id,
        data,
        data.limit or settings.default_capture_limit,
        tag_labels,
    )
    return CaptureRequest.from_row(row)


@router.get("/", response_model=List[CaptureRequest])
def list_captures(
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    """The caller's capture requests, newest first."""
    return [CaptureRequest.from_row(r) for r in store.requests.list_requests_for_user(user_id)]


@router.get("/stats", response_model=CaptureStatsResponse)
def capture_stats(
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
):
    return CaptureStatsResponse(**store.requests.get_user_stats(user_id))


@router.get("/{request_id}", response_model=CaptureRequest)
def get_capture(row: dict = Depends(get_owned_request)):
    return CaptureRequest.from_row(row)


@router.delete("/{request_id}", response_model=DeleteResponse, status_code=status.HTTP_202_ACCEPTED)
def delete_capture(
    row: dict = Depends(get_owned_request),
    store: CaptureStore = Depends(get_store),
):
    """
    Mark a request for deletion.

    The request is forced to failed with a deleting marker; the collector
    removes it and all of its rows in batches.
    """
    request = CaptureRequest.from_row(row)
    if request.is_deleting or store.requests.mark_deleting(request.id) is None:
        raise HTTPException(status_code=409, detail="Capture request is already being deleted")
    return DeleteResponse(id=request.id)


@router.get("/{request_id}/markets", response_model=List[Market])
def list_capture_markets(
    row: dict = Depends(get_owned_request),
    store: CaptureStore = Depends(get_store),
):
    return [Market.model_validate(m) for m in store.markets.list_markets_for_request(row["id"])]


@router.get("/{request_id}/events", response_model=List[Event])
def list_capture_events(
    row: dict = Depends(get_owned_request),
    store: CaptureStore = Depends(get_store),
):
    return [Event.model_validate(e) for e in store.events.list_events_for_request(row["id"])]


@router.get("/{request_id}/skew", response_model=SkewAnalysis)
def capture_skew(
    row: dict = Depends(get_owned_request),
    store: CaptureStore = Depends(get_store),
):
    """Average price skew from the final outcome by hours before close."""
    markets = store.markets.list_markets_for_request(row["id"])
    summaries = store.markets.list_daily_summaries_for_request(row["id"])
    return compute_skew_analysis(markets, summaries)
