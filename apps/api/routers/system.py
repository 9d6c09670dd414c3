from typing import List

from fastapi import APIRouter, Depends

from apps.api.dependencies import get_store
from packages.capture.categories import ALL_CATEGORIES, MAIN_CATEGORIES
from packages.capture.models import PolymarketTag
from packages.capture.storage import CaptureStore

router = APIRouter()


@router.get("/tags", response_model=List[PolymarketTag])
def list_tags(store: CaptureStore = Depends(get_store)):
    """Cached Polymarket tags, refreshed daily by the collector."""
    return [PolymarketTag.model_validate(r) for r in store.tags.list_tags()]


@router.get("/categories")
def list_categories():
    """Curated categories for tag-set captures and top-level category filters."""
    return {
        "curated": [
            {
                "id": c.id,
                "label": c.label,
                "slug": c.slug,
                "type": c.type,
                "series_id": c.series_id,
                "tag_id": c.tag_id,
            }
            for c in ALL_CATEGORIES
        ],
        "main": list(MAIN_CATEGORIES),
    }
