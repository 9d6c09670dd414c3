"""
Shared FastAPI dependencies.

Identity arrives as an opaque ``X-User-Id`` header set by the fronting
auth layer; this service never authenticates on its own.
"""

from uuid import UUID

from fastapi import Depends, Header, HTTPException

from packages.capture.storage import CaptureStore, DatabasePool, get_capture_store, get_db_pool


def get_user_id(x_user_id: str = Header(default="", alias="X-User-Id")) -> str:
    """Dependency returning the caller's user id."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_store() -> CaptureStore:
    return get_capture_store()


def get_owned_request(
    request_id: UUID,
    user_id: str = Depends(get_user_id),
    store: CaptureStore = Depends(get_store),
) -> dict:
    """Capture request row owned by the caller, else 404."""
    row = store.requests.get_request(request_id)
    if not row or row["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Capture request not found")
    return row


def get_db() -> DatabasePool:
    return get_db_pool()
