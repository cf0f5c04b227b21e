"""API endpoints for reading progress on long-form content."""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from assessment_engine.deps import get_reading_options, get_reading_registry, get_store
from assessment_engine.services.reading import ReadingProgressTracker
from assessment_engine.services.registry import LiveRegistry
from assessment_engine.services.store import SessionStore
from assessment_engine.utils import format_time

router = APIRouter()


class ReaderIn(BaseModel):
    user_id: str


class ScrollIn(ReaderIn):
    scroll_top: float = Field(ge=0)
    scroll_height: float = Field(ge=0)
    client_height: float = Field(ge=0)


class VisibilityIn(ReaderIn):
    visible: bool


def _key(user_id: str, content_id: str) -> str:
    return f"{user_id}:{content_id}"


def _progress_view(tracker: ReadingProgressTracker) -> Dict[str, Any]:
    snap = tracker.snapshot()
    return {
        "user_id": snap.user_id,
        "content_id": snap.content_id,
        "completion_percentage": snap.completion_percentage,
        "is_completed": snap.is_completed,
        "time_spent_seconds": snap.time_spent_seconds,
        "time_spent_display": format_time(snap.time_spent_seconds),
        "bookmarks": snap.bookmarks,
        "last_accessed": tracker.last_accessed,
        "save_status": tracker.autosave.status.value,
    }


async def _live_tracker(
    user_id: str, content_id: str, store: SessionStore, registry: LiveRegistry, options: Dict[str, Any]
) -> ReadingProgressTracker:
    async def factory():
        return await ReadingProgressTracker.open(store, user_id, content_id, **options)

    return await registry.get_or_create(_key(user_id, content_id), factory)


@router.post("/{content_id}/progress")
async def api_open_progress(
    content_id: str,
    payload: ReaderIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    return _progress_view(tracker)


@router.post("/{content_id}/progress/scroll")
async def api_scroll(
    content_id: str,
    payload: ScrollIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    tracker.on_scroll(payload.scroll_top, payload.scroll_height, payload.client_height)
    return _progress_view(tracker)


@router.post("/{content_id}/progress/complete")
async def api_mark_complete(
    content_id: str,
    payload: ReaderIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    await tracker.mark_complete()
    return _progress_view(tracker)


@router.post("/{content_id}/progress/reset")
async def api_reset(
    content_id: str,
    payload: ReaderIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    await tracker.reset()
    return _progress_view(tracker)


@router.post("/{content_id}/progress/bookmarks/{position}")
async def api_toggle_bookmark(
    content_id: str,
    position: int,
    payload: ReaderIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    tracker.toggle_bookmark(position)
    return _progress_view(tracker)


@router.post("/{content_id}/progress/visibility")
async def api_visibility(
    content_id: str,
    payload: VisibilityIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_reading_registry),
    options: Dict[str, Any] = Depends(get_reading_options),
):
    tracker = await _live_tracker(payload.user_id, content_id, store, registry, options)
    if payload.visible:
        tracker.resume()
    else:
        await tracker.suspend()
    return _progress_view(tracker)


@router.delete("/{content_id}/progress/live")
async def api_release_progress(
    content_id: str,
    user_id: str = Query(...),
    registry: LiveRegistry = Depends(get_reading_registry),
):
    released = registry.release(_key(user_id, content_id))
    return {"content_id": content_id, "released": released is not None}
