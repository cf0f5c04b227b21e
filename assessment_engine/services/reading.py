"""
services/reading.py

Completion and reading-time tracking for long-form content.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import List, Optional

from assessment_engine.config import (
    READING_DEBOUNCE_SECONDS,
    READING_FLUSH_INTERVAL_SECONDS,
    READING_MIN_TIME_FLUSH_SECONDS,
)
from assessment_engine.schemas import ReadingProgress
from assessment_engine.services.autosave import AutosaveScheduler
from assessment_engine.services.timekeeping import Clock, TimeAccount
from assessment_engine.utils import clamp, round_half_up

logger = logging.getLogger(__name__)


def estimate_completion(
    scroll_top: float, scroll_height: float, client_height: float, *, is_completed: bool = False
) -> Optional[int]:
    """
    Map a scroll position to a completion percentage.

    Scrolling alone tops out at 99; only an explicit completion reports 100.

    Returns:
        the percentage, or None when the content is too short to scroll.
    """
    if is_completed:
        return 100
    max_scroll = scroll_height - client_height
    if max_scroll <= 0:
        return None
    percentage = clamp(round_half_up(scroll_top / max_scroll * 100))
    return min(percentage, 99)


class ReadingProgressTracker:
    """Live progress of one user on one piece of content."""

    def __init__(
        self,
        progress: ReadingProgress,
        store,
        *,
        clock: Clock = time.monotonic,
        flush_interval: Optional[float] = READING_FLUSH_INTERVAL_SECONDS,
        debounce_seconds: float = READING_DEBOUNCE_SECONDS,
        min_flush_seconds: float = READING_MIN_TIME_FLUSH_SECONDS,
    ) -> None:
        self.progress = progress
        self.store = store
        self.last_accessed: Optional[datetime] = progress.last_accessed
        self._debounce_seconds = debounce_seconds
        self._min_flush_seconds = min_flush_seconds
        self._debounce: Optional[asyncio.TimerHandle] = None

        # reading time has no ceiling
        self.time = TimeAccount(None, progress.time_spent_seconds, clock=clock)
        self.autosave = AutosaveScheduler(
            self.snapshot,
            self._persist,
            interval=flush_interval,
            due=self._time_flush_due,
            name=f"reading {progress.user_id}/{progress.content_id}",
        )

    @classmethod
    async def open(cls, store, user_id: str, content_id: str, **kwargs) -> "ReadingProgressTracker":
        """Load stored progress, start counting and touch ``last_accessed``."""
        progress = await asyncio.to_thread(store.load_reading_progress, user_id, content_id)
        tracker = cls(progress, store, **kwargs)
        tracker.time.resume()
        tracker.autosave.start()
        await tracker.autosave.flush_now()
        return tracker

    def snapshot(self) -> ReadingProgress:
        return self.progress.model_copy(update={"time_spent_seconds": self.time.elapsed_seconds})

    # -- events ----------------------------------------------------------------

    def on_scroll(self, scroll_top: float, scroll_height: float, client_height: float) -> int:
        """Update the percentage from a scroll position; the write is debounced."""
        percentage = estimate_completion(
            scroll_top, scroll_height, client_height, is_completed=self.progress.is_completed
        )
        if percentage is not None and percentage != self.progress.completion_percentage:
            self.progress = self.progress.model_copy(update={"completion_percentage": percentage})
            self._schedule_write()
        return self.progress.completion_percentage

    async def mark_complete(self) -> ReadingProgress:
        self._cancel_debounce()
        self.progress = self.progress.model_copy(update={"is_completed": True, "completion_percentage": 100})
        logger.info("Content %s completed by user %s", self.progress.content_id, self.progress.user_id)
        self.time.checkpoint()
        await self.autosave.flush_now()
        return self.snapshot()

    async def reset(self) -> ReadingProgress:
        """Clear completion so the content can be read again. Time and bookmarks are kept."""
        self._cancel_debounce()
        self.progress = self.progress.model_copy(update={"is_completed": False, "completion_percentage": 0})
        self.time.checkpoint()
        await self.autosave.flush_now()
        return self.snapshot()

    def toggle_bookmark(self, position: int) -> List[int]:
        marks = set(self.progress.bookmarks)
        if position in marks:
            marks.discard(position)
        else:
            marks.add(position)
        self.progress = self.progress.model_copy(update={"bookmarks": sorted(marks)})
        self._schedule_write()
        return self.progress.bookmarks

    async def suspend(self) -> bool:
        """Page hidden: stop counting time and write it."""
        self.time.suspend()
        return await self.autosave.flush()

    def resume(self) -> None:
        self.time.resume()

    async def close(self) -> None:
        self._cancel_debounce()
        self.autosave.stop()
        self.time.suspend()
        if self.autosave.has_unsaved_changes():
            await self.autosave.flush_now()

    def teardown(self) -> Optional[asyncio.Task]:
        self._cancel_debounce()
        self.autosave.stop()
        self.time.suspend()
        return self.autosave.flush_in_background()

    # -- internals -------------------------------------------------------------

    def _schedule_write(self) -> None:
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self._debounce_seconds, self._debounced_write)

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _debounced_write(self) -> None:
        self._debounce = None
        self.time.checkpoint()
        self.autosave.flush_in_background()

    def _time_flush_due(self) -> bool:
        self.time.checkpoint()
        return self.time.unpersisted_seconds >= self._min_flush_seconds

    async def _persist(self, snapshot: ReadingProgress) -> ReadingProgress:
        stored = await asyncio.to_thread(self.store.persist_reading_progress, snapshot)
        self.time.mark_persisted(snapshot.time_spent_seconds)
        self.last_accessed = stored.last_accessed
        return stored
