"""
services/autosave.py

Owns the timers of one live object and serialises its writes to the store.

Triggers (periodic tick, visibility change, manual save, lifecycle
transitions, teardown) all end in the same snapshot-and-persist call. The
in-memory object stays authoritative: a failed write leaves the snapshot
unsaved and the next trigger retries it.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set

from pydantic import BaseModel

from assessment_engine.exceptions import PersistenceError
from assessment_engine.utils import utcnow

logger = logging.getLogger(__name__)


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class AutosaveScheduler:
    """
    Args:
        snapshot:      returns the current state to write.
        persist:       coroutine writing one snapshot; raises PersistenceError.
        interval:      seconds between periodic writes (None disables the timer).
        tick:          optional coroutine run every ``tick_interval`` seconds
                       (the per-second countdown).
        tick_interval: seconds between ticks.
        due:           optional predicate consulted by the periodic timer; a
                       periodic write is skipped while it returns False.
        name:          label used in log lines.
    """

    def __init__(
        self,
        snapshot: Callable[[], BaseModel],
        persist: Callable[[Any], Awaitable[Any]],
        *,
        interval: Optional[float] = None,
        tick: Optional[Callable[[], Awaitable[Any]]] = None,
        tick_interval: float = 1.0,
        due: Optional[Callable[[], bool]] = None,
        name: str = "",
    ) -> None:
        self._snapshot = snapshot
        self._persist = persist
        self._interval = interval
        self._tick = tick
        self._tick_interval = tick_interval
        self._due = due
        self.name = name

        self.status = SaveStatus.IDLE
        self.last_saved_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._last_payload: Optional[str] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._timers: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # -- timers ----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._timers)

    def start(self) -> None:
        """Start the periodic timers. Must be called from the event loop."""
        if self._timers:
            return
        loop = asyncio.get_running_loop()
        if self._interval:
            self._timers.append(loop.create_task(self._every(self._interval, self._autosave)))
        if self._tick is not None:
            self._timers.append(loop.create_task(self._every(self._tick_interval, self._tick)))
        logger.debug("Timers started for %s", self.name)

    def stop(self) -> None:
        """Cancel the periodic timers. In-flight writes are left to finish."""
        for task in self._timers:
            task.cancel()
        if self._timers:
            logger.debug("Timers stopped for %s", self.name)
        self._timers = []

    def reset(self) -> None:
        """Stop the timers and forget what was last written."""
        self.stop()
        self._last_payload = None
        self.status = SaveStatus.IDLE
        self.last_error = None

    async def _every(self, seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer callback failed for %s", self.name)

    async def _autosave(self) -> None:
        if self._due is not None and not self._due():
            return
        await self.flush()

    # -- flushing --------------------------------------------------------------

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def has_unsaved_changes(self) -> bool:
        return self._snapshot().model_dump_json() != self._last_payload

    async def flush(self, *, force: bool = False) -> bool:
        """
        Write the current snapshot unless a write is already running.

        Args:
            force: write even when the snapshot equals the last one written.

        Returns:
            True when the store holds the current snapshot afterwards, False
            when the flush was suppressed or the write failed.
        """
        if self.in_flight:
            logger.debug("Flush suppressed for %s: a write is already in flight", self.name)
            return False

        snapshot = self._snapshot()
        payload = snapshot.model_dump_json()
        if not force and payload == self._last_payload:
            return True

        self._in_flight = asyncio.ensure_future(self._write(snapshot, payload))
        return await asyncio.shield(self._in_flight)

    async def flush_now(self) -> bool:
        """Wait for any in-flight write, then write the current snapshot."""
        while self.in_flight:
            await asyncio.shield(self._in_flight)
        return await self.flush(force=True)

    def flush_in_background(self) -> Optional[asyncio.Task]:
        """Best-effort write with nobody waiting on it (page close, navigation)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; final flush for %s skipped", self.name)
            return None
        task = loop.create_task(self.flush_now())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background and in-flight writes to settle."""
        pending = list(self._background)
        if self._in_flight is not None:
            pending.append(self._in_flight)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _write(self, snapshot: BaseModel, payload: str) -> bool:
        self.status = SaveStatus.SAVING
        try:
            await self._persist(snapshot)
        except PersistenceError as exc:
            self.status = SaveStatus.ERROR
            self.last_error = str(exc)
            logger.warning("Autosave failed for %s, will retry on next trigger: %s", self.name, exc)
            return False
        self._last_payload = payload
        self.status = SaveStatus.SAVED
        self.last_saved_at = utcnow()
        self.last_error = None
        return True
