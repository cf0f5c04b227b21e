"""
services/timekeeping.py

Foreground time accounting across suspend/resume cycles.

Only time between a ``resume()`` and the next ``checkpoint()``/``suspend()``
is counted. Every delta is folded into ``elapsed_seconds`` exactly once, so a
tab left in the background for an hour adds nothing and a reload never
replays time that was already counted.
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TimeAccount:
    """
    Accumulated running time for one attempt or reading.

    Attributes:
        allowed_duration_seconds: hard ceiling, or None for uncapped tracking.
        elapsed_seconds:          counted time, never above the ceiling.
    """

    def __init__(
        self,
        allowed_duration_seconds: Optional[float],
        elapsed_seconds: float = 0.0,
        *,
        clock: Clock = time.monotonic,
        on_deadline: Optional[Callable[[], None]] = None,
    ) -> None:
        self.allowed_duration_seconds = allowed_duration_seconds
        self._clock = clock
        self._on_deadline = on_deadline
        self._elapsed = self._clamp(max(0.0, float(elapsed_seconds)))
        self._persisted = self._elapsed
        self._last_resume: Optional[float] = None
        self._deadline_signalled = False

    # -- state ---------------------------------------------------------------

    @property
    def elapsed_seconds(self) -> float:
        return self._elapsed

    @property
    def is_running(self) -> bool:
        return self._last_resume is not None

    @property
    def remaining_seconds(self) -> Optional[float]:
        if self.allowed_duration_seconds is None:
            return None
        return max(0.0, self.allowed_duration_seconds - self._elapsed)

    @property
    def deadline_reached(self) -> bool:
        return self._deadline_signalled

    @property
    def unpersisted_seconds(self) -> float:
        """Counted time not yet confirmed written by the store."""
        return self._elapsed - self._persisted

    # -- transitions -----------------------------------------------------------

    def resume(self) -> None:
        """Start counting from now. A no-op while already counting."""
        if self._last_resume is None:
            self._last_resume = self._clock()

    def checkpoint(self) -> float:
        """Fold the time since the last resume/checkpoint into ``elapsed_seconds``.

        Returns:
            the delta consumed, in seconds (0.0 while suspended).
        """
        if self._last_resume is None:
            return 0.0
        now = self._clock()
        delta = max(0.0, now - self._last_resume)
        self._last_resume = now
        self._elapsed = self._clamp(self._elapsed + delta)
        self._check_deadline()
        return delta

    def suspend(self) -> float:
        """Checkpoint, then stop counting until the next ``resume()``."""
        delta = self.checkpoint()
        self._last_resume = None
        return delta

    def mark_persisted(self, elapsed_seconds: float) -> None:
        """Record that a snapshot carrying ``elapsed_seconds`` reached the store."""
        self._persisted = max(self._persisted, min(elapsed_seconds, self._elapsed))

    # -- internals -------------------------------------------------------------

    def _clamp(self, value: float) -> float:
        if self.allowed_duration_seconds is None:
            return value
        return min(value, float(self.allowed_duration_seconds))

    def _check_deadline(self) -> None:
        if self.allowed_duration_seconds is None or self._deadline_signalled:
            return
        if self._elapsed >= self.allowed_duration_seconds:
            self._deadline_signalled = True
            logger.debug("Time allowance of %ss used up", self.allowed_duration_seconds)
            if self._on_deadline is not None:
                self._on_deadline()
