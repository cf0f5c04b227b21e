"""
services/registry.py

In-memory registry of live controllers and trackers.

HTTP requests are short-lived but an attempt's timers are not, so the live
object for an attempt (or a reading) is kept here between requests and torn
down on release, on idle expiry or at shutdown.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from assessment_engine.services.timekeeping import Clock

logger = logging.getLogger(__name__)


class LiveRegistry:
    def __init__(self, name: str, *, clock: Clock = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._objects: Dict[str, Any] = {}
        self._last_used: Dict[str, float] = {}
        # one lock per key, so a slow build never holds up other keys
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    async def get_or_create(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Return the live object for ``key``, building it once with ``factory``."""
        obj = self._objects.get(key)
        if obj is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
            async with lock:
                obj = self._objects.get(key)
                if obj is None:
                    obj = await factory()
                    self._objects[key] = obj
                    logger.debug("%s: %s is now live", self.name, key)
        self._last_used[key] = self._clock()
        return obj

    def get(self, key: str) -> Optional[Any]:
        obj = self._objects.get(key)
        if obj is not None:
            self._last_used[key] = self._clock()
        return obj

    def release(self, key: str) -> Optional[Any]:
        """Drop ``key`` and tear its object down with a best-effort final write."""
        obj = self._forget(key)
        if obj is not None:
            obj.teardown()
            logger.debug("%s: %s released", self.name, key)
        return obj

    async def cleanup_idle(self, ttl_seconds: float) -> int:
        """Close every object unused for longer than ``ttl_seconds``.

        Keys released or touched while an earlier close is awaited are skipped.

        Returns:
            the number of objects closed.
        """
        now = self._clock()
        expired = [key for key, used in self._last_used.items() if now - used > ttl_seconds]
        closed = 0
        for key in expired:
            used = self._last_used.get(key)
            if used is None or now - used <= ttl_seconds:
                continue
            obj = self._forget(key)
            if obj is None:
                continue
            await obj.close()
            closed += 1
        if closed:
            logger.info("%s: closed %d idle object(s)", self.name, closed)
        return closed

    async def close_all(self) -> None:
        closed = 0
        for key in list(self._objects):
            obj = self._forget(key)
            if obj is None:
                continue
            await obj.close()
            closed += 1
        if closed:
            logger.info("%s: closed %d object(s) at shutdown", self.name, closed)

    def _forget(self, key: str) -> Optional[Any]:
        self._last_used.pop(key, None)
        self._locks.pop(key, None)
        return self._objects.pop(key, None)
