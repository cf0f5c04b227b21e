"""Shared FastAPI dependencies for the store, the live registries and timer settings."""

import time
from typing import Any, Dict

from fastapi import Request

from assessment_engine.config import (
    AUTOSAVE_INTERVAL_SECONDS,
    COUNTDOWN_TICK_SECONDS,
    READING_DEBOUNCE_SECONDS,
    READING_FLUSH_INTERVAL_SECONDS,
)
from assessment_engine.services.registry import LiveRegistry
from assessment_engine.services.store import SessionStore


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_attempt_registry(request: Request) -> LiveRegistry:
    """Live attempt controllers, keyed by attempt id."""
    return request.app.state.attempts


def get_reading_registry(request: Request) -> LiveRegistry:
    """Live reading trackers, keyed by ``user_id:content_id``."""
    return request.app.state.readings


def get_attempt_options() -> Dict[str, Any]:
    """Keyword arguments for every AttemptController built by a request."""
    return {
        "clock": time.monotonic,
        "autosave_interval": AUTOSAVE_INTERVAL_SECONDS,
        "tick_interval": COUNTDOWN_TICK_SECONDS,
    }


def get_reading_options() -> Dict[str, Any]:
    return {
        "clock": time.monotonic,
        "flush_interval": READING_FLUSH_INTERVAL_SECONDS,
        "debounce_seconds": READING_DEBOUNCE_SECONDS,
    }
