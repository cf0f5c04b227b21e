"""Small helpers shared by the services."""

import math
from datetime import datetime, timezone

import bleach


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the database round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sanitize_answer_text(text: str) -> str:
    """Strip every HTML tag from a free-text answer."""
    if not text:
        return ""
    return bleach.clean(text, tags=[], strip=True)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def format_time(seconds: float) -> str:
    """Format a countdown as ``H:MM:SS`` or ``M:SS`` when under an hour."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
