"""Runtime configuration for the assessment engine.

Every value can be overridden through an environment variable of the same
name prefixed with ``ASSESSMENT_``.
"""

import os


def _env(name: str, default: str) -> str:
    return os.getenv(f"ASSESSMENT_{name}", default)


# Database
DATABASE_URL = _env("DATABASE_URL", "sqlite:///./assessment_engine.db")
SQL_ECHO = _env("SQL_ECHO", "0") == "1"

# Logging
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()

# Attempt timers (seconds)
AUTOSAVE_INTERVAL_SECONDS = float(_env("AUTOSAVE_INTERVAL_SECONDS", "15"))
COUNTDOWN_TICK_SECONDS = float(_env("COUNTDOWN_TICK_SECONDS", "1"))
MIN_TIME_FLUSH_SECONDS = float(_env("MIN_TIME_FLUSH_SECONDS", "5"))
TIME_WARNING_SECONDS = int(_env("TIME_WARNING_SECONDS", "300"))  # countdown turns red below this

# Reading progress (seconds)
READING_FLUSH_INTERVAL_SECONDS = float(_env("READING_FLUSH_INTERVAL_SECONDS", "20"))
READING_DEBOUNCE_SECONDS = float(_env("READING_DEBOUNCE_SECONDS", "0.9"))
READING_MIN_TIME_FLUSH_SECONDS = float(_env("READING_MIN_TIME_FLUSH_SECONDS", "10"))

# Live object housekeeping (seconds)
LIVE_OBJECT_TTL_SECONDS = int(_env("LIVE_OBJECT_TTL_SECONDS", "3600"))
REGISTRY_SWEEP_SECONDS = int(_env("REGISTRY_SWEEP_SECONDS", "300"))
STALE_ATTEMPT_MAX_AGE_SECONDS = int(_env("STALE_ATTEMPT_MAX_AGE_SECONDS", str(7 * 24 * 3600)))
