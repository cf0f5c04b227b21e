"""FastAPI entrypoint for the Assessment Session Engine."""

import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from assessment_engine.config import (
    LIVE_OBJECT_TTL_SECONDS,
    LOG_LEVEL,
    REGISTRY_SWEEP_SECONDS,
    STALE_ATTEMPT_MAX_AGE_SECONDS,
)
from assessment_engine.database import create_db_and_tables, engine
from assessment_engine.exceptions import (
    AssessmentNotFoundError,
    AttemptStateError,
    GradingIntegrityError,
    PersistenceError,
    SessionNotFoundError,
)
from assessment_engine.routers import attempts as attempts_router_module
from assessment_engine.routers import reading as reading_router_module
from assessment_engine.services.registry import LiveRegistry
from assessment_engine.services.store import SessionStore

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Assessment Session Engine")


@app.exception_handler(GradingIntegrityError)
async def grading_integrity_handler(request: Request, exc: GradingIntegrityError):
    """An answer that cannot belong to the assessment; never scored as wrong."""
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(AttemptStateError)
async def attempt_state_handler(request: Request, exc: AttemptStateError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(SessionNotFoundError)
@app.exception_handler(AssessmentNotFoundError)
async def not_found_handler(request: Request, exc: LookupError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    # only reads reach here; failed autosaves are retried, never raised
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage is temporarily unavailable"},
    )


# Routers
app.include_router(attempts_router_module.router, tags=["attempts"])
app.include_router(reading_router_module.router, prefix="/content", tags=["reading"])


async def _sweep_forever() -> None:
    """Close idle live objects and expire abandoned attempts."""
    max_age = timedelta(seconds=STALE_ATTEMPT_MAX_AGE_SECONDS)
    while True:
        await asyncio.sleep(REGISTRY_SWEEP_SECONDS)
        try:
            await app.state.attempts.cleanup_idle(LIVE_OBJECT_TTL_SECONDS)
            await app.state.readings.cleanup_idle(LIVE_OBJECT_TTL_SECONDS)
            await asyncio.to_thread(app.state.store.expire_stale_attempts, max_age)
        except PersistenceError as exc:
            logger.warning("Stale attempt sweep failed: %s", exc)
        except Exception:
            # the next pass runs regardless
            logger.exception("Housekeeping sweep failed")


@app.on_event("startup")
async def on_startup():
    """Initialize database schema, live registries and the housekeeping sweep."""
    create_db_and_tables()
    app.state.store = SessionStore(engine)
    app.state.attempts = LiveRegistry("attempts")
    app.state.readings = LiveRegistry("readings")
    app.state.sweeper = asyncio.create_task(_sweep_forever())
    logger.info("Assessment engine ready")


@app.on_event("shutdown")
async def on_shutdown():
    app.state.sweeper.cancel()
    await app.state.attempts.close_all()
    await app.state.readings.close_all()
