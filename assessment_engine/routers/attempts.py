"""API endpoints for taking a timed exam or quiz.

Each attempt is driven by a live AttemptController kept in the attempt
registry between requests. Errors raised by the engine are turned into HTTP
responses by the handlers registered in main.py.
"""

import asyncio
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from assessment_engine.config import TIME_WARNING_SECONDS
from assessment_engine.deps import get_attempt_options, get_attempt_registry, get_store
from assessment_engine.schemas import AssessmentDefinition, AttemptSession, SessionState, UserAnswer
from assessment_engine.services.lifecycle import AttemptController
from assessment_engine.services.registry import LiveRegistry
from assessment_engine.services.store import SessionStore
from assessment_engine.utils import format_time, round_half_up

router = APIRouter()


# --- Request schemas ---


class OpenAttemptIn(BaseModel):
    user_id: str


class AnswerIn(BaseModel):
    selected_option_ids: List[str] = []
    text: str = ""


class VisibilityIn(BaseModel):
    visible: bool


# --- Serialisation helpers ---


def _percentage(session: AttemptSession):
    if session.score is None or not session.max_score:
        return None
    return round_half_up(session.score / session.max_score * 100)


def _attempt_view(controller: AttemptController) -> Dict[str, Any]:
    snap = controller.snapshot()
    remaining = controller.remaining_seconds
    return {
        "attempt_id": snap.id,
        "user_id": snap.user_id,
        "assessment_id": snap.assessment_id,
        "state": snap.state.value,
        "allowed_duration_seconds": snap.allowed_duration_seconds,
        "elapsed_seconds": snap.elapsed_seconds,
        "remaining_seconds": remaining,
        "remaining_display": format_time(remaining),
        "time_warning": snap.state == SessionState.RUNNING and remaining <= TIME_WARNING_SECONDS,
        "answers": {qid: a.model_dump() for qid, a in snap.answers.items()},
        "answered_count": snap.answered_count,
        "flagged_question_ids": list(snap.flagged_question_ids),
        "question_status": {q.id: snap.question_status(q.id) for q in controller.definition.questions},
        "question_count": len(controller.definition.questions),
        "started_at": snap.started_at,
        "submitted_at": snap.submitted_at,
        "score": snap.score,
        "max_score": snap.max_score,
        "percentage": _percentage(snap),
        "pending_review_count": snap.pending_review_count,
        "submit_reason": snap.submit_reason.value if snap.submit_reason else None,
        "save_status": controller.autosave.status.value,
        "last_saved_at": controller.autosave.last_saved_at,
    }


def _questions_view(definition: AssessmentDefinition) -> List[Dict[str, Any]]:
    # correct flags stay server-side until the attempt is over
    return [
        {
            "question_id": q.id,
            "prompt": q.prompt,
            "question_type": q.question_type.value,
            "points": q.points,
            "options": [{"option_id": o.id, "text": o.text} for o in q.options],
        }
        for q in definition.questions
    ]


async def _live_attempt(
    attempt_id: str, store: SessionStore, registry: LiveRegistry, options: Dict[str, Any]
) -> AttemptController:
    async def factory():
        return await AttemptController.load(store, attempt_id, **options)

    return await registry.get_or_create(attempt_id, factory)


# 1) OPEN OR RESUME
@router.post("/assessments/{assessment_id}/attempts")
async def api_open_attempt(
    assessment_id: str,
    payload: OpenAttemptIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    session = await asyncio.to_thread(store.create_or_resume_session, payload.user_id, assessment_id)
    controller = await _live_attempt(session.id, store, registry, options)
    view = _attempt_view(controller)
    view["title"] = controller.definition.title
    view["kind"] = controller.definition.kind
    view["questions"] = _questions_view(controller.definition)
    return view


# 2) ATTEMPT HISTORY
@router.get("/assessments/{assessment_id}/attempts")
async def api_list_attempts(
    assessment_id: str,
    user_id: str = Query(...),
    store: SessionStore = Depends(get_store),
):
    attempts = await asyncio.to_thread(store.list_attempts, user_id, assessment_id)
    return [
        {
            "attempt_id": a.id,
            "state": a.state.value,
            "started_at": a.started_at,
            "submitted_at": a.submitted_at,
            "elapsed_seconds": a.elapsed_seconds,
            "score": a.score,
            "max_score": a.max_score,
            "percentage": _percentage(a),
            "submit_reason": a.submit_reason.value if a.submit_reason else None,
        }
        for a in attempts
    ]


# 3) POLL (countdown tick, may auto-submit)
@router.get("/attempts/{attempt_id}")
async def api_get_attempt(
    attempt_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    await controller.poll()
    return _attempt_view(controller)


@router.post("/attempts/{attempt_id}/start")
async def api_start_attempt(
    attempt_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    await controller.start()
    return _attempt_view(controller)


# 4) ANSWERS AND FLAGS
@router.put("/attempts/{attempt_id}/answers/{question_id}")
async def api_record_answer(
    attempt_id: str,
    question_id: str,
    payload: AnswerIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    recorded = await controller.record_answer(
        question_id, UserAnswer(selected_option_ids=payload.selected_option_ids, text=payload.text)
    )
    view = _attempt_view(controller)
    view["recorded"] = recorded
    return view


@router.delete("/attempts/{attempt_id}/answers/{question_id}")
async def api_clear_answer(
    attempt_id: str,
    question_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    recorded = await controller.clear_answer(question_id)
    view = _attempt_view(controller)
    view["recorded"] = recorded
    return view


@router.post("/attempts/{attempt_id}/flags/{question_id}")
async def api_toggle_flag(
    attempt_id: str,
    question_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    recorded = await controller.toggle_flag(question_id)
    view = _attempt_view(controller)
    view["recorded"] = recorded
    return view


# 5) VISIBILITY AND SAVING
@router.post("/attempts/{attempt_id}/visibility")
async def api_visibility(
    attempt_id: str,
    payload: VisibilityIn = Body(...),
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    if payload.visible:
        await controller.resume()
    else:
        await controller.suspend()
    return _attempt_view(controller)


@router.post("/attempts/{attempt_id}/save")
async def api_save(
    attempt_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    saved = await controller.save()
    view = _attempt_view(controller)
    view["saved"] = saved
    return view


# 6) SUBMIT AND REVIEW
@router.post("/attempts/{attempt_id}/submit")
async def api_submit(
    attempt_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    await controller.submit()
    return _attempt_view(controller)


@router.get("/attempts/{attempt_id}/review")
async def api_review(
    attempt_id: str,
    store: SessionStore = Depends(get_store),
    registry: LiveRegistry = Depends(get_attempt_registry),
    options: Dict[str, Any] = Depends(get_attempt_options),
):
    controller = await _live_attempt(attempt_id, store, registry, options)
    entries = controller.review()
    score = controller.result()
    return {
        "attempt_id": controller.id,
        "score": score.total_score,
        "max_score": score.max_score,
        "percentage": score.percentage,
        "pending_review_count": score.pending_review_count,
        "questions": [e.model_dump(mode="json") for e in entries],
    }


# 7) PAGE UNLOAD
@router.delete("/attempts/{attempt_id}/live")
async def api_release_attempt(attempt_id: str, registry: LiveRegistry = Depends(get_attempt_registry)):
    released = registry.release(attempt_id)
    return {"attempt_id": attempt_id, "released": released is not None}
