"""
services/lifecycle.py

State machine and live controller for a single exam or quiz attempt.

``transition`` is the whole state machine. ``AttemptController`` wraps one
in-memory ``AttemptSession`` together with its time account and autosave
scheduler. Every page-level event (start, answer, visibility change, manual
save, submit, unload) goes through it.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import List, Optional

from assessment_engine.config import (
    AUTOSAVE_INTERVAL_SECONDS,
    COUNTDOWN_TICK_SECONDS,
    MIN_TIME_FLUSH_SECONDS,
)
from assessment_engine.exceptions import (
    AttemptStateError,
    GradingIntegrityError,
    InvalidTransitionError,
)
from assessment_engine.schemas import (
    AssessmentDefinition,
    AttemptSession,
    QuestionReview,
    SessionScore,
    SessionState,
    SubmitReason,
    UserAnswer,
)
from assessment_engine.services import grading
from assessment_engine.services.autosave import AutosaveScheduler, SaveStatus
from assessment_engine.services.timekeeping import Clock, TimeAccount
from assessment_engine.utils import sanitize_answer_text, utcnow

logger = logging.getLogger(__name__)


class AttemptEvent(str, Enum):
    START = "start"
    ANSWER = "answer"
    SUBMIT = "submit"
    DEADLINE = "deadline"
    EXPIRE = "expire"


_TRANSITIONS = {
    (SessionState.NOT_STARTED, AttemptEvent.START): SessionState.RUNNING,
    (SessionState.NOT_STARTED, AttemptEvent.EXPIRE): SessionState.EXPIRED,
    (SessionState.RUNNING, AttemptEvent.ANSWER): SessionState.RUNNING,
    (SessionState.RUNNING, AttemptEvent.SUBMIT): SessionState.SUBMITTED,
    (SessionState.RUNNING, AttemptEvent.DEADLINE): SessionState.SUBMITTED,
}

# Late events against a finished attempt are absorbed, not rejected.
_TERMINAL_NOOP_EVENTS = frozenset({AttemptEvent.ANSWER, AttemptEvent.SUBMIT, AttemptEvent.DEADLINE})


def transition(state: SessionState, event: AttemptEvent) -> SessionState:
    """Return the state reached by applying ``event`` to ``state``.

    Raises:
        InvalidTransitionError: the event is not allowed in this state.
    """
    if state.is_terminal and event in _TERMINAL_NOOP_EVENTS:
        return state
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


class AttemptController:
    """
    Live owner of one attempt.

    The in-memory session is authoritative while the controller is alive;
    the store only ever receives snapshots of it.

    Args:
        session:           the attempt as loaded from the store.
        definition:        the assessment being taken.
        store:             SessionStore used for every write.
        clock:             monotonic clock for time accounting.
        autosave_interval: seconds between periodic writes, None to disable.
        tick_interval:     seconds between countdown ticks, None to disable.
        min_flush_seconds: unsaved running time that makes a periodic write due.
    """

    def __init__(
        self,
        session: AttemptSession,
        definition: AssessmentDefinition,
        store,
        *,
        clock: Clock = time.monotonic,
        autosave_interval: Optional[float] = AUTOSAVE_INTERVAL_SECONDS,
        tick_interval: Optional[float] = COUNTDOWN_TICK_SECONDS,
        min_flush_seconds: float = MIN_TIME_FLUSH_SECONDS,
    ) -> None:
        self.session = session
        self.definition = definition
        self.store = store
        self._min_flush_seconds = min_flush_seconds

        self.time = TimeAccount(
            session.allowed_duration_seconds,
            session.elapsed_seconds,
            clock=clock,
            on_deadline=self._on_deadline,
        )
        self.autosave = AutosaveScheduler(
            self.snapshot,
            self._persist,
            interval=autosave_interval,
            tick=self.poll if tick_interval else None,
            tick_interval=tick_interval or 1.0,
            due=self._autosave_due,
            name=f"attempt {session.id}",
        )

        self._dirty = False
        self._closing = False
        self._submit_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def open(cls, store, user_id: str, assessment_id: str, **kwargs) -> "AttemptController":
        """Resume the open attempt for (user, assessment) or create one."""
        session = await asyncio.to_thread(store.create_or_resume_session, user_id, assessment_id)
        definition = await asyncio.to_thread(store.fetch_assessment_definition, session.assessment_id)
        return await cls._rehydrate(session, definition, store, **kwargs)

    @classmethod
    async def load(cls, store, session_id: str, **kwargs) -> "AttemptController":
        session = await asyncio.to_thread(store.load_session, session_id)
        definition = await asyncio.to_thread(store.fetch_assessment_definition, session.assessment_id)
        return await cls._rehydrate(session, definition, store, **kwargs)

    @classmethod
    async def _rehydrate(cls, session, definition, store, **kwargs) -> "AttemptController":
        controller = cls(session, definition, store, **kwargs)
        if session.state == SessionState.RUNNING:
            # Time spent away from the page is never counted: restart from now.
            controller.time.resume()
            controller.autosave.start()
            await controller.poll()
        return controller

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def remaining_seconds(self) -> float:
        return self.time.remaining_seconds

    def snapshot(self) -> AttemptSession:
        """The session as it should be written right now."""
        if not self.session.is_open:
            return self.session
        return self.session.model_copy(update={"elapsed_seconds": self.time.elapsed_seconds})

    def result(self) -> SessionScore:
        self._require_terminal()
        return grading.grade_session(self.definition, self.session.answers)

    def review(self) -> List[QuestionReview]:
        """Per-question breakdown with correct answers and explanations."""
        self._require_terminal()
        return grading.review(self.definition, self.session.answers)

    def _require_terminal(self) -> None:
        if not self.session.state.is_terminal:
            raise AttemptStateError(
                f"Attempt {self.session.id} is {self.session.state.value}; results are available after submission"
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def start(self) -> AttemptSession:
        state = transition(self.session.state, AttemptEvent.START)
        self.session = self.session.model_copy(update={"state": state, "started_at": utcnow()})
        self.time.resume()
        logger.info("Attempt %s started by user %s", self.session.id, self.session.user_id)
        await self.autosave.flush_now()
        self.autosave.start()
        return self.session

    async def record_answer(self, question_id: str, answer: UserAnswer) -> bool:
        """
        Record (or replace) the answer to one question.

        Returns:
            True when the answer was recorded, False when it was ignored
            because the attempt is over or its time ran out.

        Raises:
            InvalidTransitionError: the attempt has not been started.
            GradingIntegrityError:  unknown question or foreign option ids.
        """
        if not await self._accepts_mutations():
            return False
        question = self._get_question(question_id)
        if question.question_type.is_auto_gradable:
            answer = UserAnswer(selected_option_ids=answer.selected_option_ids)
        else:
            answer = UserAnswer(
                selected_option_ids=answer.selected_option_ids,
                text=sanitize_answer_text(answer.text),
            )
        grading.check_answer(question, answer)

        answers = dict(self.session.answers)
        answers[question_id] = answer
        self.session = self.session.model_copy(update={"answers": answers})
        self._dirty = True
        return True

    async def clear_answer(self, question_id: str) -> bool:
        if not await self._accepts_mutations():
            return False
        self._get_question(question_id)
        if question_id in self.session.answers:
            answers = dict(self.session.answers)
            del answers[question_id]
            self.session = self.session.model_copy(update={"answers": answers})
            self._dirty = True
        return True

    async def toggle_flag(self, question_id: str) -> bool:
        """Mark a question for review, or unmark it. False when ignored like a late answer."""
        if not await self._accepts_mutations():
            return False
        self._get_question(question_id)
        flags = set(self.session.flagged_question_ids)
        flags ^= {question_id}
        self.session = self.session.model_copy(update={"flagged_question_ids": sorted(flags)})
        self._dirty = True
        return True

    async def poll(self) -> AttemptSession:
        """Countdown tick: fold in running time and auto-submit at the deadline."""
        if self.session.state == SessionState.RUNNING and not self._closing:
            self.time.checkpoint()
            if self.time.deadline_reached:
                return await self.submit(SubmitReason.DEADLINE)
        elif self.session.state.is_terminal and self.autosave.status == SaveStatus.ERROR:
            # the terminal snapshot never reached the store
            await self.autosave.flush()
        return self.session

    async def suspend(self) -> bool:
        """Page hidden: stop counting and write what we have."""
        if self.session.state != SessionState.RUNNING or self._closing:
            return False
        self.time.suspend()
        if self.time.deadline_reached:
            await self.submit(SubmitReason.DEADLINE)
            return self.autosave.status == SaveStatus.SAVED
        return await self.autosave.flush()

    async def resume(self) -> AttemptSession:
        """Page visible again."""
        if self.session.state == SessionState.RUNNING and not self._closing:
            self.time.resume()
        return await self.poll()

    async def save(self) -> bool:
        """Manual save; waits for any write in flight."""
        if self.session.state == SessionState.RUNNING and not self._closing:
            self.time.checkpoint()
            if self.time.deadline_reached:
                await self.submit(SubmitReason.DEADLINE)
                return self.autosave.status == SaveStatus.SAVED
        return await self.autosave.flush_now()

    async def submit(self, reason: SubmitReason = SubmitReason.MANUAL) -> AttemptSession:
        """
        Finish the attempt and grade it.

        Safe to call any number of times and from concurrent callers (the
        manual button and the deadline tick racing each other): every call
        shares the one finalisation.

        Raises:
            InvalidTransitionError: the attempt was never started.
        """
        if self._submit_task is None:
            if self.session.state.is_terminal:
                return self.session
            transition(self.session.state, AttemptEvent.SUBMIT)
            self._submit_task = asyncio.ensure_future(self._finalize(reason))
        # Shielded so a timer cancelled by the finalisation itself cannot abort it.
        return await asyncio.shield(self._submit_task)

    async def _finalize(self, reason: SubmitReason) -> AttemptSession:
        self._closing = True
        try:
            self.time.checkpoint()
            event = AttemptEvent.DEADLINE if reason == SubmitReason.DEADLINE else AttemptEvent.SUBMIT
            state = transition(self.session.state, event)

            await self.autosave.flush_now()
            if self.session.state.is_terminal:
                # another tab finished the attempt first
                return self.session

            self.time.suspend()
            score = grading.grade_session(self.definition, self.session.answers)
            self.session = self.session.model_copy(
                update={
                    "state": state,
                    "elapsed_seconds": self.time.elapsed_seconds,
                    "submitted_at": utcnow(),
                    "score": score.total_score,
                    "max_score": score.max_score,
                    "pending_review_count": score.pending_review_count,
                    "submit_reason": reason,
                }
            )
        finally:
            # no further state change is possible, even when grading failed
            self.autosave.stop()
        logger.info(
            "Attempt %s submitted (%s): %s/%s after %.0fs",
            self.session.id,
            reason.value,
            score.total_score,
            score.max_score,
            self.session.elapsed_seconds,
        )
        if not await self.autosave.flush_now():
            logger.warning("Attempt %s submitted but not stored yet; the next poll retries", self.session.id)
        return self.session

    async def close(self) -> None:
        """Normal teardown: stop the timers and wait for the final write."""
        if self._submit_task is not None:
            await asyncio.shield(self._submit_task)
        self.autosave.stop()
        self.time.suspend()
        if self.autosave.has_unsaved_changes() or self.autosave.status == SaveStatus.ERROR:
            await self.autosave.flush_now()

    def teardown(self) -> Optional[asyncio.Task]:
        """Page unload: stop the timers and fire a final write nobody waits for."""
        self.autosave.stop()
        self.time.suspend()
        if self.session.is_open:
            self._closing = True
        return self.autosave.flush_in_background()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _accepts_mutations(self) -> bool:
        self.time.checkpoint()
        if self.session.state.is_terminal or self._closing:
            logger.debug("Change to attempt %s ignored: attempt is closed", self.session.id)
            return False
        if self.time.deadline_reached:
            logger.debug("Change to attempt %s ignored: time is up", self.session.id)
            await self.submit(SubmitReason.DEADLINE)
            return False
        transition(self.session.state, AttemptEvent.ANSWER)
        return True

    def _get_question(self, question_id: str):
        question = self.definition.get_question(question_id)
        if question is None:
            raise GradingIntegrityError(
                f"Assessment {self.definition.id} has no question {question_id}"
            )
        return question

    def _autosave_due(self) -> bool:
        self.time.checkpoint()
        return self._dirty or self.time.unpersisted_seconds >= self._min_flush_seconds

    def _on_deadline(self) -> None:
        logger.info("Attempt %s reached its time limit", self.session.id)

    async def _persist(self, snapshot: AttemptSession) -> AttemptSession:
        stored = await asyncio.to_thread(self.store.persist_session, snapshot)
        self.time.mark_persisted(snapshot.elapsed_seconds)
        if (
            snapshot.answers == self.session.answers
            and snapshot.flagged_question_ids == self.session.flagged_question_ids
        ):
            self._dirty = False
        if stored.state.is_terminal and self.session.is_open:
            logger.info("Attempt %s was finished elsewhere; adopting the stored result", stored.id)
            self.session = stored
            self._closing = True
            self.time.suspend()
        return stored
