"""
services/store.py

SQLModel-backed implementation of the session store the engine talks to.

The store is a downstream replica: controllers hand it snapshots and it
upserts them. It is also the one place that enforces "at most one open
attempt per (user, assessment)" and "terminal attempts are immutable".
"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from assessment_engine.exceptions import (
    AssessmentNotFoundError,
    PersistenceError,
    SessionNotFoundError,
)
from assessment_engine.models import (
    AnswerOption,
    Assessment,
    AttemptRecord,
    Question,
    ReadingProgressRecord,
)
from assessment_engine.schemas import (
    OPEN_STATES,
    AnswerOptionDef,
    AssessmentDefinition,
    AttemptSession,
    QuestionDef,
    ReadingProgress,
    SessionState,
    UserAnswer,
)
from assessment_engine.utils import utcnow

logger = logging.getLogger(__name__)

_OPEN_STATE_VALUES = [s.value for s in OPEN_STATES]


def _to_domain(record: AttemptRecord) -> AttemptSession:
    return AttemptSession(
        id=record.id,
        user_id=record.user_id,
        assessment_id=record.assessment_id,
        state=SessionState(record.state),
        allowed_duration_seconds=record.allowed_duration_seconds,
        elapsed_seconds=min(record.elapsed_seconds, record.allowed_duration_seconds),
        answers={qid: UserAnswer.model_validate(payload) for qid, payload in (record.answers or {}).items()},
        flagged_question_ids=list(record.flagged_question_ids or []),
        started_at=record.started_at,
        submitted_at=record.submitted_at,
        score=record.score,
        max_score=record.max_score,
        pending_review_count=record.pending_review_count,
        submit_reason=record.submit_reason,
    )


def _apply(record: AttemptRecord, snapshot: AttemptSession) -> None:
    record.state = snapshot.state.value
    record.elapsed_seconds = snapshot.elapsed_seconds
    record.answers = {qid: answer.model_dump() for qid, answer in snapshot.answers.items()}
    record.flagged_question_ids = list(snapshot.flagged_question_ids)
    record.started_at = snapshot.started_at
    record.submitted_at = snapshot.submitted_at
    record.score = snapshot.score
    record.max_score = snapshot.max_score
    record.pending_review_count = snapshot.pending_review_count
    record.submit_reason = snapshot.submit_reason.value if snapshot.submit_reason else None
    record.updated_at = utcnow()


def _find_open_attempt(db: Session, user_id: str, assessment_id: str) -> Optional[AttemptRecord]:
    stmt = (
        select(AttemptRecord)
        .where(
            (AttemptRecord.user_id == user_id)
            & (AttemptRecord.assessment_id == assessment_id)
            & (col(AttemptRecord.state).in_(_OPEN_STATE_VALUES))
        )
        .order_by(col(AttemptRecord.created_at).desc())
    )
    return db.exec(stmt).first()


class SessionStore:
    """Narrow persistence contract used by the engine."""

    def __init__(self, engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Assessment definitions (read-only from the engine's point of view)
    # ------------------------------------------------------------------

    def fetch_assessment_definition(self, assessment_id: str) -> AssessmentDefinition:
        try:
            with Session(self.engine) as db:
                assessment = db.get(Assessment, assessment_id)
                if not assessment:
                    raise AssessmentNotFoundError(f"Assessment {assessment_id} does not exist")
                questions = db.exec(
                    select(Question)
                    .where(Question.assessment_id == assessment_id)
                    .order_by(col(Question.position), col(Question.id))
                ).all()
                question_defs = []
                for q in questions:
                    options = db.exec(
                        select(AnswerOption)
                        .where(AnswerOption.question_id == q.id)
                        .order_by(col(AnswerOption.position), col(AnswerOption.id))
                    ).all()
                    question_defs.append(
                        QuestionDef(
                            id=q.id,
                            prompt=q.prompt,
                            question_type=q.question_type,
                            points=q.points,
                            explanation=q.explanation,
                            options=[
                                AnswerOptionDef(id=o.id, text=o.text, is_correct=o.is_correct)
                                for o in options
                            ],
                        )
                    )
                return AssessmentDefinition(
                    id=assessment.id,
                    title=assessment.title,
                    kind=assessment.kind,
                    questions=question_defs,
                    allowed_duration_seconds=assessment.duration_seconds,
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load assessment {assessment_id}") from exc

    def save_assessment(self, definition: AssessmentDefinition) -> AssessmentDefinition:
        """Insert an assessment with its questions and options."""
        try:
            with Session(self.engine) as db:
                db.add(
                    Assessment(
                        id=definition.id,
                        title=definition.title,
                        kind=definition.kind,
                        duration_seconds=definition.allowed_duration_seconds,
                    )
                )
                for position, q in enumerate(definition.questions):
                    db.add(
                        Question(
                            id=q.id,
                            assessment_id=definition.id,
                            prompt=q.prompt,
                            question_type=q.question_type.value,
                            points=q.points,
                            position=position,
                            explanation=q.explanation,
                        )
                    )
                    for opt_position, o in enumerate(q.options):
                        db.add(
                            AnswerOption(
                                id=o.id,
                                question_id=q.id,
                                text=o.text,
                                is_correct=o.is_correct,
                                position=opt_position,
                            )
                        )
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save assessment {definition.id}") from exc
        return definition

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def create_or_resume_session(self, user_id: str, assessment_id: str) -> AttemptSession:
        """Return the latest open attempt for the pair, creating one if none exists."""
        try:
            with Session(self.engine) as db:
                existing = _find_open_attempt(db, user_id, assessment_id)
                if existing:
                    return _to_domain(existing)

                assessment = db.get(Assessment, assessment_id)
                if not assessment:
                    raise AssessmentNotFoundError(f"Assessment {assessment_id} does not exist")

                record = AttemptRecord(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    assessment_id=assessment_id,
                    state=SessionState.NOT_STARTED.value,
                    allowed_duration_seconds=assessment.duration_seconds,
                )
                db.add(record)
                try:
                    db.commit()
                except IntegrityError:
                    # Another request created the open attempt first; reuse it.
                    db.rollback()
                    existing = _find_open_attempt(db, user_id, assessment_id)
                    if existing is None:
                        raise
                    return _to_domain(existing)
                db.refresh(record)
                logger.info("Created attempt %s for user %s on %s", record.id, user_id, assessment_id)
                return _to_domain(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not open an attempt on {assessment_id}") from exc

    def load_session(self, session_id: str) -> AttemptSession:
        try:
            with Session(self.engine) as db:
                record = db.get(AttemptRecord, session_id)
                if not record:
                    raise SessionNotFoundError(f"Attempt {session_id} does not exist")
                return _to_domain(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load attempt {session_id}") from exc

    def persist_session(self, snapshot: AttemptSession) -> AttemptSession:
        """
        Upsert one attempt snapshot.

        Open snapshots are matched on (user, assessment) so two tabs editing the
        same attempt converge on one row (last write wins). Terminal snapshots
        are matched on id. A row that is already terminal is never modified.

        Returns:
            the attempt as stored after the call.

        Raises:
            PersistenceError: the database rejected the write.
        """
        try:
            with Session(self.engine) as db:
                record = None
                if snapshot.is_open:
                    record = _find_open_attempt(db, snapshot.user_id, snapshot.assessment_id)
                if record is None:
                    record = db.get(AttemptRecord, snapshot.id)

                if record is not None and SessionState(record.state).is_terminal:
                    logger.debug("Attempt %s is %s; snapshot ignored", record.id, record.state)
                    return _to_domain(record)

                if record is None:
                    record = AttemptRecord(
                        id=snapshot.id,
                        user_id=snapshot.user_id,
                        assessment_id=snapshot.assessment_id,
                        allowed_duration_seconds=snapshot.allowed_duration_seconds,
                        created_at=utcnow(),
                    )
                _apply(record, snapshot)
                db.add(record)
                db.commit()
                db.refresh(record)
                return _to_domain(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not persist attempt {snapshot.id}") from exc

    def list_attempts(self, user_id: str, assessment_id: str) -> List[AttemptSession]:
        """Every attempt of a user on an assessment, newest first."""
        try:
            with Session(self.engine) as db:
                records = db.exec(
                    select(AttemptRecord)
                    .where(
                        (AttemptRecord.user_id == user_id)
                        & (AttemptRecord.assessment_id == assessment_id)
                    )
                    .order_by(col(AttemptRecord.created_at).desc())
                ).all()
                return [_to_domain(r) for r in records]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not list attempts on {assessment_id}") from exc

    def expire_stale_attempts(self, max_age: timedelta) -> int:
        """Move attempts created but never started, idle for longer than ``max_age``, to expired.

        Returns:
            the number of attempts expired.
        """
        cutoff = utcnow() - max_age
        try:
            with Session(self.engine) as db:
                stale = db.exec(
                    select(AttemptRecord).where(
                        (AttemptRecord.state == SessionState.NOT_STARTED.value)
                        & (AttemptRecord.updated_at < cutoff)
                    )
                ).all()
                for record in stale:
                    record.state = SessionState.EXPIRED.value
                    record.updated_at = utcnow()
                    db.add(record)
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not expire stale attempts") from exc
        if stale:
            logger.info("Expired %d stale attempt(s)", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Reading progress
    # ------------------------------------------------------------------

    def load_reading_progress(self, user_id: str, content_id: str) -> ReadingProgress:
        """Stored progress for the pair, or a fresh zeroed record."""
        try:
            with Session(self.engine) as db:
                record = db.exec(
                    select(ReadingProgressRecord).where(
                        (ReadingProgressRecord.user_id == user_id)
                        & (ReadingProgressRecord.content_id == content_id)
                    )
                ).first()
                if not record:
                    return ReadingProgress(user_id=user_id, content_id=content_id)
                return ReadingProgress(
                    user_id=record.user_id,
                    content_id=record.content_id,
                    completion_percentage=record.completion_percentage,
                    time_spent_seconds=record.time_spent_seconds,
                    is_completed=record.is_completed,
                    bookmarks=list(record.bookmarks or []),
                    last_accessed=record.last_accessed,
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load reading progress for {content_id}") from exc

    def persist_reading_progress(self, progress: ReadingProgress) -> ReadingProgress:
        """Upsert on (user, content); refreshes ``last_accessed``."""
        try:
            with Session(self.engine) as db:
                record = db.exec(
                    select(ReadingProgressRecord).where(
                        (ReadingProgressRecord.user_id == progress.user_id)
                        & (ReadingProgressRecord.content_id == progress.content_id)
                    )
                ).first()
                if record is None:
                    record = ReadingProgressRecord(user_id=progress.user_id, content_id=progress.content_id)
                record.completion_percentage = progress.completion_percentage
                record.time_spent_seconds = progress.time_spent_seconds
                record.is_completed = progress.is_completed
                record.bookmarks = list(progress.bookmarks)
                record.last_accessed = utcnow()
                db.add(record)
                db.commit()
                db.refresh(record)
                return progress.model_copy(update={"last_accessed": record.last_accessed})
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not persist reading progress for {progress.content_id}") from exc
