"""SQLModel tables backing the assessment session store."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from assessment_engine.utils import utcnow

# Rows in these states still accept writes; at most one may exist per (user, assessment).
OPEN_STATE_SQL = "state IN ('not_started', 'running')"


def _new_id() -> str:
    return uuid.uuid4().hex


class Assessment(SQLModel, table=True):
    """An exam or quiz definition, owned by the content side of the platform."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    title: str = ""
    kind: str = Field(default="exam")  # exam | quiz
    duration_seconds: int
    created_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    assessment_id: str = Field(foreign_key="assessment.id", index=True)
    prompt: str = ""
    question_type: str
    points: int = Field(default=1)
    position: int = Field(default=0)
    explanation: Optional[str] = None


class AnswerOption(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    question_id: str = Field(foreign_key="question.id", index=True)
    text: str = ""
    is_correct: bool = Field(default=False)
    position: int = Field(default=0)


class AttemptRecord(SQLModel, table=True):
    """Persisted replica of one attempt.

    The partial unique index keeps a (user, assessment) pair down to a single
    open attempt; submitted and expired rows are unconstrained.
    """

    __tablename__ = "attempt"
    __table_args__ = (
        Index(
            "uq_attempt_open_per_user",
            "user_id",
            "assessment_id",
            unique=True,
            sqlite_where=text(OPEN_STATE_SQL),
            postgresql_where=text(OPEN_STATE_SQL),
        ),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    assessment_id: str = Field(foreign_key="assessment.id", index=True)
    state: str = Field(default="not_started")  # not_started | running | submitted | expired
    allowed_duration_seconds: int
    elapsed_seconds: float = Field(default=0.0)
    answers: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    flagged_question_ids: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    score: Optional[int] = None
    max_score: Optional[int] = None
    pending_review_count: int = Field(default=0)
    submit_reason: Optional[str] = None  # manual | deadline
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ReadingProgressRecord(SQLModel, table=True):
    __tablename__ = "reading_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "content_id", name="uq_reading_progress_user_content"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    content_id: str
    completion_percentage: int = Field(default=0)
    time_spent_seconds: float = Field(default=0.0)
    is_completed: bool = Field(default=False)
    bookmarks: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    last_accessed: datetime = Field(default_factory=utcnow)
