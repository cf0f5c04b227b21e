"""Pydantic domain models shared by the engine services and the HTTP layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"

    @property
    def is_auto_gradable(self) -> bool:
        return self in CHOICE_TYPES


CHOICE_TYPES = frozenset(
    {QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE}
)
SINGLE_ANSWER_TYPES = frozenset({QuestionType.SINGLE_CHOICE, QuestionType.TRUE_FALSE})


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUBMITTED = "submitted"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


OPEN_STATES = frozenset({SessionState.NOT_STARTED, SessionState.RUNNING})
TERMINAL_STATES = frozenset({SessionState.SUBMITTED, SessionState.EXPIRED})


class SubmitReason(str, Enum):
    MANUAL = "manual"
    DEADLINE = "deadline"


# ---------------------------------------------------------------------------
# Assessment definition
# ---------------------------------------------------------------------------


class AnswerOptionDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str = ""
    is_correct: bool = False


class QuestionDef(BaseModel):
    """A question as the grader sees it, correct flags included."""

    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str = ""
    question_type: QuestionType
    points: int = Field(default=1, gt=0)
    options: List[AnswerOptionDef] = Field(default_factory=list)
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def validate_options(self) -> "QuestionDef":
        correct = [o for o in self.options if o.is_correct]
        if self.question_type in SINGLE_ANSWER_TYPES and len(correct) != 1:
            raise ValueError(
                f"Question {self.id}: {self.question_type.value} needs exactly one correct option"
            )
        if self.question_type == QuestionType.MULTIPLE_CHOICE and not correct:
            raise ValueError(f"Question {self.id}: multiple_choice needs at least one correct option")
        if not self.question_type.is_auto_gradable and self.options:
            raise ValueError(f"Question {self.id}: {self.question_type.value} takes no options")
        ids = [o.id for o in self.options]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Question {self.id}: option ids must be unique")
        return self

    @property
    def option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options)

    @property
    def correct_option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options if o.is_correct)


class AssessmentDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    kind: str = "exam"  # exam | quiz
    questions: List[QuestionDef] = Field(default_factory=list)
    allowed_duration_seconds: int = Field(gt=0)

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)

    def get_question(self, question_id: str) -> Optional[QuestionDef]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


# ---------------------------------------------------------------------------
# Answers and grading results
# ---------------------------------------------------------------------------


class UserAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    selected_option_ids: List[str] = Field(default_factory=list)
    text: str = ""

    @field_validator("selected_option_ids")
    @classmethod
    def dedupe_selection(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @property
    def is_answered(self) -> bool:
        return bool(self.selected_option_ids) or bool(self.text.strip())


class GradeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    points_awarded: int
    is_correct: bool
    is_answered: bool
    pending_review: bool = False


class SessionScore(BaseModel):
    total_score: int
    max_score: int
    percentage: Optional[int] = None
    pending_review_count: int = 0
    results: Dict[str, GradeResult] = Field(default_factory=dict)


class QuestionReview(BaseModel):
    question_id: str
    prompt: str
    question_type: QuestionType
    points: int
    points_awarded: int
    is_correct: bool
    pending_review: bool
    selected_option_ids: List[str]
    correct_option_ids: List[str]
    text: str = ""
    explanation: Optional[str] = None


# ---------------------------------------------------------------------------
# Session snapshot
# ---------------------------------------------------------------------------


class AttemptSession(BaseModel):
    """In-memory state of one attempt; the store holds a replica of it."""

    id: str
    user_id: str
    assessment_id: str
    state: SessionState = SessionState.NOT_STARTED
    allowed_duration_seconds: int = Field(gt=0)
    elapsed_seconds: float = Field(default=0.0, ge=0)
    answers: Dict[str, UserAnswer] = Field(default_factory=dict)
    flagged_question_ids: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    score: Optional[int] = None
    max_score: Optional[int] = None
    pending_review_count: int = 0
    submit_reason: Optional[SubmitReason] = None

    @model_validator(mode="after")
    def validate_elapsed(self) -> "AttemptSession":
        if self.elapsed_seconds > self.allowed_duration_seconds:
            raise ValueError("elapsed_seconds cannot exceed allowed_duration_seconds")
        return self

    @field_validator("flagged_question_ids")
    @classmethod
    def normalise_flags(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    @property
    def answered_count(self) -> int:
        return sum(1 for a in self.answers.values() if a.is_answered)

    def question_status(self, question_id: str) -> str:
        """answered, flagged or unanswered; an answer outranks a flag."""
        answer = self.answers.get(question_id)
        if answer is not None and answer.is_answered:
            return "answered"
        if question_id in self.flagged_question_ids:
            return "flagged"
        return "unanswered"


class ReadingProgress(BaseModel):
    user_id: str
    content_id: str
    completion_percentage: int = Field(default=0, ge=0, le=100)
    time_spent_seconds: float = Field(default=0.0, ge=0)
    is_completed: bool = False
    bookmarks: List[int] = Field(default_factory=list)
    last_accessed: Optional[datetime] = None

    @field_validator("bookmarks")
    @classmethod
    def normalise_bookmarks(cls, v: List[int]) -> List[int]:
        return sorted(set(v))

    @model_validator(mode="after")
    def pin_completed(self) -> "ReadingProgress":
        if self.is_completed and self.completion_percentage != 100:
            raise ValueError("a completed reading must report 100%")
        return self
