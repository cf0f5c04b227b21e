"""
services/grading.py

Scoring of recorded answers against an assessment definition.
Pure functions: no I/O, no clock, no shared state.
"""

from typing import Dict, List, Mapping, Optional

from assessment_engine.exceptions import GradingIntegrityError
from assessment_engine.schemas import (
    SINGLE_ANSWER_TYPES,
    AssessmentDefinition,
    GradeResult,
    QuestionDef,
    QuestionReview,
    SessionScore,
    UserAnswer,
)
from assessment_engine.utils import round_half_up

_EMPTY_ANSWER = UserAnswer()


def check_answer(question: QuestionDef, answer: UserAnswer) -> None:
    """Reject an answer that cannot belong to ``question``.

    Raises:
        GradingIntegrityError: the answer selects an option id the question
            does not own.
    """
    unknown = [oid for oid in answer.selected_option_ids if oid not in question.option_ids]
    if unknown:
        raise GradingIntegrityError(
            f"Question {question.id}: option(s) {', '.join(sorted(unknown))} do not belong to this question"
        )


def grade(question: QuestionDef, answer: Optional[UserAnswer]) -> GradeResult:
    """
    Grade one recorded answer.

    Choice questions are scored all-or-nothing. Short answer and essay
    responses cannot be checked automatically: an answered one is awarded its
    points provisionally and flagged ``pending_review`` so automatic scoring
    never penalises an open-ended response.

    Args:
        question: the question definition, correct flags included.
        answer:   the candidate's answer, or None when nothing was recorded.

    Returns:
        GradeResult with the points awarded and the verdict.

    Raises:
        GradingIntegrityError: the answer references an unknown option.
    """
    answer = answer or _EMPTY_ANSWER
    check_answer(question, answer)

    if not answer.is_answered:
        return GradeResult(
            question_id=question.id, points_awarded=0, is_correct=False, is_answered=False
        )

    if not question.question_type.is_auto_gradable:
        return GradeResult(
            question_id=question.id,
            points_awarded=question.points,
            is_correct=True,
            is_answered=True,
            pending_review=True,
        )

    selected = frozenset(answer.selected_option_ids)
    correct_ids = question.correct_option_ids
    if question.question_type in SINGLE_ANSWER_TYPES:
        is_correct = len(selected) == 1 and selected <= correct_ids
    else:
        # exact set match, no partial credit
        is_correct = selected == correct_ids

    return GradeResult(
        question_id=question.id,
        points_awarded=question.points if is_correct else 0,
        is_correct=is_correct,
        is_answered=True,
    )


def _check_answer_keys(definition: AssessmentDefinition, answers: Mapping[str, UserAnswer]) -> None:
    known = {q.id for q in definition.questions}
    stray = sorted(qid for qid in answers if qid not in known)
    if stray:
        raise GradingIntegrityError(
            f"Assessment {definition.id}: answers reference unknown question(s) {', '.join(stray)}"
        )


def grade_session(definition: AssessmentDefinition, answers: Mapping[str, UserAnswer]) -> SessionScore:
    """
    Grade a full answer set.

    ``max_score`` counts every question, open-ended ones included, so the
    percentage is comparable across attempts before and after manual review.

    Returns:
        SessionScore. ``percentage`` is None when the assessment is worth no
        points.
    """
    _check_answer_keys(definition, answers)

    results: Dict[str, GradeResult] = {}
    for question in definition.questions:
        results[question.id] = grade(question, answers.get(question.id))

    total = sum(r.points_awarded for r in results.values())
    max_score = definition.total_points
    percentage = round_half_up(total / max_score * 100) if max_score > 0 else None

    return SessionScore(
        total_score=total,
        max_score=max_score,
        percentage=percentage,
        pending_review_count=sum(1 for r in results.values() if r.pending_review),
        results=results,
    )


def review(definition: AssessmentDefinition, answers: Mapping[str, UserAnswer]) -> List[QuestionReview]:
    """Per-question breakdown shown once an attempt is over, in question order."""
    score = grade_session(definition, answers)
    entries: List[QuestionReview] = []
    for question in definition.questions:
        answer = answers.get(question.id) or _EMPTY_ANSWER
        result = score.results[question.id]
        entries.append(
            QuestionReview(
                question_id=question.id,
                prompt=question.prompt,
                question_type=question.question_type,
                points=question.points,
                points_awarded=result.points_awarded,
                is_correct=result.is_correct,
                pending_review=result.pending_review,
                selected_option_ids=list(answer.selected_option_ids),
                correct_option_ids=[o.id for o in question.options if o.is_correct],
                text="" if question.question_type.is_auto_gradable else answer.text,
                explanation=question.explanation,
            )
        )
    return entries
