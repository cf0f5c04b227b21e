"""Whole-attempt scenarios driven through AttemptController and a real store."""

import asyncio

import pytest

from assessment_engine.schemas import SessionState, SubmitReason, UserAnswer
from assessment_engine.services.lifecycle import AttemptController


def test_scenario_a_half_marks(store, two_question_quiz, controller_options):
    async def scenario():
        controller = await AttemptController.open(store, "student-a", "quiz-a", **controller_options)
        await controller.start()
        await controller.record_answer("qa", UserAnswer(selected_option_ids=["a1"]))
        await controller.record_answer("qb", UserAnswer(selected_option_ids=["b1"]))
        await controller.submit()
        return controller

    controller = asyncio.run(scenario())
    score = controller.result()
    assert (score.total_score, score.max_score, score.percentage) == (1, 2, 50)
    assert store.load_session(controller.id).score == 1


def test_scenario_b_deadline_clamps_elapsed_time(store, timed_exam, clock, controller_options):
    async def scenario():
        controller = await AttemptController.open(store, "student-b", "exam-b", **controller_options)
        await controller.start()
        for _ in range(130):  # one countdown tick per second
            clock.advance(1)
            await controller.poll()
        return controller

    controller = asyncio.run(scenario())
    stored = store.load_session(controller.id)
    assert stored.state == SessionState.SUBMITTED
    assert stored.elapsed_seconds == 120
    assert stored.submit_reason == SubmitReason.DEADLINE


def test_scenario_c_background_tab_time_not_counted(store, two_question_quiz, clock, controller_options):
    async def scenario():
        controller = await AttemptController.open(store, "student-c", "quiz-a", **controller_options)
        await controller.start()
        clock.advance(3)
        await controller.suspend()
        clock.advance(500)
        await controller.resume()
        clock.advance(10)
        await controller.record_answer("qa", UserAnswer(selected_option_ids=["a1"]))
        return await controller.submit()

    session = asyncio.run(scenario())
    assert session.elapsed_seconds == pytest.approx(13)
    assert session.elapsed_seconds < 500


def test_scenario_d_superset_selection_scores_zero(store, timed_exam, controller_options):
    async def scenario():
        controller = await AttemptController.open(store, "student-d", "exam-b", **controller_options)
        await controller.start()
        await controller.record_answer("mc", UserAnswer(selected_option_ids=["o1", "o2", "o3"]))
        await controller.submit()
        return controller

    controller = asyncio.run(scenario())
    assert controller.result().results["mc"].points_awarded == 0
    assert controller.session.score == 0


def test_abandoned_attempt_resumed_twice_stays_single(store, two_question_quiz, controller_options):
    async def scenario():
        first = await AttemptController.open(store, "student-e", "quiz-a", **controller_options)
        first.teardown()
        await first.autosave.drain()
        second = await AttemptController.open(store, "student-e", "quiz-a", **controller_options)
        third = await AttemptController.open(store, "student-e", "quiz-a", **controller_options)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first.id == second.id == third.id
    open_attempts = [a for a in store.list_attempts("student-e", "quiz-a") if a.is_open]
    assert len(open_attempts) == 1


def test_essay_answers_count_provisionally(store, timed_exam, controller_options):
    async def scenario():
        controller = await AttemptController.open(store, "student-f", "exam-b", **controller_options)
        await controller.start()
        await controller.record_answer("mc", UserAnswer(selected_option_ids=["o1", "o3"]))
        await controller.record_answer("essay", UserAnswer(text="A function calling itself"))
        return await controller.submit()

    session = asyncio.run(scenario())
    assert session.score == 5
    assert session.max_score == 5
    assert session.pending_review_count == 1
