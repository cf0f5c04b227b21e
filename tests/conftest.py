import os

# Point the app's own engine at memory before anything imports the config.
os.environ.setdefault("ASSESSMENT_DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, text

from assessment_engine.database import create_db_and_tables, create_memory_engine
from assessment_engine.schemas import AnswerOptionDef, AssessmentDefinition, QuestionDef, QuestionType
from assessment_engine.services.store import SessionStore

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# StaticPool: every connection (including asyncio.to_thread workers) shares one database
test_engine = create_memory_engine()


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    create_db_and_tables(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data after each test."""
    yield

    # FK-safe order
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM reading_progress"))
        session.exec(text("DELETE FROM attempt"))
        session.exec(text("DELETE FROM answeroption"))
        session.exec(text("DELETE FROM question"))
        session.exec(text("DELETE FROM assessment"))
        session.commit()


@pytest.fixture
def engine():
    return test_engine


@pytest.fixture
def store():
    return SessionStore(test_engine)


# ============================================================================
# CLOCK
# ============================================================================


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller_options(clock):
    """AttemptController kwargs with the real timers switched off."""
    return {"clock": clock, "autosave_interval": None, "tick_interval": None}


@pytest.fixture
def tracker_options(clock):
    return {"clock": clock, "flush_interval": None, "debounce_seconds": 0.01}


# ============================================================================
# ASSESSMENT FIXTURES
# ============================================================================


@pytest.fixture
def two_question_quiz(store):
    """Two single-choice questions worth 1 point each; correct answers a1 and b2."""
    definition = AssessmentDefinition(
        id="quiz-a",
        title="Scenario A quiz",
        kind="quiz",
        allowed_duration_seconds=600,
        questions=[
            QuestionDef(
                id="qa",
                prompt="First question?",
                question_type=QuestionType.SINGLE_CHOICE,
                options=[
                    AnswerOptionDef(id="a1", text="Right", is_correct=True),
                    AnswerOptionDef(id="a2", text="Wrong"),
                ],
            ),
            QuestionDef(
                id="qb",
                prompt="Second question?",
                question_type=QuestionType.SINGLE_CHOICE,
                options=[
                    AnswerOptionDef(id="b1", text="Wrong"),
                    AnswerOptionDef(id="b2", text="Right", is_correct=True),
                ],
            ),
        ],
    )
    return store.save_assessment(definition)


@pytest.fixture
def timed_exam(store):
    """A 120-second exam with one multiple-choice and one essay question."""
    definition = AssessmentDefinition(
        id="exam-b",
        title="Short timed exam",
        kind="exam",
        allowed_duration_seconds=120,
        questions=[
            QuestionDef(
                id="mc",
                prompt="Pick the odd numbers",
                question_type=QuestionType.MULTIPLE_CHOICE,
                points=2,
                explanation="1 and 3 are odd.",
                options=[
                    AnswerOptionDef(id="o1", text="1", is_correct=True),
                    AnswerOptionDef(id="o2", text="2"),
                    AnswerOptionDef(id="o3", text="3", is_correct=True),
                ],
            ),
            QuestionDef(
                id="essay",
                prompt="Explain recursion",
                question_type=QuestionType.ESSAY,
                points=3,
            ),
        ],
    )
    return store.save_assessment(definition)


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================


@pytest.fixture
def client(store, clock):
    """TestClient kept open for the whole test so live objects survive between requests."""
    from assessment_engine.deps import get_attempt_options, get_reading_options, get_store
    from assessment_engine.main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_attempt_options] = lambda: {
        "clock": clock,
        "autosave_interval": None,
        "tick_interval": None,
    }
    app.dependency_overrides[get_reading_options] = lambda: {
        "clock": clock,
        "flush_interval": None,
        "debounce_seconds": 30,
    }

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
