"""Database configuration."""

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from assessment_engine.config import DATABASE_URL, SQL_ECHO

engine = create_engine(
    DATABASE_URL, echo=SQL_ECHO, connect_args={"check_same_thread": False}
)


def create_db_and_tables(bind=None) -> None:
    """Create database tables based on SQLModel metadata."""
    # Ensure models are imported so metadata is populated
    from assessment_engine import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def create_memory_engine(database_url: str = "sqlite:///:memory:"):
    """Create an in-memory engine shared by every connection.

    StaticPool keeps the single in-memory database alive across the worker
    threads store calls run on.
    """
    return create_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
