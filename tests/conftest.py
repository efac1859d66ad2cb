"""
Pytest configuration and fixtures for MiniChat tests.

This module provides shared fixtures for testing database models, repositories,
the divergence resolver and the conversation service.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Generator, List, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from minichat.config import Settings
from minichat.db.connection import _enable_sqlite_foreign_keys
from minichat.db.repositories import (
    ConversationRepository,
    MessageRepository,
    VersionGroupRepository,
)
from minichat.exceptions import CollaboratorFailure
from minichat.llm.base import CompletionResult, InferenceClient
from minichat.models.db import Base, Conversation
from minichat.services.conversation_service import ConversationService

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


class WordTokenizer:
    """Deterministic tokenizer: one token per whitespace-separated word."""

    def count(self, text: str) -> int:
        return len(text.split())


class FakeInference(InferenceClient):
    """Inference client returning canned replies and recording prompts."""

    def __init__(self, replies: Optional[List[str]] = None, fail: bool = False):
        self.replies = list(replies or [])
        self.fail = fail
        self.prompts: List[str] = []

    def complete(self, prompt: str) -> CompletionResult:
        self.prompts.append(prompt)
        if self.fail:
            raise CollaboratorFailure("inference server", "connection refused")
        content = self.replies.pop(0) if self.replies else f"reply {len(self.prompts)}"
        return CompletionResult(content=content, duration_ms=12.5)


def _sqlite_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = _sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test.

    Each test gets a fresh session with a transaction that is rolled back
    after the test completes, ensuring test isolation.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = sessionmaker(bind=connection)()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def conversation_repo(db_session: Session) -> ConversationRepository:
    return ConversationRepository(db_session)


@pytest.fixture
def message_repo(db_session: Session, tokenizer) -> MessageRepository:
    return MessageRepository(db_session, tokenizer)


@pytest.fixture
def version_repo(db_session: Session) -> VersionGroupRepository:
    return VersionGroupRepository(db_session)


@pytest.fixture
def sample_conversation(db_session: Session) -> Conversation:
    """Create an empty conversation."""
    conversation = Conversation(
        id=uuid.uuid4(),
        title="Sample",
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )
    db_session.add(conversation)
    db_session.flush()
    return conversation


@pytest.fixture
def service_engine():
    """A private in-memory database for tests that commit."""
    engine = _sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(service_engine):
    return sessionmaker(
        bind=service_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        context_window=200,
        response_reserve=50,
        system_prompt="You are a test assistant.",
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def service(session_factory, tokenizer, inference, test_settings) -> ConversationService:
    return ConversationService(
        session_factory=session_factory,
        tokenizer=tokenizer,
        inference=inference,
        config=test_settings,
    )


@pytest.fixture
def at():
    """Fixed timestamps, ``at(n)`` being n seconds after the test epoch."""

    def _at(seconds: int) -> datetime:
        return BASE_TIME + timedelta(seconds=seconds)

    return _at
