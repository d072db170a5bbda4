"""
Pytest configuration and fixtures
"""
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import counsel.models  # noqa: F401  (registers LocalEntry)
from counsel.repository import LocalRepository, RemoteRepository
from counsel.storage import InMemoryDocumentStore, SQLKeyValueStore


class FakeModel:
    """Language-model collaborator double that records every prompt."""

    def __init__(self, reply="I hear you.", error=None, hook=None):
        self.reply = reply
        self.error = error
        self.hook = hook
        self.prompts = []

    def send(self, text, user_id=None, session_id=None):
        self.prompts.append(text)
        if self.hook:
            self.hook()
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def kv(engine):
    return SQLKeyValueStore(engine)


@pytest.fixture
def docs():
    return InMemoryDocumentStore()


@pytest.fixture
def local_repo(kv):
    return LocalRepository(kv)


@pytest.fixture
def remote_repo(docs):
    return RemoteRepository(docs, "user-1")


@pytest.fixture(params=["local", "remote"])
def repository(request, kv, docs):
    """Both storage scopes, for behaviour they must share."""
    if request.param == "local":
        return LocalRepository(kv)
    return RemoteRepository(docs, "user-1")


@pytest.fixture
def fake_model():
    return FakeModel()
