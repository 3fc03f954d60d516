import asyncio
import os
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

# Keep the app's own engine off the developer database during tests.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from lampchat.auth import create_session
from lampchat.config import get_settings
from lampchat.core import PersistenceError
from lampchat.db import get_db
from lampchat.db.models import Chat, User
from lampchat.db.repositories import create_chat, create_user
from lampchat.providers.base import ChatRequest, TextChunk, TokenStreamSource
from lampchat.services import MessageGateway

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def apply_migrations(db_url: str) -> None:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def engine(db_url: str):
    apply_migrations(db_url)
    engine = create_engine(
        db_url,
        poolclass=NullPool,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway(session_factory) -> MessageGateway:
    return MessageGateway(session_factory)


def make_user(db: Session, name: str = "Test") -> User:
    return create_user(db, f"user-{uuid.uuid4().hex[:8]}@example.com", name)


@pytest.fixture
def user(db_session: Session) -> User:
    return make_user(db_session)


@pytest.fixture
def other_user(db_session: Session) -> User:
    return make_user(db_session, "Other")


@pytest.fixture
def chat(db_session: Session, user: User) -> Chat:
    return create_chat(db_session, user.id, "Test chat")


class ScriptedSource(TokenStreamSource):
    """Token source stub replaying predefined steps.

    Steps are strings (text chunks), stream events, exceptions (raised), or
    ``("sleep", seconds)`` pauses. One script is consumed per ``stream`` call;
    the last script repeats.
    """

    def __init__(self, *scripts: list[Any]):
        self.scripts = list(scripts) or [[]]
        self.requests: list[ChatRequest] = []
        self.closed = 0

    async def stream(self, request: ChatRequest) -> AsyncGenerator[Any, None]:
        self.requests.append(request)
        script = self.scripts[min(len(self.requests), len(self.scripts)) - 1]
        try:
            for step in script:
                await asyncio.sleep(0)
                if isinstance(step, tuple) and step[0] == "sleep":
                    await asyncio.sleep(step[1])
                elif isinstance(step, Exception):
                    raise step
                elif isinstance(step, str):
                    yield TextChunk(text=step)
                else:
                    yield step
        finally:
            self.closed += 1


class RecordingGateway:
    """Wraps a real gateway, logging calls and optionally failing some."""

    def __init__(self, inner: MessageGateway):
        self.inner = inner
        self.calls: list[tuple[str, Any]] = []
        self.fail_appends_after: int | None = None
        self.fail_updates = 0

    @property
    def writes(self) -> list[tuple[str, Any]]:
        return [call for call in self.calls if call[0] in ("append", "update")]

    def history(self, user_id: str, chat_id: str):
        self.calls.append(("history", chat_id))
        return self.inner.history(user_id, chat_id)

    def append(self, user_id: str, chat_id: str, draft):
        appends = sum(1 for name, _ in self.calls if name == "append")
        self.calls.append(("append", draft))
        if self.fail_appends_after is not None and appends >= self.fail_appends_after:
            raise PersistenceError("Failed to add message")
        return self.inner.append(user_id, chat_id, draft)

    def update(self, user_id: str, chat_id: str, message_id: str, patch):
        self.calls.append(("update", patch))
        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise PersistenceError("Failed to update message")
        return self.inner.update(user_id, chat_id, message_id, patch)


@pytest.fixture
def recording_gateway(gateway: MessageGateway) -> RecordingGateway:
    return RecordingGateway(gateway)


@pytest.fixture
def source_factory():
    return ScriptedSource


@pytest.fixture
def auth_headers(db_session: Session, user: User) -> dict[str, str]:
    token = create_session(db_session, user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app_factory(session_factory):
    """Build an app wired to the test database and a scripted source."""
    from lampchat.main import create_app

    created = []

    def build(source: TokenStreamSource | None = None, settings=None):
        app = create_app(settings or get_settings())
        app.state.message_gateway = MessageGateway(session_factory)
        app.state.stream_source = source or ScriptedSource(["ok"])

        def override_get_db():
            session = session_factory()
            try:
                yield session
            finally:
                session.close()

        app.dependency_overrides[get_db] = override_get_db
        created.append(app)
        return app

    yield build
    for app in created:
        app.dependency_overrides.clear()


@pytest.fixture
def client(app_factory):
    with TestClient(app_factory()) as test_client:
        yield test_client
