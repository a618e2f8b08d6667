# tests/conftest.py

import logging
import os

# Point the application at SQLite BEFORE importing portal modules, the
# engine in portal.db is created at import time
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MAIL_BACKEND", "log")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal import models
from portal.api import app, get_mail_transport, get_orchestrator
from portal.config import IngestSettings, MailSettings
from portal.db import get_session, get_session_factory
from portal.notifications import WelcomeNotifier
from portal.pipelines.enrollment import EnrollmentCommitter
from portal.pipelines.orchestrator import BatchOrchestrator


class RecordingTransport:
    """Mail transport double that records messages, or fails on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, to, subject, html_body):
        if self.fail:
            raise ConnectionRefusedError("SMTP server unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html_body})


def fast_hash(password):
    """Low-iteration salted hash for tests."""
    from werkzeug.security import generate_password_hash

    return generate_password_hash(password, method="pbkdf2:sha256:1000")


@pytest.fixture
async def session_factory(tmp_path):
    """Per-test SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def failing_transport():
    return RecordingTransport(fail=True)


@pytest.fixture
def mail_config():
    return MailSettings(portal_name="EduSpace", login_url="http://portal.test/login")


@pytest.fixture
def ingest_config():
    return IngestSettings(
        provisional_password="12345678",
        max_concurrency=4,
        row_timeout_seconds=30,
        batch_deadline_seconds=60,
        await_notifications=False,
    )


@pytest.fixture
def committer(session_factory):
    return EnrollmentCommitter(session_factory, hasher=fast_hash)


@pytest.fixture
def make_orchestrator(session_factory, committer, mail_config, ingest_config):
    """Build an orchestrator around a given transport."""

    def _make(mail_transport, config=None):
        return BatchOrchestrator(
            session_factory,
            committer,
            WelcomeNotifier(mail_transport, mail_config),
            config or ingest_config,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, transport):
    return make_orchestrator(transport)


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model, optionally filtered."""

    async def _count(model, *criteria):
        async with session_factory() as session:
            query = select(func.count()).select_from(model)
            if criteria:
                query = query.where(*criteria)
            return await session.scalar(query)

    return _count


@pytest.fixture
def root_logging():
    """Restore the root logger after a test configures it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level

    yield root

    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
async def client(session_factory, orchestrator, transport):
    """HTTP client against the app with the test database and mail transport."""

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_mail_transport] = lambda: transport
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
