import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ROTATION_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret")

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from chainattend.config import settings
from chainattend.database import get_db, init_db
from chainattend.main import app
from chainattend.services import chain_engine, challenge, sessions, token_store
from chainattend.services.gatekeeper import rate_limiter
from chainattend.services.notifier import Notifier, get_notifier

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages = []

    async def deliver(self, topic, payload):
        self.messages.append((topic, payload))

    def of_type(self, kind):
        return [payload for _, payload in self.messages if payload["type"] == kind]


def bearer(user_id, role="STUDENT"):
    token = jwt.encode({"sub": user_id, "role": role}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def fresh_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def first_eligible(monkeypatch):
    """Seed from the alphabetically first eligible students instead of at random."""
    monkeypatch.setattr(chain_engine._rng, "sample", lambda population, k: list(population)[:k])


@pytest.fixture
async def class_session(db, now):
    return await sessions.create_session(
        db,
        teacher_id="teacher-1",
        start_at=now,
        end_at=now + timedelta(hours=1),
        now=now,
    )


@pytest.fixture
def enrol(db, class_session, now):
    async def _enrol(*student_ids):
        for student_id in student_ids:
            await sessions.join_session(db, class_session.id, student_id, now=now)
    return _enrol


@pytest.fixture
def hop(db, notifier):
    """Run one challenge + hop on a chain's live token."""
    async def _hop(session_id, chain_id, scanner_id, at):
        token = await token_store.live_chain_token(db, session_id, chain_id, at)
        issued = await challenge.request_challenge(
            db, session_id=session_id, chain_id=chain_id, token_id=token.token_id, scanner_id=scanner_id, now=at,
        )
        return await chain_engine.process_chain_scan(
            db,
            session_id=session_id,
            token_id=token.token_id,
            etag=token.etag,
            challenge_code=issued.code,
            requester_id=issued.holder_id,
            notifier=notifier,
            now=at,
        )
    return _hop


@pytest.fixture
async def client(session_factory, notifier):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
