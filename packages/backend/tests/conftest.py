"""Test fixtures — a fresh in-memory database and a running app per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI + the realtime pipeline:

1. Each test gets its own aiosqlite engine on a StaticPool, so every session
   in the test shares one in-memory database and nothing leaks between tests.
2. The app's get_session_factory is overridden once; REST routes and the
   WebSocket admission check both follow it.
3. httpx's ASGITransport does not run lifespan events, so the app fixture
   enters the lifespan itself. That starts the MemoryChangeSource and the
   Broadcaster task on the test's event loop.

Nothing here needs PostgreSQL. The NOTIFY path is covered by test_source.py
against a fake asyncpg connection.
"""

import asyncio
import json
import os
import uuid

os.environ.setdefault("ORDERSTREAM_DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from orderstream.auth.dependencies import CurrentIdentity
from orderstream.auth.jwt import create_access_token
from orderstream.db.engine import get_session_factory
from orderstream.db.models import Base, Role
from orderstream.main import create_app
from orderstream.realtime.registry import Subscriber
from orderstream.realtime.source import MemoryChangeSource
from orderstream.services.user_service import UserService

TEST_DB_URL = "sqlite+aiosqlite://"


# ═══════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine(
        TEST_DB_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ═══════════════════════════════════════════════════════════
# App + HTTP client
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def app(session_factory):
    """A running app: change source, registry and broadcaster all live."""
    app = create_app(change_source=MemoryChangeSource())
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with app.router.lifespan_context(app):
        yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ═══════════════════════════════════════════════════════════
# Users + credentials
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def make_user(session_factory):
    """Create a user with a given role straight through the service."""

    async def _make(role: Role = Role.VIEWER, email: str | None = None):
        async with session_factory() as db:
            return await UserService(db).register(
                email or f"user-{uuid.uuid4().hex[:8]}@example.com",
                "Test User",
                "password_123",
                role=role,
            )

    return _make


@pytest_asyncio.fixture()
async def auth_headers(make_user):
    """Bearer headers for a freshly created user of the given role."""

    async def _headers(role: Role = Role.ADMIN) -> dict[str, str]:
        user = await make_user(role)
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest_asyncio.fixture()
async def admin_headers(auth_headers):
    return await auth_headers(Role.ADMIN)


@pytest_asyncio.fixture()
async def operator_headers(auth_headers):
    return await auth_headers(Role.OPERATOR)


@pytest_asyncio.fixture()
async def viewer_headers(auth_headers):
    return await auth_headers(Role.VIEWER)


# ═══════════════════════════════════════════════════════════
# Realtime fakes
# ═══════════════════════════════════════════════════════════


class FakeTransport:
    """In-memory stand-in for a subscriber's WebSocket."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.fail = fail
        self.hang = hang
        self.open = True
        self.frames: list[dict] = []
        self.closed_with: int | None = None

    async def send(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        if self.hang:
            await asyncio.sleep(3600)
        self.frames.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.open = False
        self.closed_with = code

    def of_type(self, event_type: str) -> list:
        return [f["data"] for f in self.frames if f["type"] == event_type]


@pytest.fixture()
def subscriber():
    """Build (Subscriber, FakeTransport) pairs."""

    def _make(role: Role = Role.VIEWER, **transport_kwargs):
        transport = FakeTransport(**transport_kwargs)
        sub = Subscriber(
            connection_id=uuid.uuid4().hex,
            identity=CurrentIdentity(user_id=uuid.uuid4().hex, role=role),
            transport=transport,
        )
        return sub, transport

    return _make


@pytest.fixture()
def until():
    """Poll a predicate until it holds (or fail after ``timeout`` seconds)."""

    async def _until(predicate, timeout: float = 2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)

    return _until
