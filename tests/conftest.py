"""Shared test fixtures.

Every test gets a fresh in-memory SQLite database built from the model
metadata, so the suite needs neither PostgreSQL nor Redis.
"""

from __future__ import annotations

import json
import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

os.environ["CG_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CG_REDIS_URL"] = ""
os.environ["CG_ENVIRONMENT"] = "test"
os.environ["CG_JWT_SECRET"] = "test-secret-key-with-enough-bytes-for-hs256"
os.environ["CG_LOG_FORMAT"] = "console"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from cerca.achievements.cache import reset_achievement_cache  # noqa: E402
from cerca.auth.jwt import create_access_token  # noqa: E402
from cerca.auth.password import hash_password  # noqa: E402
from cerca.config import get_settings  # noqa: E402
from cerca.context import RequestContext  # noqa: E402
from cerca.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from cerca.db.base import Base  # noqa: E402
from cerca.db.models import Policy, PolicyUser, User  # noqa: E402
from cerca.main import create_app  # noqa: E402
from cerca.permissions.evaluator import get_policy_evaluator, reset_policy_evaluator  # noqa: E402
from cerca.ratelimit import reset_rate_limiter  # noqa: E402

# argon2 hashing is slow on purpose; one hash is shared by every test user.
TEST_PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@pytest.fixture(autouse=True)
def _reset_caches() -> None:
    """Process-wide caches must not leak between tests."""
    get_settings.cache_clear()
    reset_policy_evaluator()
    reset_achievement_cache()
    reset_rate_limiter()


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A single session for service-level tests. HTTP tests use ``session_factory`` instead."""
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def session_factory(database: None) -> async_sessionmaker[AsyncSession]:
    """Short-lived sessions for HTTP tests; commit and close before issuing requests."""
    return get_session_factory()


@pytest_asyncio.fixture
async def client(database: None) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the CSRF cookie already minted and echoed in the header."""
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/health")
        token = response.cookies.get(get_settings().csrf_cookie_name)
        assert token
        ac.headers["X-CSRF-Token"] = token
        yield ac


@pytest.fixture
def make_user() -> Callable[..., Awaitable[User]]:
    async def _make(db: AsyncSession, username: str | None = None, *, active: bool = True) -> User:
        username = username or f"user-{uuid.uuid4().hex[:8]}"
        user = User(
            username=username,
            email=f"{username}@example.org",
            password_hash=_PASSWORD_HASH,
            is_active=active,
        )
        db.add(user)
        await db.flush()
        return user

    return _make


@pytest.fixture
def grant_policy() -> Callable[..., Awaitable[Policy]]:
    """Attach a new policy with the given permission document to a user."""

    async def _grant(db: AsyncSession, user_id: int, permisos: dict[str, Any], nom: str | None = None) -> Policy:
        policy = Policy(nom=nom or f"policy-{uuid.uuid4().hex[:8]}", permisos=json.dumps(permisos))
        db.add(policy)
        await db.flush()
        db.add(PolicyUser(policy_id=policy.id, user_id=user_id))
        await db.flush()
        get_policy_evaluator().invalidate()
        return policy

    return _grant


@pytest.fixture
def ctx_for() -> Callable[[User | None], RequestContext]:
    def _ctx(user: User | None) -> RequestContext:
        if user is None:
            return RequestContext()
        return RequestContext(user_id=user.id, username=user.username)

    return _ctx


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.username)}"}

    return _headers
