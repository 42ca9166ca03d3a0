"""
Pytest configuration and fixtures for the dialler test suite.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dialler.calls import models  # noqa: F401  (registers tables)
from dialler.calls.schemas import UserCallContext, UserClaim
from dialler.config import Settings
from dialler.shared.database import Base
from dialler.shared.exceptions import NotFoundError, UserContextUnavailableError

TEST_JWT_SECRET = "test-secret-key-for-testing-only"
T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; call it like ``utcnow``."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeUserContextProvider:
    """In-memory stand-in for the user/claims service."""

    def __init__(self) -> None:
        self.missing: set[int] = set()
        self.unavailable = False
        self.calls: list[int] = []

    async def get_user_context(self, user_id: int) -> UserCallContext:
        self.calls.append(user_id)
        if self.unavailable:
            raise UserContextUnavailableError(message="User service unavailable")
        if user_id in self.missing:
            raise NotFoundError(message=f"User not found: {user_id}")
        return UserCallContext(
            user_id=user_id,
            first_name="Jane",
            last_name=f"Doe{user_id}",
            email=f"user{user_id}@example.com",
            phone_number="+447700900000",
            claims=[UserClaim(id=user_id * 10, type="vehicle_finance", status="active", lender="Acme")],
        )


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin settings that ``get_settings()`` reads during a test."""
    monkeypatch.setenv("JWT_SECRET_KEY", TEST_JWT_SECRET)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("TELEPHONY_TWILIO_AUTH_TOKEN", "")
    monkeypatch.setenv("CALLBACK_AFFINITY_GRACE_MINUTES", "15")


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        app_env="dev",
        database_url="sqlite+aiosqlite://",
        jwt_secret_key=TEST_JWT_SECRET,
        callback_affinity_grace_minutes=15,
        stale_call_timeout_minutes=30,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def user_provider() -> FakeUserContextProvider:
    return FakeUserContextProvider()


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[Any, None]:
    """In-memory SQLite shared across sessions through a single connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


def make_token(agent_id: int, role: str = "agent", secret: str = TEST_JWT_SECRET, **claims: Any) -> str:
    payload = {
        "agent_id": agent_id,
        "role": role,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(agent_id: int, role: str = "agent") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(agent_id, role)}"}


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    user_provider: FakeUserContextProvider,
    clock: FixedClock,
) -> AsyncGenerator[AsyncClient, None]:
    """API client over the real app with the store, clock and user service swapped."""
    from dialler.calls.router import get_clock
    from dialler.calls.user_context import get_user_context_provider
    from dialler.main import create_app
    from dialler.shared.database import get_db_session

    app = create_app()

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_user_context_provider] = lambda: user_provider
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Build ``Authorization`` headers for an agent id and role."""
    return auth_headers
