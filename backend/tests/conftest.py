"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Each test gets a fresh engine with all tables created, and a session bound
  to a connection whose outer transaction always rolls back.
- Defaults to in-memory SQLite; set TEST_DATABASE_URL to run against Postgres.
"""

import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_token_pair
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.user import User
from app.services.subscription_events import SubscriptionChangeFeed, get_change_feed

TEST_WEBHOOK_SECRET = "polar-test-webhook-secret"

_test_db_url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")


def _make_engine():
    if _test_db_url.startswith("sqlite"):
        # One shared in-memory connection for the whole test
        return create_async_engine(
            _test_db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(_test_db_url, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Settings: never talk to real Polar from tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "polar_webhook_secret", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "polar_premium_product_id", "prod_test_premium")
    monkeypatch.setattr(settings, "polar_access_token", "polar_oat_test")
    monkeypatch.setattr(settings, "frontend_url", "https://app.example.test")


# ---------------------------------------------------------------------------
# Database: fresh schema per test, transactional rollback
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session wrapped in a transaction that always rolls back."""
    async with test_engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(bind=connection, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            if transaction.is_active:
                await transaction.rollback()


@pytest.fixture
def change_feed() -> SubscriptionChangeFeed:
    return SubscriptionChangeFeed()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, change_feed: SubscriptionChangeFeed
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session and feed."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_change_feed] = lambda: change_feed

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: users and auth headers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory that inserts a user; the email is unique unless given."""

    async def _make_user(
        email: str | None = None,
        name: str | None = "Test User",
        is_active: bool = True,
    ) -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            name=name,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.flush()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    return await make_user()


def _auth_headers_for(user: User) -> dict[str, str]:
    tokens = create_token_pair(str(user.id))
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def headers_for() -> Callable[[User], dict[str, str]]:
    """Build Authorization headers for any user."""
    return _auth_headers_for


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return _auth_headers_for(test_user)
