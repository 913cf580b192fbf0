"""
Test fixtures and configuration for pytest.
"""

import os
from typing import AsyncGenerator, Optional

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_refresh_rotation.db"
TEST_SECRET_KEY = "test-secret-key-with-at-least-thirty-two-characters"

os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("SECRET_KEY", TEST_SECRET_KEY)
os.environ.setdefault("CLEANUP_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from refresh_rotation.config import Settings, get_settings
from refresh_rotation.db.database import Base, build_engine, build_session_factory, get_db
from refresh_rotation.services.identity import Identity
from refresh_rotation.services.token_issuer import TokenIssuer
from refresh_rotation.services.token_store import TokenStore


class FakeIdentityProvider:
    """Identity provider backed by an in-memory user table."""

    def __init__(self, users: Optional[dict] = None):
        # username -> (password, Identity)
        self.users = users or {
            "alice": ("wonderland", Identity(user_id="user-alice", roles=("member",))),
            "bob": ("builder", Identity(user_id="user-bob", roles=("member", "admin"))),
        }

    async def authenticate(self, username: str, password: str) -> Optional[Identity]:
        entry = self.users.get(username)
        if entry is None or entry[0] != password:
            return None
        return entry[1]


def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": TEST_DATABASE_URL,
        "SECRET_KEY": TEST_SECRET_KEY,
        "CLEANUP_ENABLED": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    """Settings with a test secret and default token lifetimes."""
    return make_settings()


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh schema on the test database for each test."""
    # Import models to register them
    from refresh_rotation.models import auth_audit, refresh_token  # noqa: F401

    test_engine = build_engine(TEST_DATABASE_URL)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db_session: AsyncSession) -> TokenStore:
    return TokenStore(db_session)


@pytest.fixture
def issuer(store: TokenStore, settings: Settings) -> TokenIssuer:
    return TokenIssuer(store, settings=settings)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory, settings: Settings, identity_provider: FakeIdentityProvider
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with per-request sessions on the test database."""
    from refresh_rotation.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    previous_provider = app.state.identity_provider
    app.state.identity_provider = identity_provider

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.identity_provider = previous_provider
