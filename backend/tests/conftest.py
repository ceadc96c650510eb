# backend/tests/conftest.py
import os

# Settings are read at import time, so the test environment has to be in place first.
os.environ.setdefault("JWT_SECRET_KEY", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET_KEY", "test-refresh-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOGIN_DELAY_MS", "0")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("BACKEND_CORS_ORIGINS", "")
os.environ.setdefault("DATA_ENCRYPTION_KEYS", "test-encryption-key")

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from memberauth.api.deps import get_auth_service  # noqa: E402
from memberauth.core.tokens import TokenConfig, TokenIssuer  # noqa: E402
from memberauth.db.base import Base  # noqa: E402
from memberauth.db.session import get_async_session  # noqa: E402
from memberauth.main import app as fastapi_app  # noqa: E402
from memberauth.services.account_lockout import AccountLockoutPolicy, LockoutConfig  # noqa: E402
from memberauth.services.auth_service import AuthService  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Creates/Disposes an in-memory engine FOR EACH TEST FUNCTION."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yields a database session per function, using the function-scoped engine."""
    TestSessionFactory = async_sessionmaker(
        test_engine, expire_on_commit=False, class_=AsyncSession
    )
    async with TestSessionFactory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def lockout_config() -> LockoutConfig:
    return LockoutConfig()


@pytest.fixture
def lockout_policy(lockout_config: LockoutConfig) -> AccountLockoutPolicy:
    return AccountLockoutPolicy(lockout_config)


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(access_secret="access-secret", refresh_secret="refresh-secret")


@pytest.fixture
def token_issuer(token_config: TokenConfig) -> TokenIssuer:
    return TokenIssuer(token_config)


@pytest.fixture
def auth_service(lockout_policy: AccountLockoutPolicy, token_issuer: TokenIssuer) -> AuthService:
    return AuthService(lockout_policy, token_issuer, login_delay_seconds=0)


@pytest_asyncio.fixture(scope="function")
async def test_client(
    db_session: AsyncSession, auth_service: AuthService
) -> AsyncGenerator[AsyncClient, None]:
    """
    Creates an httpx AsyncClient using ASGITransport for testing the FastAPI app.
    Injects the function-scoped test database session and auth service.
    """

    async def override_get_async_session_for_test() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    fastapi_app.dependency_overrides[get_async_session] = override_get_async_session_for_test
    fastapi_app.dependency_overrides[get_auth_service] = lambda: auth_service

    async with AsyncClient(
        transport=ASGITransport(app=fastapi_app), base_url="http://test"
    ) as client:
        yield client

    fastapi_app.dependency_overrides.clear()
