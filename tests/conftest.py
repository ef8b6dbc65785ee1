"""Pytest configuration and fixtures for Credential Store tests."""

import base64
import os
import time
import uuid
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

# Settings are read at import time, so the environment comes first
TEST_API_KEY = "test-integrations-api-key"
TEST_JWT_SECRET = "test-session-jwt-secret"
TEST_ENCRYPTION_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii")

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["INTEGRATIONS_API_KEY"] = TEST_API_KEY
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["SESSION_JWT_SECRET"] = TEST_JWT_SECRET
os.environ["SUPABASE_URL"] = ""

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from credstore.api.dependencies import get_cipher, get_rate_limiter
from credstore.database import Base, get_db
from credstore.main import app
from credstore.services.crypto import CredentialCipher
from credstore.services.integration_repository import IntegrationRepository
from credstore.services.rate_limiter import RateLimiter


# Test database URL (in-memory SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
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
def session_maker(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def async_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def cipher() -> CredentialCipher:
    return get_cipher()


@pytest.fixture
def repository(async_session: AsyncSession, cipher: CredentialCipher) -> IntegrationRepository:
    return IntegrationRepository(async_session, cipher)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    """Isolated limiter so tests never share request budgets."""
    return RateLimiter(max_requests=100, window_seconds=60)


@pytest_asyncio.fixture(scope="function")
async def async_client(
    session_maker: async_sessionmaker,
    rate_limiter: RateLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for testing API endpoints."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """Create synchronous test client."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_headers() -> dict[str, str]:
    """Headers accepted by the automation surface."""
    return {"x-api-key": TEST_API_KEY}


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_session_token() -> Callable[[uuid.UUID], str]:
    """Mint a dashboard session JWT the way the auth provider does."""

    def _make(subject: uuid.UUID, expires_in: int = 3600) -> str:
        claims = {
            "sub": str(subject),
            "aud": "authenticated",
            "role": "authenticated",
            "exp": int(time.time()) + expires_in,
        }
        return jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")

    return _make


@pytest.fixture
def session_headers(make_session_token, user_id) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_session_token(user_id)}"}


@pytest.fixture
def linkedin_credentials() -> dict[str, Any]:
    """LinkedIn credentials as stored after the OAuth exchange."""
    return {
        "access_token": "AQX-linkedin-access",
        "refresh_token": "AQX-linkedin-refresh",
        "expires_at": "2030-01-01T00:00:00Z",
        "personal_info": {
            "linkedin_id": "li-123",
            "name": "Ada Lovelace",
            "avatar_url": "https://media.licdn.com/ada.jpg",
        },
        "organizations": [
            {"company_id": "org-1", "company_name": "Analytical Engines", "company_logo": None},
            {"company_id": "org-2", "company_name": "Difference Works", "company_logo": "https://x/logo.png"},
        ],
    }
