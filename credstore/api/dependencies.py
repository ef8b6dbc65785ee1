"""Shared API dependencies.

Authentication always runs before rate limiting, so unauthenticated
traffic never consumes a client's request budget. Each collaborator is
built once from settings and can be replaced through
``app.dependency_overrides`` in tests.
"""

from functools import lru_cache
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from credstore.config import get_settings
from credstore.database import get_db
from credstore.exceptions import RateLimitError
from credstore.services.crypto import CredentialCipher
from credstore.services.integration_repository import IntegrationRepository
from credstore.services.rate_limiter import RateLimiter, get_client_id
from credstore.services.request_auth import RequestAuthenticator, SessionVerifier

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache
def get_cipher() -> CredentialCipher:
    return CredentialCipher.from_encoded_key(get_settings().ENCRYPTION_KEY)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


@lru_cache
def get_request_authenticator() -> RequestAuthenticator:
    settings = get_settings()
    return RequestAuthenticator(
        api_key=settings.INTEGRATIONS_API_KEY,
        require_signature=settings.REQUIRE_REQUEST_SIGNATURE,
        tolerance_seconds=settings.SIGNATURE_TOLERANCE_SECONDS,
    )


@lru_cache
def get_session_verifier() -> SessionVerifier:
    settings = get_settings()
    return SessionVerifier(
        supabase_url=settings.SUPABASE_URL,
        supabase_anon_key=settings.SUPABASE_ANON_KEY,
        jwt_secret=settings.SESSION_JWT_SECRET,
        jwt_algorithm=settings.SESSION_JWT_ALGORITHM,
        jwt_audience=settings.SESSION_JWT_AUDIENCE,
    )


async def require_api_key(
    authenticator: Annotated[RequestAuthenticator, Depends(get_request_authenticator)],
    x_api_key: Annotated[str | None, Header()] = None,
    x_timestamp: Annotated[str | None, Header()] = None,
    x_signature: Annotated[str | None, Header()] = None,
) -> None:
    """Authenticate an automation request (API key plus optional signature)."""
    authenticator.authenticate(x_api_key, x_timestamp, x_signature)


async def get_current_user_id(
    verifier: Annotated[SessionVerifier, Depends(get_session_verifier)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> UUID:
    """Resolve the dashboard session to the caller's user id."""
    token = credentials.credentials if credentials else None
    return await verifier.resolve_user_id(token)


async def enforce_rate_limit(
    request: Request,
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> str:
    """
    Count the request against its client's window.

    Raises:
        RateLimitError: When the window's budget is spent
    """
    client_id = get_client_id(request)

    if not limiter.allow(client_id):
        retry_after = limiter.retry_after(client_id)
        logger.warning(
            "Rate limit exceeded",
            client_id=client_id,
            path=request.url.path,
            retry_after=retry_after,
        )
        raise RateLimitError("Too many requests", retry_after=retry_after)

    return client_id


async def get_repository(
    db: Annotated[AsyncSession, Depends(get_db)],
    cipher: Annotated[CredentialCipher, Depends(get_cipher)],
) -> IntegrationRepository:
    return IntegrationRepository(db, cipher)


# Automation routes list these so the checks run in this order
AUTOMATION_GUARDS = [Depends(require_api_key), Depends(enforce_rate_limit)]
