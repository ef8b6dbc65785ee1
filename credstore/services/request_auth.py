"""Authentication of inbound requests.

Two surfaces are protected here:

* the automation surface, called by workflow runners with a shared API
  key and, optionally, an HMAC-SHA256 signature over a millisecond
  timestamp that bounds the replay window;
* the user surface, called by the dashboard with a bearer session
  issued by the hosted auth provider.
"""

import hashlib
import hmac
import time
from typing import Callable, Optional
from uuid import UUID

import httpx
from jose import JWTError, jwt
import structlog

from credstore.exceptions import AuthenticationError, ErrorCode

logger = structlog.get_logger()


def compute_signature(api_key: str, timestamp: str) -> str:
    """Hex HMAC-SHA256 of the timestamp, keyed with the API key."""
    return hmac.new(
        api_key.encode("utf-8"),
        timestamp.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class RequestAuthenticator:
    """
    Validates the automation API key and optional request signature.

    Args:
        api_key: Shared secret expected in ``x-api-key``
        require_signature: Refuse requests that carry no signature
        tolerance_seconds: Maximum clock skew accepted for ``x-timestamp``
        clock: Returns the current time in seconds (injectable for tests)
    """

    def __init__(
        self,
        api_key: str,
        require_signature: bool = False,
        tolerance_seconds: int = 300,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not api_key:
            raise ValueError("INTEGRATIONS_API_KEY is not configured")
        self._api_key = api_key
        self.require_signature = require_signature
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock or time.time

    def __repr__(self) -> str:
        return f"RequestAuthenticator(require_signature={self.require_signature})"

    def verify_api_key(self, provided: Optional[str]) -> None:
        if not provided or not hmac.compare_digest(
            provided.encode("utf-8"), self._api_key.encode("utf-8")
        ):
            raise AuthenticationError(
                "Unauthorized - Invalid API key",
                code=ErrorCode.INVALID_API_KEY,
            )

    def verify_signature(self, timestamp: str, signature: str) -> None:
        """
        Check a request signature and its timestamp freshness.

        Raises:
            AuthenticationError: If the timestamp is malformed, outside the
                tolerance window, or the signature does not match
        """
        try:
            timestamp_ms = int(timestamp)
        except (TypeError, ValueError):
            raise AuthenticationError(
                "Unauthorized - Invalid timestamp",
                code=ErrorCode.INVALID_TIMESTAMP,
            )

        now_ms = self._clock() * 1000
        if abs(now_ms - timestamp_ms) > self.tolerance_seconds * 1000:
            raise AuthenticationError(
                "Unauthorized - Invalid timestamp",
                code=ErrorCode.INVALID_TIMESTAMP,
            )

        expected = compute_signature(self._api_key, timestamp)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8")):
            raise AuthenticationError(
                "Unauthorized - Invalid signature",
                code=ErrorCode.INVALID_SIGNATURE,
            )

    def authenticate(
        self,
        api_key: Optional[str],
        timestamp: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> None:
        """Run every check that applies to an automation request."""
        self.verify_api_key(api_key)

        if timestamp and signature:
            self.verify_signature(timestamp, signature)
        elif timestamp or signature or self.require_signature:
            # A half-sent signature is treated as a failed one
            raise AuthenticationError(
                "Unauthorized - Missing request signature",
                code=ErrorCode.INVALID_SIGNATURE,
            )


class SessionVerifier:
    """
    Resolves a dashboard bearer token to a user id.

    The hosted auth provider is asked first; when it is not configured or
    does not recognize the token, the provider's HS256 session JWT is
    verified locally.
    """

    def __init__(
        self,
        supabase_url: str = "",
        supabase_anon_key: str = "",
        jwt_secret: str = "",
        jwt_algorithm: str = "HS256",
        jwt_audience: str = "authenticated",
        timeout: float = 10.0,
    ):
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_anon_key = supabase_anon_key
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_audience = jwt_audience
        self.timeout = timeout

    async def _verify_with_provider(self, token: str) -> Optional[str]:
        if not self.supabase_url:
            return None

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.supabase_url}/auth/v1/user",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "apikey": self.supabase_anon_key,
                    },
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.warning("Auth provider unreachable", error=str(e))
            return None

        if response.status_code != 200:
            logger.debug("Auth provider rejected session", status=response.status_code)
            return None

        return response.json().get("id")

    def _verify_locally(self, token: str) -> Optional[str]:
        if not self.jwt_secret:
            return None

        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.jwt_algorithm],
                audience=self.jwt_audience,
            )
        except JWTError as e:
            logger.debug("Session JWT rejected", error=str(e))
            return None

        return payload.get("sub")

    async def resolve_user_id(self, token: Optional[str]) -> UUID:
        """
        Resolve ``token`` to the owning user id.

        Raises:
            AuthenticationError: If no strategy accepts the token
        """
        invalid = AuthenticationError(
            "Could not validate session",
            code=ErrorCode.INVALID_SESSION,
            headers={"WWW-Authenticate": "Bearer"},
        )
        if not token:
            raise invalid

        user_id = await self._verify_with_provider(token) or self._verify_locally(token)
        if not user_id:
            raise invalid

        try:
            return UUID(str(user_id))
        except ValueError:
            raise invalid
