"""Error types and the JSON error envelope.

Every failure leaves the service as::

    {"error": true, "code": "RES_001", "message": "...", "details": {...}, "request_id": "..."}

``code`` is stable and meant for machines (the automation runner retries
on ``SRV_003``, the dashboard prompts a reconnect on ``AUTH_006``);
``message`` is for people.

Error payloads must never carry decrypted credential material. Put key
names or identifiers in ``details``, never values.

Usage:
    from credstore.exceptions import NotFoundError

    raise NotFoundError(
        "Platform integration not found",
        details={"platform_name": "linkedin"},
    )
"""

import traceback
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger()


class ErrorCode(str, Enum):
    """Machine readable error codes."""

    # Authentication & ownership
    AUTHENTICATION_REQUIRED = "AUTH_001"
    INVALID_API_KEY = "AUTH_002"
    INVALID_SIGNATURE = "AUTH_003"
    INVALID_TIMESTAMP = "AUTH_004"
    INSUFFICIENT_PERMISSIONS = "AUTH_005"
    INVALID_SESSION = "AUTH_006"

    # Input
    VALIDATION_ERROR = "VAL_001"
    UNSUPPORTED_PLATFORM = "VAL_002"
    PAYLOAD_TOO_LARGE = "VAL_003"

    NOT_FOUND = "RES_001"

    RATE_LIMIT_EXCEEDED = "RATE_001"

    # Stored ciphertext could not be opened (wrong key, tampering)
    DECRYPTION_FAILED = "CRYPTO_001"

    # Server side
    INTERNAL_ERROR = "SRV_001"
    DATABASE_ERROR = "SRV_003"


def error_body(
    code: ErrorCode,
    message: str,
    details: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> dict[str, Any]:
    body = {
        "error": True,
        "code": code.value,
        "message": message,
        "details": details or {},
    }
    if request_id:
        body["request_id"] = request_id
    return body


class APIError(HTTPException):
    """Base class for errors that map onto an HTTP response.

    Args:
        status_code: HTTP status code
        code: ErrorCode enum value
        message: Human-readable error message
        details: Additional JSON-serializable context
        log_error: Whether the handler logs this error
        include_traceback: Attach the active traceback to the log entry
        headers: Extra response headers
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: Optional[dict[str, Any]] = None,
        log_error: bool = True,
        include_traceback: bool = False,
        headers: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.log_error = log_error
        self.include_traceback = include_traceback

        super().__init__(
            status_code=status_code,
            detail=error_body(code, message, self.details),
            headers=headers,
        )

    def log(self, request_id: Optional[str] = None) -> None:
        if not self.log_error:
            return

        context: dict[str, Any] = {
            "error_code": self.code.value,
            "status_code": self.status_code,
            "details": self.details,
        }
        if request_id:
            context["request_id"] = request_id
        if self.include_traceback:
            context["traceback"] = traceback.format_exc()

        # Client mistakes are warnings; only our own failures are errors
        if self.status_code >= 500:
            logger.error(self.message, **context)
        else:
            logger.warning(self.message, **context)


class ValidationError(APIError):
    """Input rejected (400): schema, platform allow-list or size ceiling."""

    def __init__(
        self,
        message: str = "Validation error",
        details: Optional[dict[str, Any]] = None,
        field: Optional[str] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field

        super().__init__(status_code=400, code=code, message=message, details=details)


class AuthenticationError(APIError):
    """Missing or bad API key, signature, timestamp or session (401)."""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.AUTHENTICATION_REQUIRED,
        details: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(
            status_code=401,
            code=code,
            message=message,
            details=details,
            headers=headers,
        )


class ForbiddenError(APIError):
    """Authenticated caller does not own the integration (403)."""

    def __init__(
        self,
        message: str = "Insufficient permissions",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=403,
            code=ErrorCode.INSUFFICIENT_PERMISSIONS,
            message=message,
            details=details,
        )


class NotFoundError(APIError):
    """No integration for the given key (404)."""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(status_code=404, code=ErrorCode.NOT_FOUND, message=message, details=details)


class RateLimitError(APIError):
    """Client exhausted its request window (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        details = dict(details or {})
        headers = None
        if retry_after:
            details["retry_after_seconds"] = retry_after
            headers = {"Retry-After": str(retry_after)}

        super().__init__(
            status_code=429,
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            message=message,
            details=details,
            headers=headers,
        )


class DecryptionError(APIError):
    """Stored credentials could not be decrypted (500).

    Reported with its own code so a key rotation problem is not mistaken
    for a storage outage.
    """

    def __init__(
        self,
        message: str = "Failed to decrypt credentials",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=500,
            code=ErrorCode.DECRYPTION_FAILED,
            message=message,
            details=details,
        )


class PersistenceError(APIError):
    """Storage failed or timed out (500). Safe to retry with backoff."""

    def __init__(
        self,
        message: str = "Database error",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=500,
            code=ErrorCode.DATABASE_ERROR,
            message=message,
            details=details,
            include_traceback=True,
        )


# FastAPI handlers

REQUEST_ID_HEADERS = ("X-Request-ID", "X-Correlation-ID", "Request-ID")

_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTHENTICATION_REQUIRED,
    403: ErrorCode.INSUFFICIENT_PERMISSIONS,
    404: ErrorCode.NOT_FOUND,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
}


def get_request_id(request: Request) -> Optional[str]:
    for header in REQUEST_ID_HEADERS:
        if header in request.headers:
            return request.headers[header]
    return getattr(request.state, "request_id", None)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    request_id = get_request_id(request)
    exc.log(request_id)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.details, request_id),
        headers=exc.headers,
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies as 400 validation errors.

    Only locations and messages are echoed back; submitted values may
    contain credentials.
    """
    request_id = get_request_id(request)
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]

    logger.warning(
        "Request validation failed",
        path=request.url.path,
        error_count=len(errors),
        request_id=request_id,
    )

    return JSONResponse(
        status_code=400,
        content=error_body(
            ErrorCode.VALIDATION_ERROR, "Invalid input data", {"errors": errors}, request_id
        ),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (unknown route, bad method) in the envelope."""
    request_id = get_request_id(request)
    code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else "An error occurred"

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        path=request.url.path,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message, request_id=request_id),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = get_request_id(request)

    logger.exception(
        "Unhandled exception",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred", request_id=request_id),
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
