"""
Token freshness classification for stored credentials.

Derived on every read and never persisted. Platforms and the OAuth
libraries that produced the documents disagree on field names, so each
expiry is looked up under several spellings.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

ACCESS_EXPIRY_FIELDS = ("expires_at", "expiresAt", "access_token_expires_at")
REFRESH_EXPIRY_FIELDS = ("refresh_token_expires_at", "refreshTokenExpiresAt")

# (expiring, warning) upper bounds in days
ACCESS_THRESHOLDS = (7, 14)
REFRESH_THRESHOLDS = (7, 30)

SECONDS_PER_DAY = 86400

# Larger numeric timestamps are taken as epoch milliseconds
_EPOCH_MS_CUTOFF = 100_000_000_000


class TokenStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class TokenExpirationInfo(BaseModel):
    """Freshness of the access and refresh tokens of one integration."""

    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    access_token_days_remaining: Optional[int] = None
    refresh_token_days_remaining: Optional[int] = None
    access_token_status: TokenStatus = TokenStatus.UNKNOWN
    refresh_token_status: TokenStatus = TokenStatus.UNKNOWN
    access_token_display: Optional[str] = None
    refresh_token_display: Optional[str] = None
    needs_reconnect: bool = False
    has_expiration_data: bool = False


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an expiry value into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings (``Z`` suffix included) and epoch
    numbers. Naive values are taken as UTC. Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_CUTOFF else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # Offset pushes the instant past year 1 or 9999
        return None


def _first_timestamp(document: dict[str, Any], fields: tuple[str, ...]) -> Optional[datetime]:
    # Empty values ("", 0) fall through to the next spelling
    for name in fields:
        if document.get(name):
            return parse_timestamp(document[name])
    return None


def days_remaining(expires_at: datetime, now: datetime) -> int:
    return math.floor((expires_at - now).total_seconds() / SECONDS_PER_DAY)


def classify(days: Optional[int], thresholds: tuple[int, int]) -> TokenStatus:
    if days is None:
        return TokenStatus.UNKNOWN
    expiring, warning = thresholds
    if days <= 0:
        return TokenStatus.EXPIRED
    if days <= expiring:
        return TokenStatus.EXPIRING
    if days <= warning:
        return TokenStatus.WARNING
    return TokenStatus.OK


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_time_remaining(days: Optional[int], prefix: str = "Expires in") -> Optional[str]:
    """
    Human readable remaining time.

    Example:
        >>> format_time_remaining(45)
        'Expires in 1mo 15d'
        >>> format_time_remaining(400)
        'Expires in 1y 1mo'
    """
    if days is None:
        return None
    if days <= 0:
        return "Expired"
    if days < 30:
        return f"{prefix} {_plural(days, 'day')}"

    if days < 365:
        months, leftover = divmod(days, 30)
        if leftover > 0 and months < 3:
            return f"{prefix} {months}mo {leftover}d"
        return f"{prefix} {_plural(months, 'month')}"

    years = days // 365
    months = (days % 365) // 30
    if months > 0:
        return f"{prefix} {years}y {months}mo"
    return f"{prefix} {_plural(years, 'year')}"


def calculate_token_expiration(
    document: Optional[dict[str, Any]],
    now: Optional[datetime] = None,
) -> TokenExpirationInfo:
    """Classify the access and refresh tokens found in a credential document."""
    document = document or {}
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    access_at = _first_timestamp(document, ACCESS_EXPIRY_FIELDS)
    refresh_at = _first_timestamp(document, REFRESH_EXPIRY_FIELDS)

    access_days = days_remaining(access_at, now) if access_at else None
    refresh_days = days_remaining(refresh_at, now) if refresh_at else None

    refresh_status = classify(refresh_days, REFRESH_THRESHOLDS)

    return TokenExpirationInfo(
        access_token_expires_at=access_at,
        refresh_token_expires_at=refresh_at,
        access_token_days_remaining=access_days,
        refresh_token_days_remaining=refresh_days,
        access_token_status=classify(access_days, ACCESS_THRESHOLDS),
        refresh_token_status=refresh_status,
        access_token_display=format_time_remaining(access_days),
        refresh_token_display=format_time_remaining(refresh_days),
        needs_reconnect=refresh_status in (TokenStatus.EXPIRED, TokenStatus.EXPIRING),
        has_expiration_data=access_at is not None or refresh_at is not None,
    )
