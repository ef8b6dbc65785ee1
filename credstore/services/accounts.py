"""
Normalization of per-platform account metadata.

Each platform stores the accounts discovered during OAuth in its own
shape (and some still carry an older single-account layout). The
extractors below map them onto one ``PlatformAccount`` list that the
dashboard uses for display and publishing-target selection.
"""

from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel


class AccountType(str, Enum):
    PERSONAL = "personal"
    COMPANY = "company"
    PAGE = "page"
    CHANNEL = "channel"


class PlatformAccount(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None
    type: AccountType
    platform: str


def _pick(source: Any, *keys: str) -> Optional[Any]:
    """First truthy value under ``keys``."""
    if not isinstance(source, dict):
        return None
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def _entries(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _account(
    platform: str,
    account_type: AccountType,
    account_id: Any,
    name: Any,
    avatar: Any = None,
) -> Optional[PlatformAccount]:
    # Entries without an id cannot be selected as a target
    if not account_id:
        return None
    return PlatformAccount(
        id=str(account_id),
        name=str(name) if name else str(account_id),
        avatar=str(avatar) if avatar else None,
        type=account_type,
        platform=platform,
    )


def _linkedin(credentials: dict[str, Any]) -> list[Optional[PlatformAccount]]:
    accounts = []

    personal = credentials.get("personal_info")
    if isinstance(personal, dict):
        accounts.append(_account(
            "linkedin",
            AccountType.PERSONAL,
            _pick(personal, "linkedin_id", "id"),
            _pick(personal, "name"),
            _pick(personal, "avatar_url"),
        ))

    # "company_info" is the older name of the organizations list
    for org in _entries(credentials.get("organizations")) + _entries(credentials.get("company_info")):
        accounts.append(_account(
            "linkedin",
            AccountType.COMPANY,
            _pick(org, "company_id", "organization_id", "id"),
            _pick(org, "company_name", "organization_name", "name"),
            _pick(org, "company_logo", "logo_url", "avatar_url"),
        ))

    return accounts


def _facebook(credentials: dict[str, Any]) -> list[Optional[PlatformAccount]]:
    accounts = []

    personal = credentials.get("personal_info")
    if isinstance(personal, dict):
        accounts.append(_account(
            "facebook",
            AccountType.PERSONAL,
            _pick(personal, "user_id", "id"),
            _pick(personal, "name"),
            _pick(personal, "avatar_url"),
        ))

    if isinstance(credentials.get("pages"), list):
        for page in _entries(credentials["pages"]):
            accounts.append(_account(
                "facebook",
                AccountType.PAGE,
                _pick(page, "page_id"),
                _pick(page, "page_name"),
                _pick(page, "avatar_url"),
            ))
    elif credentials.get("page_id"):
        accounts.append(_account(
            "facebook",
            AccountType.PAGE,
            credentials["page_id"],
            credentials.get("page_name") or "Facebook Page",
            _pick(credentials.get("page_info"), "avatar_url"),
        ))

    return accounts


def _instagram(credentials: dict[str, Any]) -> list[Optional[PlatformAccount]]:
    accounts = []

    if isinstance(credentials.get("accounts"), list):
        for account in _entries(credentials["accounts"]):
            username = account.get("ig_username")
            accounts.append(_account(
                "instagram",
                AccountType.PERSONAL,
                _pick(account, "ig_id"),
                f"@{username}" if username else account.get("account_name"),
                _pick(account, "avatar_url"),
            ))
    elif credentials.get("ig_business_id"):
        username = credentials.get("ig_username")
        accounts.append(_account(
            "instagram",
            AccountType.PERSONAL,
            credentials["ig_business_id"],
            f"@{username}" if username else None,
            credentials.get("ig_avatar"),
        ))

    return accounts


def _youtube(credentials: dict[str, Any]) -> list[Optional[PlatformAccount]]:
    accounts = []

    personal = credentials.get("personal_info")
    if isinstance(personal, dict):
        accounts.append(_account(
            "youtube",
            AccountType.PERSONAL,
            _pick(personal, "user_id", "channel_id") or "yt-personal",
            _pick(personal, "name", "channel_name") or "YouTube Account",
            _pick(personal, "avatar_url"),
        ))

    channels = credentials.get("channels")
    for channel in _entries(channels):
        accounts.append(_account(
            "youtube",
            AccountType.CHANNEL,
            _pick(channel, "channel_id"),
            _pick(channel, "channel_name"),
            _pick(channel, "avatar_url"),
        ))

    # Older connections only stored tokens
    if not personal and channels is None and _pick(credentials, "accessToken", "clientId"):
        accounts.append(_account(
            "youtube",
            AccountType.CHANNEL,
            credentials.get("clientId") or "youtube-legacy",
            "YouTube Account",
        ))

    return accounts


def _twitter(credentials: dict[str, Any]) -> list[Optional[PlatformAccount]]:
    personal = credentials.get("personal_info")
    if not isinstance(personal, dict):
        return []

    username = personal.get("username")
    return [_account(
        "twitter",
        AccountType.PERSONAL,
        _pick(personal, "user_id", "id"),
        personal.get("name") or (f"@{username}" if username else None),
        _pick(personal, "avatar_url"),
    )]


ACCOUNT_EXTRACTORS: dict[str, Callable[[dict[str, Any]], list[Optional[PlatformAccount]]]] = {
    "linkedin": _linkedin,
    "facebook": _facebook,
    "instagram": _instagram,
    "youtube": _youtube,
    "twitter": _twitter,
}


def extract_accounts(platform_name: str, credentials: Optional[dict[str, Any]]) -> list[PlatformAccount]:
    """Accounts described by one integration's credential document."""
    extractor = ACCOUNT_EXTRACTORS.get((platform_name or "").lower())
    if extractor is None or not isinstance(credentials, dict) or not credentials:
        return []
    return [account for account in extractor(credentials) if account is not None]


def normalize_accounts(integrations: Iterable[Any]) -> list[PlatformAccount]:
    """
    Flatten the accounts of several integrations.

    Args:
        integrations: Objects with ``platform_name`` and opened ``credentials``
    """
    accounts: list[PlatformAccount] = []
    for integration in integrations:
        accounts.extend(extract_accounts(integration.platform_name, integration.credentials))
    return accounts
