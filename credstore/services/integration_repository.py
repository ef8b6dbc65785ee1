"""
Persistence of platform credentials.

One row per (user_id, platform_name). Every write stores the credential
document AES-GCM encrypted; legacy plain rows are still readable and are
upgraded the next time they are written (or in bulk by
``migrate_encryption``).

Updates are read-modify-write: the row is read under ``SELECT ... FOR
UPDATE`` and written back with the mapper's version check, so a
concurrent writer is detected instead of silently overwritten. A lost
race is retried against a fresh read.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
import structlog

from credstore.config import settings
from credstore.exceptions import (
    APIError,
    DecryptionError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from credstore.models.integration import IntegrationStatus, PlatformIntegration
from credstore.services.crypto import CredentialCipher, is_encrypted_token
from credstore.services.merge import merge_credentials

logger = structlog.get_logger()

T = TypeVar("T")

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

UPDATE_ATTEMPTS = 3


@dataclass
class ActiveIntegration:
    """An integration with its credential document opened for reading."""
    id: UUID
    user_id: UUID
    platform_name: str
    status: str
    credentials: dict[str, Any]
    updated_at: Optional[datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationRepository:
    """
    Store, merge and read platform credentials.

    Args:
        session: Database session (the repository commits its own writes)
        cipher: Credential cipher used for every stored document
        clock: Returns the current time for ``updated_at`` (injectable for tests)
        timeout: Seconds allowed for each storage round trip
        supported_platforms: Allow-list of platform names
        max_credentials_bytes: Ceiling on the serialized credential document
    """

    def __init__(
        self,
        session: AsyncSession,
        cipher: CredentialCipher,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: Optional[float] = None,
        supported_platforms: Optional[Iterable[str]] = None,
        max_credentials_bytes: Optional[int] = None,
    ):
        self.session = session
        self.cipher = cipher
        self._clock = clock or _utcnow
        self.timeout = timeout if timeout is not None else settings.STORAGE_TIMEOUT_SECONDS
        self.supported_platforms = frozenset(
            p.lower() for p in (supported_platforms or settings.SUPPORTED_PLATFORMS)
        )
        self.max_credentials_bytes = max_credentials_bytes or settings.CREDENTIALS_MAX_BYTES

    # Validation

    def normalize_platform(self, platform_name: Optional[str]) -> str:
        name = (platform_name or "").strip().lower()
        if name not in self.supported_platforms:
            raise ValidationError(
                "Unsupported platform",
                details={"platform_name": platform_name, "supported": sorted(self.supported_platforms)},
                code=ErrorCode.UNSUPPORTED_PLATFORM,
            )
        return name

    @staticmethod
    def validate_status(status: str) -> str:
        try:
            return IntegrationStatus(status).value
        except ValueError:
            raise ValidationError(
                "Invalid integration status",
                details={"allowed": [s.value for s in IntegrationStatus]},
                field="status",
            )

    def validate_credentials(self, credentials: Any) -> int:
        """Check the document is a JSON object within the size ceiling."""
        if not isinstance(credentials, dict):
            raise ValidationError("Credentials must be a JSON object", field="credentials")

        try:
            serialized = json.dumps(credentials, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError, RecursionError):
            raise ValidationError("Credentials are not serializable", field="credentials")

        size = len(serialized.encode("utf-8"))
        if size > self.max_credentials_bytes:
            raise ValidationError(
                "Credentials object too large",
                details={"size_bytes": size, "max_bytes": self.max_credentials_bytes},
                field="credentials",
                code=ErrorCode.PAYLOAD_TOO_LARGE,
            )
        return size

    # Storage plumbing

    async def _run(self, operation: str, work: Awaitable[T]) -> T:
        """Bound a storage round trip by the timeout and normalize its failures."""
        try:
            return await asyncio.wait_for(work, timeout=self.timeout)
        except StaleDataError:
            await self.session.rollback()
            raise
        except asyncio.TimeoutError:
            await self.session.rollback()
            raise PersistenceError(
                "Storage operation timed out",
                details={"operation": operation, "timeout_seconds": self.timeout},
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(
                "Storage operation failed",
                details={"operation": operation, "error_type": type(e).__name__},
            )
        except APIError:
            await self.session.rollback()
            raise

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        try:
            return _UPSERT_INSERTS[dialect]
        except KeyError:
            raise PersistenceError(
                "Upsert is not supported on this database",
                details={"dialect": dialect},
            )

    # Operations

    async def store(
        self,
        user_id: UUID,
        platform_name: str,
        credentials: dict[str, Any],
        status: str = IntegrationStatus.ACTIVE.value,
    ) -> PlatformIntegration:
        """
        Encrypt and upsert the credentials for (user_id, platform_name).

        Raises:
            ValidationError: Unsupported platform, bad status or oversized payload
            PersistenceError: Storage failure or timeout
        """
        platform = self.normalize_platform(platform_name)
        status = self.validate_status(status)
        self.validate_credentials(credentials)

        encrypted = self.cipher.encrypt_document(credentials)
        record = await self._run("store", self._upsert(user_id, platform, encrypted, status))

        logger.info(
            "Platform integration stored",
            integration_id=str(record.id),
            user_id=str(user_id),
            platform_name=platform,
            status=status,
            credentials_keys=sorted(credentials.keys()),
        )
        return record

    async def _upsert(
        self,
        user_id: UUID,
        platform_name: str,
        encrypted: str,
        status: str,
    ) -> PlatformIntegration:
        now = self._clock()
        insert = self._insert_for_dialect()

        stmt = insert(PlatformIntegration).values(
            user_id=user_id,
            platform_name=platform_name,
            credentials=encrypted,
            credentials_encrypted=True,
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "platform_name"],
            set_={
                "credentials": stmt.excluded.credentials,
                "credentials_encrypted": True,
                "status": stmt.excluded.status,
                "updated_at": stmt.excluded.updated_at,
                "version": PlatformIntegration.version + 1,
            },
        ).returning(PlatformIntegration)

        result = await self.session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        record = result.scalar_one()
        await self.session.commit()
        return record

    async def update(
        self,
        user_id: UUID,
        platform_name: Optional[str] = None,
        credentials: Optional[dict[str, Any]] = None,
        status: Optional[str] = None,
        integration_id: Optional[UUID] = None,
        acting_user_id: Optional[UUID] = None,
    ) -> PlatformIntegration:
        """
        Merge a partial credential update and/or change the status.

        The record is addressed by ``integration_id`` when given, otherwise
        by (user_id, platform_name). Its owner must equal ``user_id`` and,
        when supplied, ``acting_user_id``.

        Raises:
            ValidationError: Bad platform, status or payload
            NotFoundError: No matching record
            ForbiddenError: The record belongs to someone else
            DecryptionError: The stored document cannot be opened
            PersistenceError: Storage failure, timeout or persistent write conflict
        """
        if integration_id is None or platform_name is not None:
            platform = self.normalize_platform(platform_name)
        else:
            platform = None
        if status is not None:
            status = self.validate_status(status)
        if credentials is not None:
            self.validate_credentials(credentials)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(UPDATE_ATTEMPTS),
                wait=wait_exponential(multiplier=0.05, max=0.5),
                retry=retry_if_exception_type(StaleDataError),
                reraise=True,
            ):
                with attempt:
                    record = await self._run(
                        "update",
                        self._apply_update(
                            user_id, platform, credentials, status, integration_id, acting_user_id
                        ),
                    )
        except StaleDataError:
            logger.warning(
                "Platform integration update lost every concurrency retry",
                user_id=str(user_id),
                platform_name=platform,
                attempts=UPDATE_ATTEMPTS,
            )
            raise PersistenceError(
                "Concurrent update conflict, retry the request",
                details={"operation": "update", "attempts": UPDATE_ATTEMPTS},
            )

        logger.info(
            "Platform integration updated",
            integration_id=str(record.id),
            user_id=str(user_id),
            platform_name=record.platform_name,
            status=record.status,
            credentials_keys=sorted(credentials.keys()) if credentials else [],
        )
        return record

    async def _apply_update(
        self,
        user_id: UUID,
        platform_name: Optional[str],
        credentials: Optional[dict[str, Any]],
        status: Optional[str],
        integration_id: Optional[UUID],
        acting_user_id: Optional[UUID],
    ) -> PlatformIntegration:
        query = (
            select(PlatformIntegration)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if integration_id is not None:
            query = query.where(PlatformIntegration.id == integration_id)
        else:
            query = query.where(
                PlatformIntegration.user_id == user_id,
                PlatformIntegration.platform_name == platform_name,
            )

        result = await self.session.execute(query)
        record = result.scalar_one_or_none()

        if record is None or (platform_name is not None and record.platform_name != platform_name):
            raise NotFoundError(
                "Platform integration not found",
                details={"platform_name": platform_name},
            )

        if record.user_id != user_id or (
            acting_user_id is not None and record.user_id != acting_user_id
        ):
            logger.warning(
                "Platform integration ownership mismatch",
                integration_id=str(record.id),
                platform_name=record.platform_name,
            )
            raise ForbiddenError("Platform integration belongs to another user")

        if credentials is not None:
            existing = self.cipher.open_stored(record.credentials, record.credentials_encrypted)
            merged = merge_credentials(existing, credentials)
            self.validate_credentials(merged)
            record.credentials = self.cipher.encrypt_document(merged)
            record.credentials_encrypted = True

        if status is not None:
            record.status = status

        record.updated_at = self._clock()

        # Emits UPDATE ... WHERE version = :expected; zero rows -> StaleDataError
        await self.session.flush()
        await self.session.commit()
        return record

    async def list_active(
        self,
        user_id: UUID,
        platforms: Iterable[str],
    ) -> list[ActiveIntegration]:
        """Active integrations of a user restricted to ``platforms``, opened."""
        names = {p.strip().lower() for p in platforms if p and p.strip()}
        if not names:
            return []

        records = await self._run("list_active", self._select_active(user_id, names))
        return [self.open_record(record) for record in records]

    async def _select_active(self, user_id: UUID, names: set[str]) -> list[PlatformIntegration]:
        result = await self.session.execute(
            select(PlatformIntegration)
            .where(
                PlatformIntegration.user_id == user_id,
                PlatformIntegration.status == IntegrationStatus.ACTIVE.value,
                PlatformIntegration.platform_name.in_(sorted(names)),
            )
            .order_by(PlatformIntegration.platform_name)
        )
        return list(result.scalars().all())

    async def get_credentials(self, user_id: UUID, platform_name: str) -> ActiveIntegration:
        """
        Fetch the active integration for (user_id, platform_name) with its
        credentials decrypted, for workers that call the platform APIs.
        """
        platform = self.normalize_platform(platform_name)
        records = await self._run("get_credentials", self._select_active(user_id, {platform}))
        if not records:
            raise NotFoundError(
                f"{platform} integration not found",
                details={"platform_name": platform},
            )
        return self.open_record(records[0])

    async def list_for_user(self, user_id: UUID) -> list[PlatformIntegration]:
        """All integrations of a user, any status."""
        return await self._run("list_for_user", self._select_for_user(user_id))

    async def _select_for_user(self, user_id: UUID) -> list[PlatformIntegration]:
        result = await self.session.execute(
            select(PlatformIntegration)
            .where(PlatformIntegration.user_id == user_id)
            .order_by(PlatformIntegration.platform_name)
        )
        return list(result.scalars().all())

    async def delete(self, user_id: UUID, platform_name: str) -> None:
        """Disconnect a platform by removing its record."""
        platform = self.normalize_platform(platform_name)
        await self._run("delete", self._delete(user_id, platform))
        logger.info("Platform integration deleted", user_id=str(user_id), platform_name=platform)

    async def _delete(self, user_id: UUID, platform_name: str) -> None:
        result = await self.session.execute(
            select(PlatformIntegration).where(
                PlatformIntegration.user_id == user_id,
                PlatformIntegration.platform_name == platform_name,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(
                "Platform integration not found",
                details={"platform_name": platform_name},
            )
        await self.session.delete(record)
        await self.session.commit()

    async def migrate_encryption(self) -> dict[str, Any]:
        """
        Encrypt every record still stored as a plain document.

        Returns:
            Counts of records seen, already encrypted, migrated and skipped,
            plus per-record errors (ids and reasons only)
        """
        results = await self._run("migrate_encryption", self._migrate_all())
        logger.info(
            "Encryption migration complete",
            total=results["total"],
            already_encrypted=results["already_encrypted"],
            migrated=results["migrated"],
            error_count=len(results["errors"]),
        )
        return results

    async def _migrate_all(self) -> dict[str, Any]:
        results: dict[str, Any] = {
            "total": 0,
            "already_encrypted": 0,
            "migrated": 0,
            "skipped": 0,
            "errors": [],
        }

        result = await self.session.execute(select(PlatformIntegration))
        for record in result.scalars().all():
            results["total"] += 1
            stored = record.credentials

            if stored is None:
                results["skipped"] += 1
                continue

            if record.credentials_encrypted:
                if is_encrypted_token(stored):
                    results["already_encrypted"] += 1
                else:
                    results["errors"].append(
                        {"id": str(record.id), "reason": "flagged encrypted but not in token form"}
                    )
                continue

            try:
                document = self._legacy_document(stored)
            except DecryptionError:
                document = None
            if document is None:
                results["errors"].append(
                    {"id": str(record.id), "reason": "cannot parse plain credentials"}
                )
                continue

            record.credentials = self.cipher.encrypt_document(document)
            record.credentials_encrypted = True
            record.updated_at = self._clock()
            results["migrated"] += 1

        await self.session.flush()
        await self.session.commit()
        return results

    def _legacy_document(self, stored: Any) -> Optional[dict[str, Any]]:
        if isinstance(stored, dict):
            return stored
        if not isinstance(stored, str):
            return None
        if is_encrypted_token(stored):
            # Encrypted value whose flag was never set
            return self.cipher.decrypt_document(stored)
        try:
            parsed = json.loads(stored)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def open_record(self, record: PlatformIntegration) -> ActiveIntegration:
        try:
            credentials = self.cipher.open_stored(record.credentials, record.credentials_encrypted)
        except APIError:
            logger.error(
                "Stored credentials could not be opened",
                integration_id=str(record.id),
                platform_name=record.platform_name,
            )
            raise

        return ActiveIntegration(
            id=record.id,
            user_id=record.user_id,
            platform_name=record.platform_name,
            status=record.status,
            credentials=credentials,
            updated_at=record.updated_at,
        )
