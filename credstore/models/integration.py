"""Platform integration models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from credstore.database import Base
from credstore.services.crypto import REDACTED


class IntegrationStatus(str, Enum):
    """Lifecycle state of a platform connection."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    ERROR = "error"
    EXPIRED = "expired"


class PlatformIntegration(Base):
    """Stored OAuth credentials for one user on one platform."""

    __tablename__ = "platform_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "platform_name", name="uq_platform_integrations_user_platform"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Platform
    platform_name: Mapped[str] = mapped_column(String(50), nullable=False)  # linkedin, facebook, ...

    # Either the "iv:ciphertext" string or, for legacy rows, a plain JSON object
    credentials: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    credentials_encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), default=IntegrationStatus.ACTIVE.value, nullable=False
    )

    # Optimistic concurrency token, bumped on every write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    def to_public_dict(self) -> dict[str, Any]:
        """Serializable view with the credentials field redacted."""
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "platform_name": self.platform_name,
            "credentials": REDACTED if self.credentials else None,
            "credentials_encrypted": self.credentials_encrypted,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
