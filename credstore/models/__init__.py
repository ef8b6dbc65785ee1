"""SQLAlchemy models."""

from credstore.models.integration import IntegrationStatus, PlatformIntegration

__all__ = [
    "IntegrationStatus",
    "PlatformIntegration",
]
