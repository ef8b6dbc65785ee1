"""Automation endpoints.

Called by workflow runners that finish an OAuth exchange or refresh a
token. Every route requires the shared API key (and a valid signature
when one is sent) and is rate limited per client.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from credstore.api.dependencies import AUTOMATION_GUARDS, get_repository
from credstore.models.integration import IntegrationStatus
from credstore.services.integration_repository import IntegrationRepository
from credstore.services.token_expiration import calculate_token_expiration

router = APIRouter(dependencies=AUTOMATION_GUARDS)


# Schemas
class StoreIntegrationRequest(BaseModel):
    user_id: UUID
    platform_name: str = Field(..., min_length=1, max_length=50)
    credentials: dict[str, Any]
    status: IntegrationStatus = IntegrationStatus.ACTIVE


class IntegrationUpdates(BaseModel):
    credentials: dict[str, Any] | None = None
    status: IntegrationStatus | None = None


class UpdateIntegrationRequest(BaseModel):
    user_id: UUID
    platform_name: str = Field(..., min_length=1, max_length=50)
    integration_id: UUID | None = None
    updates: IntegrationUpdates


class CredentialsRequest(BaseModel):
    user_id: UUID
    platform_name: str = Field(..., min_length=1, max_length=50)


# Endpoints
@router.post("/store")
async def store_integration(
    data: StoreIntegrationRequest,
    repository: Annotated[IntegrationRepository, Depends(get_repository)],
):
    """Create or replace the credentials for a user's platform connection."""
    record = await repository.store(
        user_id=data.user_id,
        platform_name=data.platform_name,
        credentials=data.credentials,
        status=data.status.value,
    )
    return {"success": True, "data": record.to_public_dict()}


@router.post("/update")
async def update_integration(
    data: UpdateIntegrationRequest,
    repository: Annotated[IntegrationRepository, Depends(get_repository)],
):
    """Merge new credential fields into an existing connection."""
    record = await repository.update(
        user_id=data.user_id,
        platform_name=data.platform_name,
        credentials=data.updates.credentials,
        status=data.updates.status.value if data.updates.status else None,
        integration_id=data.integration_id,
    )
    return {"success": True, "data": record.to_public_dict()}


@router.post("/credentials")
async def get_integration_credentials(
    data: CredentialsRequest,
    repository: Annotated[IntegrationRepository, Depends(get_repository)],
):
    """Hand the decrypted credentials of an active connection to a worker."""
    integration = await repository.get_credentials(data.user_id, data.platform_name)
    return {
        "success": True,
        "data": {
            "integration_id": str(integration.id),
            "platform_name": integration.platform_name,
            "credentials": integration.credentials,
            "token_expiration": calculate_token_expiration(integration.credentials).model_dump(
                mode="json"
            ),
        },
    }


@router.post("/migrate-encryption")
async def migrate_encryption(
    repository: Annotated[IntegrationRepository, Depends(get_repository)],
):
    """Encrypt every connection still stored in plain form."""
    results = await repository.migrate_encryption()
    return {"success": True, "data": results}
