"""Dashboard endpoints for the signed-in user's own connections."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from credstore.api.dependencies import enforce_rate_limit, get_current_user_id, get_repository
from credstore.models.integration import IntegrationStatus
from credstore.services.accounts import normalize_accounts
from credstore.services.integration_repository import IntegrationRepository
from credstore.services.token_expiration import calculate_token_expiration

router = APIRouter(dependencies=[Depends(get_current_user_id), Depends(enforce_rate_limit)])

CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
Repository = Annotated[IntegrationRepository, Depends(get_repository)]


# Schemas
class IntegrationPatch(BaseModel):
    credentials: dict[str, Any] | None = None
    status: IntegrationStatus | None = None


# Endpoints
@router.get("/integrations")
async def list_integrations(user_id: CurrentUserId, repository: Repository):
    """List every connection with redacted credentials and token freshness."""
    records = await repository.list_for_user(user_id)

    items = []
    for record in records:
        opened = repository.open_record(record)
        item = record.to_public_dict()
        item["token_expiration"] = calculate_token_expiration(opened.credentials).model_dump(
            mode="json"
        )
        items.append(item)

    return {"success": True, "data": items}


@router.get("/accounts")
async def list_accounts(
    user_id: CurrentUserId,
    repository: Repository,
    platforms: str = Query("", description="Comma separated platform names"),
):
    """Accounts (profiles, pages, channels) available for publishing."""
    selected = [p for p in platforms.split(",") if p.strip()]
    integrations = await repository.list_active(user_id, selected)
    accounts = normalize_accounts(integrations)
    return {"success": True, "data": [a.model_dump(mode="json") for a in accounts]}


@router.patch("/integrations/{integration_id}")
async def patch_integration(
    integration_id: UUID,
    data: IntegrationPatch,
    user_id: CurrentUserId,
    repository: Repository,
):
    """Update one of the caller's own connections."""
    record = await repository.update(
        user_id=user_id,
        credentials=data.credentials,
        status=data.status.value if data.status else None,
        integration_id=integration_id,
        acting_user_id=user_id,
    )
    return {"success": True, "data": record.to_public_dict()}


@router.delete("/integrations/{platform_name}")
async def disconnect_platform(platform_name: str, user_id: CurrentUserId, repository: Repository):
    """Disconnect a platform."""
    await repository.delete(user_id, platform_name)
    return {"success": True, "data": {"platform_name": platform_name.lower()}}
