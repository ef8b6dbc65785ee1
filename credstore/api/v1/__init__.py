"""API v1 router."""

from fastapi import APIRouter

from credstore.api.v1 import integrations, me

router = APIRouter()

router.include_router(integrations.router, prefix="/integrations", tags=["Integrations"])
router.include_router(me.router, prefix="/me", tags=["My Integrations"])
