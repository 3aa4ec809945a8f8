"""Admin endpoints: platform settings."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.auth.middleware import verify_request
from app.database import get_db
from app.schemas.admin import PlatformSettingsResponse, PlatformSettingsUpdate
from app.services import platform_settings

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/settings", response_model=PlatformSettingsResponse)
async def get_settings(
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    return PlatformSettingsResponse(**await platform_settings.get_platform_settings(db, actor))


@router.put("/settings", response_model=PlatformSettingsResponse)
async def update_settings(
    data: PlatformSettingsUpdate,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    """Change the escrow period. Escrows already running keep their end date."""
    if data.escrow_period_minutes is not None:
        await platform_settings.update_escrow_period(db, data.escrow_period_minutes, actor)
    return PlatformSettingsResponse(**await platform_settings.get_platform_settings(db, actor))
