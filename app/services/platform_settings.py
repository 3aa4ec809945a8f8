"""Runtime marketplace settings that admins can change without a redeploy.

Values stored in `platform_settings` override the environment defaults in
`app.config`. The escrow period is read when a charge is confirmed and
frozen into `jobs.escrow_end_date`, so a change only affects escrows that
start afterwards.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.config import settings
from app.errors import NotAuthorized, ValidationError
from app.models.platform_setting import PlatformSetting

logger = logging.getLogger(__name__)

ESCROW_PERIOD_KEY = "escrow_period_minutes"


async def get_escrow_period_minutes(db: AsyncSession) -> int:
    result = await db.execute(
        select(PlatformSetting.value).where(PlatformSetting.key == ESCROW_PERIOD_KEY)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else settings.escrow_period_minutes


async def get_platform_settings(db: AsyncSession, actor: Actor) -> dict:
    if not actor.can_manage_settings():
        raise NotAuthorized("Only an admin can view platform settings")
    minutes = await get_escrow_period_minutes(db)
    await db.commit()
    return {"escrow_period_minutes": minutes}


async def update_escrow_period(db: AsyncSession, minutes: int, actor: Actor) -> int:
    """Set the hold period for escrows confirmed from now on."""
    if not actor.can_manage_settings():
        raise NotAuthorized("Only an admin can change platform settings")
    if minutes < 1:
        raise ValidationError("Escrow period must be at least 1 minute")

    row = await db.get(PlatformSetting, ESCROW_PERIOD_KEY, with_for_update=True)
    if row is None:
        db.add(PlatformSetting(key=ESCROW_PERIOD_KEY, value=str(minutes), updated_by_id=actor.user_id))
    else:
        row.value = str(minutes)
        row.updated_by_id = actor.user_id
    await db.commit()

    logger.info("Escrow period set to %d minutes by %s", minutes, actor.user_id)
    return minutes
