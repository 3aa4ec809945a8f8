"""Provider account (earnings) endpoint."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.auth.middleware import verify_request
from app.database import get_db
from app.errors import NotAuthorized, NotFound
from app.models.user import User
from app.schemas.escrow import ProviderAccountResponse

router = APIRouter(prefix="/users", tags=["accounts"])


@router.get("/{user_id}/account", response_model=ProviderAccountResponse)
async def get_account(
    user_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProviderAccountResponse:
    """Balances for a user. Only the user themself or an admin can see them."""
    if not actor.can_view_account(user_id):
        raise NotAuthorized("Cannot view another user's account")
    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    return ProviderAccountResponse.model_validate(user)
