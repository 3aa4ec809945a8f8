"""Clerk session token verification dependency for FastAPI."""

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor, actor_for
from app.config import settings
from app.database import get_db
from app.models.user import User


def decode_session_token(token: str) -> dict:
    """Verify a Clerk session JWT and return its claims. Raises JWTError."""
    options = {"verify_aud": False}
    kwargs = {}
    if settings.clerk_issuer:
        kwargs["issuer"] = settings.clerk_issuer
    return jwt.decode(
        token,
        settings.clerk_jwt_key,
        algorithms=settings.clerk_jwt_algorithms,
        options=options,
        **kwargs,
    )


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """Resolve the bearer session token to an Actor."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    if not settings.clerk_jwt_key:
        raise HTTPException(status_code=401, detail="Session verification is not configured")

    try:
        claims = decode_session_token(auth_header[7:])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session token")

    clerk_id = claims.get("sub")
    if not clerk_id:
        raise HTTPException(status_code=401, detail="Session token has no subject")

    result = await db.execute(select(User).where(User.clerk_id == clerk_id))
    user = result.scalar_one_or_none()
    # The identity-provider sync creates local users; an unknown subject is not yet registered here.
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")

    return actor_for(user)
