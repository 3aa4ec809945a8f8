"""Tests for session token verification and actor capabilities."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from httpx import AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.capabilities import Admin, Buyer, Seller, actor_for
from app.config import settings
from app.models.job import Job
from app.models.user import User, UserRole
from tests.conftest import TEST_SESSION_KEY, make_auth_headers, make_user


def _token(sub: str | None, key: str = TEST_SESSION_KEY, expires_in: int = 300, **claims) -> str:  # type: ignore[no-untyped-def]
    now = int(datetime.now(UTC).timestamp())
    payload = {"iat": now, "exp": now + expires_in, **claims}
    if sub is not None:
        payload["sub"] = sub
    return jwt.encode(payload, key, algorithm="HS256")


async def _account_url(session_factory: async_sessionmaker[AsyncSession]) -> tuple[User, str]:
    async with session_factory() as db:
        user = await make_user(db, UserRole.SELLER)
    return user, f"/users/{user.user_id}/account"


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_token(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    user, url = await _account_url(session_factory)
    resp = await client.get(url, headers=make_auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["user_id"] == str(user.user_id)


@pytest.mark.asyncio
async def test_missing_token(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    _, url = await _account_url(session_factory)
    resp = await client.get(url)
    assert resp.status_code == 401
    assert "Missing bearer token" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_wrong_scheme(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    user, url = await _account_url(session_factory)
    resp = await client.get(url, headers={"Authorization": f"Basic {user.clerk_id}"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_expired_token(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    user, url = await _account_url(session_factory)
    token = _token(user.clerk_id, expires_in=-60)
    resp = await client.get(url, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert "Invalid or expired" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_token_signed_with_wrong_key(
    client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user, url = await _account_url(session_factory)
    token = _token(user.clerk_id, key="someone-elses-key")
    resp = await client.get(url, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_token_without_subject(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    _, url = await _account_url(session_factory)
    resp = await client.get(url, headers={"Authorization": f"Bearer {_token(None)}"})
    assert resp.status_code == 401
    assert "subject" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_unknown_subject(client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]) -> None:
    _, url = await _account_url(session_factory)
    resp = await client.get(url, headers={"Authorization": f"Bearer {_token('user_not_synced_yet')}"})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "User not found"


@pytest.mark.asyncio
async def test_issuer_checked_when_configured(
    client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user, url = await _account_url(session_factory)
    object.__setattr__(settings, "clerk_issuer", "https://clerk.example.com")

    wrong = _token(user.clerk_id, iss="https://evil.example.com")
    resp = await client.get(url, headers={"Authorization": f"Bearer {wrong}"})
    assert resp.status_code == 401

    right = _token(user.clerk_id, iss="https://clerk.example.com")
    resp = await client.get(url, headers={"Authorization": f"Bearer {right}"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_unconfigured_key_rejects_everything(
    client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    user, url = await _account_url(session_factory)
    object.__setattr__(settings, "clerk_jwt_key", "")
    resp = await client.get(url, headers=make_auth_headers(user))
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


def _user(role: UserRole) -> User:
    return User(user_id=uuid.uuid4(), clerk_id="c", name="n", email="e@example.com", role=role)


def _job(poster: User, hired: User | None = None) -> Job:
    return Job(
        job_id=uuid.uuid4(), title="t", price=Decimal("1"), posted_by_id=poster.user_id,
        hired_provider_id=hired.user_id if hired else None,
    )


def test_actor_for_role() -> None:
    assert isinstance(actor_for(_user(UserRole.BUYER)), Buyer)
    assert isinstance(actor_for(_user(UserRole.SELLER)), Seller)
    assert isinstance(actor_for(_user(UserRole.ADMIN)), Admin)


def test_buyer_capabilities() -> None:
    poster, provider, other = _user(UserRole.BUYER), _user(UserRole.SELLER), _user(UserRole.BUYER)
    job = _job(poster, provider)

    actor = actor_for(poster)
    assert actor.can_view(job) and actor.can_hire(job) and actor.can_complete(job) and actor.can_cancel(job)
    assert not actor.can_refund(job)
    outsider = actor_for(other)
    assert not outsider.can_view(job)
    assert not outsider.can_complete(job)


def test_hired_seller_can_complete_but_not_hire() -> None:
    poster, provider = _user(UserRole.BUYER), _user(UserRole.SELLER)
    job = _job(poster, provider)

    actor = actor_for(provider)
    assert actor.can_view(job)
    assert actor.can_complete(job)
    assert not actor.can_hire(job)
    assert not actor.can_cancel(job)
    assert not actor.can_refund(job)


def test_unhired_seller_sees_nothing() -> None:
    poster, quoting = _user(UserRole.BUYER), _user(UserRole.SELLER)
    job = _job(poster)

    actor = actor_for(quoting)
    assert not actor.can_view(job)
    assert not actor.can_complete(job)


def test_admin_can_do_everything() -> None:
    poster = _user(UserRole.BUYER)
    job = _job(poster)
    admin = actor_for(_user(UserRole.ADMIN))
    assert admin.can_view(job) and admin.can_refund(job) and admin.can_cancel(job)
    assert admin.can_view_account(poster.user_id)
    assert admin.can_manage_settings()


def test_account_visible_to_self_only() -> None:
    user, other = _user(UserRole.SELLER), _user(UserRole.SELLER)
    assert actor_for(user).can_view_account(user.user_id)
    assert not actor_for(user).can_view_account(other.user_id)


@pytest.mark.parametrize("role", [UserRole.BUYER, UserRole.SELLER])
def test_only_admin_manages_settings(role: UserRole) -> None:
    assert not actor_for(_user(role)).can_manage_settings()
