"""Request schema validation edge cases for the escrow endpoints."""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.transaction import PaymentMethod
from app.models.user import UserRole
from app.schemas.job import HireRequest, RefundRequest
from tests.conftest import make_auth_headers, make_job, make_user


def test_hire_defaults_to_card() -> None:
    req = HireRequest(provider_id=uuid.uuid4())
    assert req.payment_method is PaymentMethod.CARD


def test_hire_rejects_unknown_payment_method() -> None:
    with pytest.raises(PydanticValidationError):
        HireRequest(provider_id=uuid.uuid4(), payment_method="crypto")


def test_refund_reason_length() -> None:
    with pytest.raises(PydanticValidationError):
        RefundRequest(reason="")
    with pytest.raises(PydanticValidationError):
        RefundRequest(reason="x" * 1025)
    assert RefundRequest(reason="Provider never showed").reason == "Provider never showed"


@pytest.mark.asyncio
async def test_hire_with_malformed_provider_id(
    client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    async with session_factory() as db:
        poster = await make_user(db, UserRole.BUYER)
        job = await make_job(db, poster, Decimal("30.00"))

    resp = await client.post(
        f"/jobs/{job.job_id}/hire",
        json={"provider_id": "not-a-uuid"},
        headers=make_auth_headers(poster),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_malformed_job_id_in_path(
    client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    async with session_factory() as db:
        poster = await make_user(db, UserRole.BUYER)

    resp = await client.get("/jobs/12345", headers=make_auth_headers(poster))
    assert resp.status_code == 422
