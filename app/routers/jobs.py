"""Job escrow endpoints: hire, complete, cancel, refund."""

import uuid
from collections.abc import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.auth.middleware import verify_request
from app.database import get_db
from app.errors import AlreadyProcessed
from app.gateways.base import PaymentGateway
from app.gateways.registry import gateway_for_method, get_gateway_provider
from app.schemas.escrow import TransactionResponse
from app.schemas.job import (
    HireRequest,
    HireResponse,
    JobActionResponse,
    JobResponse,
    RefundRequest,
)
from app.services import escrow as escrow_service

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Get job details. Only parties to the job can view it."""
    job = await escrow_service.get_job(db, job_id, actor)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/hire", response_model=HireResponse)
async def hire_provider(
    job_id: uuid.UUID,
    data: HireRequest,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateways: Callable[..., PaymentGateway] = Depends(get_gateway_provider),
) -> HireResponse:
    """Hire a quoting provider and charge the customer."""
    gateway = gateways(gateway_for_method(data.payment_method))
    result = await escrow_service.initiate_hire(
        db, gateway, job_id, data.provider_id, actor, data.payment_method
    )
    return HireResponse(
        job=JobResponse.model_validate(result.job),
        transaction=TransactionResponse.model_validate(result.transaction),
        redirect_or_client_secret=result.redirect_or_client_secret,
    )


@router.post("/{job_id}/complete", response_model=JobActionResponse)
async def complete_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobActionResponse:
    """Mark the job done and release escrow to the provider."""
    try:
        job = await escrow_service.complete_job(db, job_id, actor)
    except AlreadyProcessed as e:
        return JobActionResponse(already_processed=True, job=JobResponse.model_validate(e.job))
    return JobActionResponse(job=JobResponse.model_validate(job))


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobActionResponse:
    """Withdraw a job nobody has been hired for."""
    try:
        job = await escrow_service.cancel_job(db, job_id, actor)
    except AlreadyProcessed as e:
        return JobActionResponse(already_processed=True, job=JobResponse.model_validate(e.job))
    return JobActionResponse(job=JobResponse.model_validate(job))


@router.post("/{job_id}/refund", response_model=JobActionResponse)
async def refund_job(
    job_id: uuid.UUID,
    data: RefundRequest,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobActionResponse:
    """Admin: return escrowed funds to the customer."""
    try:
        job = await escrow_service.refund_escrow(db, job_id, data.reason, actor)
    except AlreadyProcessed as e:
        return JobActionResponse(already_processed=True, job=JobResponse.model_validate(e.job))
    return JobActionResponse(job=JobResponse.model_validate(job))
