"""Payment endpoints: synchronous capture after the payer returns, and abandoning stuck charges."""

import uuid
from collections.abc import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.auth.middleware import verify_request
from app.database import get_db
from app.errors import AlreadyProcessed
from app.gateways.base import PaymentGateway
from app.gateways.registry import get_gateway_provider
from app.schemas.escrow import PaymentActionResponse, TransactionResponse
from app.services import escrow as escrow_service
from app.services.release_scheduler import ReleaseScheduler, get_release_scheduler

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    transaction = await escrow_service.get_transaction(db, transaction_id)
    # Raises NotAuthorized unless the actor is a party to the job
    await escrow_service.get_job(db, transaction.job_id, actor)
    return TransactionResponse.model_validate(transaction)


@router.post("/{transaction_id}/capture", response_model=PaymentActionResponse)
async def capture_payment(
    transaction_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateways: Callable[..., PaymentGateway] = Depends(get_gateway_provider),
    scheduler: ReleaseScheduler = Depends(get_release_scheduler),
) -> PaymentActionResponse:
    """Capture an approved payment and move it into escrow.

    Called when the payer returns from PayPal approval or after card
    confirmation; whichever of this and the gateway webhook comes second
    is a no-op.
    """
    transaction = await escrow_service.get_transaction(db, transaction_id)
    gateway = gateways(transaction.gateway)
    try:
        _, transaction = await escrow_service.capture_charge(
            db, gateway, transaction_id, scheduler, actor
        )
    except AlreadyProcessed as e:
        return PaymentActionResponse(
            already_processed=True,
            transaction=TransactionResponse.model_validate(e.transaction),
        )
    return PaymentActionResponse(transaction=TransactionResponse.model_validate(transaction))


@router.post("/{transaction_id}/abandon", response_model=PaymentActionResponse)
async def abandon_payment(
    transaction_id: uuid.UUID,
    actor: Actor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateways: Callable[..., PaymentGateway] = Depends(get_gateway_provider),
) -> PaymentActionResponse:
    """Give up on a pending charge so the job can be hired again."""
    transaction = await escrow_service.get_transaction(db, transaction_id)
    gateway = gateways(transaction.gateway)
    transaction = await escrow_service.abandon_charge(db, gateway, transaction_id, actor)
    return PaymentActionResponse(transaction=TransactionResponse.model_validate(transaction))
