"""Inbound payment gateway webhooks."""

import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import SignatureVerificationFailed
from app.gateways.base import PaymentGateway
from app.gateways.registry import get_gateway_provider
from app.models.transaction import GatewayName
from app.services.reconciler import handle_gateway_event
from app.services.release_scheduler import ReleaseScheduler, get_release_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{gateway_name}")
async def receive_webhook(
    gateway_name: GatewayName,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: Callable[..., PaymentGateway] = Depends(get_gateway_provider),
    scheduler: ReleaseScheduler = Depends(get_release_scheduler),
) -> dict:
    """Verify and apply a gateway event.

    Verified deliveries are always acknowledged with 200 whatever their
    business outcome, so the gateway stops redelivering. Unverifiable ones
    get 400 and change nothing.
    """
    payload = await request.body()
    try:
        outcome = await handle_gateway_event(
            db, gateways(gateway_name), scheduler, payload, request.headers
        )
    except SignatureVerificationFailed as e:
        logger.warning("Rejected %s webhook: %s", gateway_name.value, e.message)
        raise
    return {"received": True, "outcome": outcome.value}
