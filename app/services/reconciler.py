"""Map verified gateway webhooks onto escrow transitions.

No dedup table: every transition is guarded by the transaction's current
status, so duplicate and out-of-order deliveries end as AlreadyProcessed or
InvalidTransition and are acknowledged without mutating anything.
"""

import enum
import logging
from collections.abc import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AlreadyProcessed, GatewayError, InvalidTransition
from app.gateways.base import GatewayEvent, GatewayEventKind, PaymentGateway
from app.models.transaction import Transaction, TransactionStatus
from app.services import escrow as escrow_service
from app.services.release_scheduler import ReleaseScheduler

logger = logging.getLogger(__name__)


class ReconcileOutcome(enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    UNKNOWN_PAYMENT = "unknown_payment"
    REJECTED = "rejected"  # valid event the current state does not allow
    CAPTURE_FAILED = "capture_failed"  # capture refused or gateway unreachable


async def _apply(
    db: AsyncSession,
    gateway: PaymentGateway,
    scheduler: ReleaseScheduler,
    event: GatewayEvent,
    transaction: Transaction,
) -> None:
    if event.kind is GatewayEventKind.AUTHORIZED:
        await escrow_service.capture_charge(db, gateway, transaction.transaction_id, scheduler)
    elif event.kind is GatewayEventKind.CONFIRMED:
        await escrow_service.confirm_charge(db, transaction.transaction_id, scheduler)
    elif event.kind is GatewayEventKind.FAILED:
        await escrow_service.fail_charge(db, transaction.transaction_id, event.reason or event.raw_type)
        # A failed card intent can still be confirmed with the client secret handed out at hire.
        if not await gateway.void(transaction.payment_id):
            logger.warning(
                "Could not void failed %s payment %s", gateway.name.value, transaction.payment_id
            )
    elif event.kind is GatewayEventKind.REFUNDED:
        await escrow_service.refund_escrow(
            db,
            transaction.job_id,
            f"Refunded at gateway ({event.raw_type})",
            transaction_id=transaction.transaction_id,
        )


async def handle_gateway_event(
    db: AsyncSession,
    gateway: PaymentGateway,
    scheduler: ReleaseScheduler,
    payload: bytes,
    headers: Mapping[str, str],
) -> ReconcileOutcome:
    """Verify one webhook delivery and apply it.

    Raises SignatureVerificationFailed before touching the ledger. Any other
    business outcome is returned so the endpoint can acknowledge it.
    """
    event = await gateway.parse_webhook(payload, headers)
    logger.info("%s webhook %s (%s)", gateway.name.value, event.event_id, event.raw_type)

    if event.kind is GatewayEventKind.IGNORED:
        return ReconcileOutcome.IGNORED
    if not event.external_payment_id:
        logger.warning("%s event %s carries no payment id", gateway.name.value, event.event_id)
        return ReconcileOutcome.UNKNOWN_PAYMENT

    result = await db.execute(
        select(Transaction).where(
            Transaction.gateway == gateway.name,
            Transaction.payment_id == event.external_payment_id,
        )
    )
    transaction = result.scalar_one_or_none()
    await db.commit()
    if transaction is None:
        logger.warning(
            "No transaction for %s payment %s (event %s)",
            gateway.name.value, event.external_payment_id, event.event_id,
        )
        return ReconcileOutcome.UNKNOWN_PAYMENT

    try:
        await _apply(db, gateway, scheduler, event, transaction)
    except AlreadyProcessed:
        logger.info("Event %s already applied to transaction %s", event.event_id, transaction.transaction_id)
        return ReconcileOutcome.ALREADY_PROCESSED
    except InvalidTransition as e:
        if event.kind is GatewayEventKind.CONFIRMED:
            status = (await db.execute(
                select(Transaction.status).where(Transaction.transaction_id == transaction.transaction_id)
            )).scalar_one()
            await db.commit()
            if status is TransactionStatus.FAILED:
                # Funds were taken but the ledger has no escrow for them.
                logger.error(
                    "%s captured payment %s for failed transaction %s (job %s); refund required",
                    gateway.name.value, event.external_payment_id,
                    transaction.transaction_id, transaction.job_id,
                )
                return ReconcileOutcome.REJECTED
        logger.info(
            "Event %s (%s) not applicable to transaction %s: %s",
            event.event_id, event.raw_type, transaction.transaction_id, e.message,
        )
        return ReconcileOutcome.REJECTED
    except GatewayError as e:
        logger.warning("Capture for event %s failed: %s", event.event_id, e.message)
        return ReconcileOutcome.CAPTURE_FAILED

    return ReconcileOutcome.APPLIED
