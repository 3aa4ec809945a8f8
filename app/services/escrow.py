"""Escrow state machine: hire, confirm, release, fail, refund, cancel.

Every transition opens with a guarded UPDATE on the row that carries its
guard (compare-and-swap on the state column). Exactly one concurrent
caller can win it; losers see rowcount 0, read the current state and report
`AlreadyProcessed` or `InvalidTransition`. The winner re-reads the rest of
the entity group FOR UPDATE, applies the transition and commits once.

Gateway calls never run inside an open database transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.capabilities import Actor
from app.config import settings
from app.errors import (
    AlreadyProcessed,
    GatewayError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from app.gateways.base import PaymentGateway
from app.models.escrow import EscrowAction, EscrowAuditLog
from app.models.job import Job, JobState, Quote, QuoteStatus
from app.models.transaction import (
    VALID_TRANSITIONS,
    PaymentMethod,
    Transaction,
    TransactionStatus,
)
from app.models.user import User
from app.services import events, platform_settings
from app.services.fees import calculate_charge

if TYPE_CHECKING:
    from app.services.release_scheduler import ReleaseScheduler

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


@dataclass
class HireResult:
    job: Job
    transaction: Transaction
    redirect_or_client_secret: str | None


async def _log_audit(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    action: EscrowAction,
    amount: Decimal,
    actor_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    entry = EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        transaction_id=transaction_id,
        action=action,
        actor_id=actor_id,
        amount=amount,
        metadata_=metadata,
    )
    db.add(entry)


async def _get_job(db: AsyncSession, job_id: uuid.UUID, lock: bool = False) -> Job:
    stmt = select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFound("Job not found")
    return job


async def _get_transaction(
    db: AsyncSession, transaction_id: uuid.UUID, lock: bool = False
) -> Transaction:
    stmt = (
        select(Transaction)
        .where(Transaction.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFound("Transaction not found")
    return transaction


def _assert_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Cannot move transaction from {current.value} to {target.value}"
        )


async def get_job(db: AsyncSession, job_id: uuid.UUID, actor: Actor) -> Job:
    job = await _get_job(db, job_id)
    if not actor.can_view(job):
        raise NotAuthorized("Not a party to this job")
    return job


async def get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    return await _get_transaction(db, transaction_id)


# ---------------------------------------------------------------------------
# Hire
# ---------------------------------------------------------------------------


async def initiate_hire(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    actor: Actor,
    payment_method: PaymentMethod,
) -> HireResult:
    """Charge the customer and hold the job for the chosen provider.

    The job stays hireable-looking (active/pending) until the gateway
    confirms the payment. A declined or unreachable gateway leaves no trace
    in the ledger.
    """
    job = await _get_job(db, job_id)
    if not actor.can_hire(job):
        raise NotAuthorized("Only the job poster can hire providers")
    if job.state is not JobState.OPEN:
        raise InvalidTransition(f"Can only hire for active jobs, job is {job.state.value}")
    if provider_id == job.posted_by_id:
        raise ValidationError("Cannot hire yourself")

    result = await db.execute(
        select(Quote).where(
            Quote.job_id == job_id,
            Quote.provider_id == provider_id,
            Quote.status == QuoteStatus.PENDING,
        )
    )
    if result.scalar_one_or_none() is None:
        raise ValidationError("Provider has no pending quote for this job")

    breakdown = calculate_charge(job.price)
    transaction_id = uuid.uuid4()
    customer_id = job.posted_by_id
    description = f"Payment for job: {job.title}"

    # No transaction stays open across the gateway round trip.
    await db.commit()

    charge = await gateway.charge(
        breakdown.amount,
        str(job_id),
        str(customer_id),
        description,
        idempotency_key=f"charge:{transaction_id}",
    )
    if not charge.success:
        logger.warning("Charge failed for job %s via %s: %s", job_id, gateway.name.value, charge.error_message)
        raise GatewayError(charge.error_message or "Payment could not be processed")

    try:
        now = datetime.now(UTC)
        result = await db.execute(
            update(Job)
            .where(Job.job_id == job_id, Job.state == JobState.OPEN)
            .values(
                state=JobState.CHARGE_PENDING,
                hired_provider_id=provider_id,
                transaction_id=transaction_id,
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            raise InvalidTransition("Job is no longer open for hiring")

        transaction = Transaction(
            transaction_id=transaction_id,
            job_id=job_id,
            customer_id=customer_id,
            amount=breakdown.amount,
            service_fee=breakdown.service_fee,
            status=TransactionStatus.PENDING,
            gateway=gateway.name,
            payment_method=payment_method,
            payment_id=charge.external_payment_id,
            description=description,
        )
        db.add(transaction)
        await _log_audit(
            db, transaction_id, EscrowAction.CHARGE_CREATED, breakdown.amount, actor.user_id,
            {**breakdown.to_dict(), "fee_rate": str(settings.service_fee_rate)},
        )
        await db.flush()
        job = await _get_job(db, job_id, lock=True)
        await db.commit()
    except Exception:
        await db.rollback()
        await gateway.void(charge.external_payment_id)
        raise

    logger.info(
        "Job %s charge pending: transaction %s, %s %s via %s",
        job_id, transaction_id, breakdown.amount, settings.currency, gateway.name.value,
    )
    return HireResult(
        job=job,
        transaction=transaction,
        redirect_or_client_secret=charge.redirect_or_client_secret,
    )


# ---------------------------------------------------------------------------
# Charge outcome
# ---------------------------------------------------------------------------


async def confirm_charge(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    scheduler: "ReleaseScheduler | None" = None,
) -> tuple[Job, Transaction]:
    """Move a captured charge into escrow and arm the auto-release.

    A second confirmation of the same transaction raises AlreadyProcessed
    carrying the current job and transaction.
    """
    now = datetime.now(UTC)
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.transaction_id == transaction_id,
            Transaction.status == TransactionStatus.PENDING,
        )
        .values(status=TransactionStatus.IN_ESCROW, escrowed_at=now, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount != 1:
        transaction = await _get_transaction(db, transaction_id)
        job = await _get_job(db, transaction.job_id)
        await db.commit()
        if transaction.status in (TransactionStatus.IN_ESCROW, TransactionStatus.RELEASED):
            raise AlreadyProcessed("Charge already confirmed", job=job, transaction=transaction)
        raise InvalidTransition(f"Cannot confirm a {transaction.status.value} transaction")

    try:
        transaction = await _get_transaction(db, transaction_id, lock=True)
        job = await _get_job(db, transaction.job_id, lock=True)
        if job.state is not JobState.CHARGE_PENDING or job.transaction_id != transaction_id:
            raise InvalidTransition("Job is not awaiting this charge")

        # Frozen here: later changes to the period never move this job's deadline.
        period = await platform_settings.get_escrow_period_minutes(db)
        escrow_end_date = now + timedelta(minutes=period)
        job.state = JobState.IN_ESCROW
        job.escrow_end_date = escrow_end_date
        transaction.provider_id = job.hired_provider_id

        await db.execute(
            update(Quote)
            .where(Quote.job_id == job.job_id, Quote.provider_id == job.hired_provider_id)
            .values(status=QuoteStatus.ACCEPTED)
            .execution_options(**_NO_SYNC)
        )
        await db.execute(
            update(Quote)
            .where(
                Quote.job_id == job.job_id,
                Quote.provider_id != job.hired_provider_id,
                Quote.status == QuoteStatus.PENDING,
            )
            .values(status=QuoteStatus.REJECTED)
            .execution_options(**_NO_SYNC)
        )
        await db.execute(
            update(User)
            .where(User.user_id == transaction.customer_id)
            .values(total_spending=User.total_spending + transaction.amount)
            .execution_options(**_NO_SYNC)
        )

        await _log_audit(
            db, transaction_id, EscrowAction.CHARGE_CONFIRMED, transaction.amount, None,
            {"escrow_end_date": escrow_end_date.isoformat()},
        )
        events.record_event(db, job, events.CHARGE_SUCCEEDED, transaction.customer_id, {
            "transaction_id": str(transaction_id),
            "amount": str(transaction.amount),
        })
        events.record_event(db, job, events.HIRED, job.hired_provider_id, {
            "escrow_end_date": escrow_end_date.isoformat(),
        })
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Transaction %s in escrow, job %s releases at %s", transaction_id, job.job_id, escrow_end_date)

    if scheduler is not None:
        try:
            await scheduler.arm(job.job_id, escrow_end_date)
        except RedisError:
            # escrow_end_date is persisted; the periodic sweep and startup reconcile re-arm it.
            logger.exception("Failed to arm release for job %s", job.job_id)

    return job, transaction


async def fail_charge(
    db: AsyncSession, transaction_id: uuid.UUID, reason: str
) -> Transaction:
    """Mark a pending charge failed and put the job back up for hire."""
    now = datetime.now(UTC)
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.transaction_id == transaction_id,
            Transaction.status == TransactionStatus.PENDING,
        )
        .values(status=TransactionStatus.FAILED, failure_reason=reason, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount != 1:
        transaction = await _get_transaction(db, transaction_id)
        await db.commit()
        if transaction.status is TransactionStatus.FAILED:
            raise AlreadyProcessed("Charge already failed", transaction=transaction)
        raise InvalidTransition(f"Cannot fail a {transaction.status.value} transaction")

    try:
        transaction = await _get_transaction(db, transaction_id, lock=True)
        result = await db.execute(
            update(Job)
            .where(
                Job.job_id == transaction.job_id,
                Job.state == JobState.CHARGE_PENDING,
                Job.transaction_id == transaction_id,
            )
            .values(state=JobState.OPEN, hired_provider_id=None, transaction_id=None, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            logger.warning("Job %s was not holding failed transaction %s", transaction.job_id, transaction_id)
        job = await _get_job(db, transaction.job_id, lock=True)

        await _log_audit(
            db, transaction_id, EscrowAction.CHARGE_FAILED, transaction.amount, None,
            {"reason": reason},
        )
        events.record_event(db, job, events.CHARGE_FAILED, transaction.customer_id, {
            "transaction_id": str(transaction_id),
            "reason": reason,
        })
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Transaction %s failed (%s), job %s is open again", transaction_id, reason, transaction.job_id)
    return transaction


async def capture_charge(
    db: AsyncSession,
    gateway: PaymentGateway,
    transaction_id: uuid.UUID,
    scheduler: "ReleaseScheduler | None" = None,
    actor: Actor | None = None,
) -> tuple[Job, Transaction]:
    """Synchronous capture path: collect an approved payment, then confirm it.

    A capture refused for good fails the charge; a transient failure leaves
    it pending for the next attempt or the gateway's own webhook.
    """
    transaction = await _get_transaction(db, transaction_id)
    job = await _get_job(db, transaction.job_id)
    if actor is not None and not actor.can_hire(job):
        raise NotAuthorized("Only the job poster can complete this payment")
    await db.commit()

    if transaction.status in (TransactionStatus.IN_ESCROW, TransactionStatus.RELEASED):
        raise AlreadyProcessed("Charge already confirmed", job=job, transaction=transaction)
    if transaction.status is not TransactionStatus.PENDING:
        raise InvalidTransition(f"Cannot capture a {transaction.status.value} transaction")

    capture = await gateway.capture(transaction.payment_id, idempotency_key=f"capture:{transaction_id}")
    if not capture.success:
        logger.warning(
            "Capture failed for transaction %s (retryable=%s): %s",
            transaction_id, capture.retryable, capture.error_message,
        )
        if not capture.retryable:
            try:
                await fail_charge(db, transaction_id, capture.error_message or "Capture refused")
            except (AlreadyProcessed, InvalidTransition) as e:
                logger.info("Transaction %s settled concurrently: %s", transaction_id, e.message)
        raise GatewayError(capture.error_message or "Payment could not be captured")

    if capture.captured_amount is not None and capture.captured_amount != transaction.amount:
        logger.warning(
            "Transaction %s captured %s, expected %s",
            transaction_id, capture.captured_amount, transaction.amount,
        )

    return await confirm_charge(db, transaction_id, scheduler)


async def abandon_charge(
    db: AsyncSession,
    gateway: PaymentGateway,
    transaction_id: uuid.UUID,
    actor: Actor,
) -> Transaction:
    """Let the customer give up on a stuck pending charge and hire again."""
    transaction = await _get_transaction(db, transaction_id)
    job = await _get_job(db, transaction.job_id)
    if not actor.can_hire(job):
        raise NotAuthorized("Only the job poster can cancel this payment")
    await db.commit()

    if transaction.status is not TransactionStatus.PENDING:
        raise InvalidTransition(f"Cannot abandon a {transaction.status.value} transaction")

    if not await gateway.void(transaction.payment_id):
        raise GatewayError("Payment could not be cancelled at the gateway and may still complete")

    return await fail_charge(db, transaction_id, "Abandoned by customer")


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


async def _release(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor: Actor | None = None,
    require_due: bool = False,
) -> Job:
    """Pay the provider out of escrow. The only code path that credits a provider."""
    job = await _get_job(db, job_id)
    if actor is not None and not actor.can_complete(job):
        raise NotAuthorized("Only the job poster or hired provider can complete this job")

    now = datetime.now(UTC)
    stmt = update(Job).where(Job.job_id == job_id, Job.state == JobState.IN_ESCROW)
    if require_due:
        stmt = stmt.where(Job.escrow_end_date <= now)
    result = await db.execute(
        stmt.values(state=JobState.RELEASED, completed_at=now, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount != 1:
        job = await _get_job(db, job_id)
        await db.commit()
        if job.state is JobState.RELEASED:
            raise AlreadyProcessed("Escrow already released", job=job)
        if job.state is JobState.IN_ESCROW:
            raise InvalidTransition(f"Escrow period ends at {job.escrow_end_date.isoformat()}")
        raise InvalidTransition(f"Job must be in escrow to complete, job is {job.state.value}")

    try:
        job = await _get_job(db, job_id, lock=True)
        if job.transaction_id is None or job.hired_provider_id is None:
            raise InvalidTransition("Job in escrow has no transaction or provider")
        transaction = await _get_transaction(db, job.transaction_id, lock=True)
        _assert_transition(transaction.status, TransactionStatus.RELEASED)

        # The fee frozen at charge time is the only fee source.
        provider_amount = transaction.amount - transaction.service_fee
        transaction.status = TransactionStatus.RELEASED
        transaction.provider_id = job.hired_provider_id
        transaction.released_at = now

        result = await db.execute(
            update(User)
            .where(User.user_id == job.hired_provider_id)
            .values(
                available_balance=User.available_balance + provider_amount,
                total_earnings=User.total_earnings + provider_amount,
            )
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            raise NotFound("Hired provider not found")

        await _log_audit(
            db, transaction.transaction_id, EscrowAction.RELEASED, provider_amount,
            actor.user_id if actor is not None else None,
            {
                "amount": str(transaction.amount),
                "service_fee": str(transaction.service_fee),
                "trigger": "manual" if actor is not None else "auto_release",
            },
        )
        events.record_event(db, job, events.JOB_COMPLETED, job.posted_by_id, {
            "completed_at": now.isoformat(),
        })
        events.record_event(db, job, events.PAYMENT_RELEASED, job.hired_provider_id, {
            "transaction_id": str(transaction.transaction_id),
            "amount": str(provider_amount),
        })
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Released %s to provider %s for job %s", provider_amount, job.hired_provider_id, job_id)
    return job


async def complete_job(db: AsyncSession, job_id: uuid.UUID, actor: Actor) -> Job:
    return await _release(db, job_id, actor=actor)


async def attempt_auto_release(db: AsyncSession, job_id: uuid.UUID) -> Job:
    """Release once the escrow window has elapsed. Fired by the release scheduler."""
    return await _release(db, job_id, require_due=True)


# ---------------------------------------------------------------------------
# Refund / cancel
# ---------------------------------------------------------------------------


async def refund_escrow(
    db: AsyncSession,
    job_id: uuid.UUID,
    reason: str,
    actor: Actor | None = None,
    transaction_id: uuid.UUID | None = None,
) -> Job:
    """Return escrowed funds to the customer. The provider is never credited.

    A gateway refund names the payment it refunded: pass its
    `transaction_id` and the refund only applies while that payment is the
    one the job holds in escrow.
    """
    job = await _get_job(db, job_id)
    if actor is not None and not actor.can_refund(job):
        raise NotAuthorized("Only an admin can refund escrow")

    now = datetime.now(UTC)
    stmt = update(Job).where(Job.job_id == job_id, Job.state == JobState.IN_ESCROW)
    if transaction_id is not None:
        stmt = stmt.where(Job.transaction_id == transaction_id)
    result = await db.execute(
        stmt.values(state=JobState.REFUNDED, updated_at=now).execution_options(**_NO_SYNC)
    )
    if result.rowcount != 1:
        job = await _get_job(db, job_id)
        stale = None
        if transaction_id is not None and job.transaction_id != transaction_id:
            stale = await _get_transaction(db, transaction_id)
        await db.commit()
        if stale is not None:
            if stale.status is TransactionStatus.REFUNDED:
                raise AlreadyProcessed("Payment already refunded", job=job, transaction=stale)
            raise InvalidTransition(
                f"Transaction {transaction_id} ({stale.status.value}) is not the job's escrowed payment"
            )
        if job.state is JobState.REFUNDED:
            raise AlreadyProcessed("Escrow already refunded", job=job)
        raise InvalidTransition(f"Job must be in escrow to refund, job is {job.state.value}")

    try:
        job = await _get_job(db, job_id, lock=True)
        transaction = await _get_transaction(db, job.transaction_id, lock=True)
        _assert_transition(transaction.status, TransactionStatus.REFUNDED)
        transaction.status = TransactionStatus.REFUNDED

        await _log_audit(
            db, transaction.transaction_id, EscrowAction.REFUNDED, transaction.amount,
            actor.user_id if actor is not None else None,
            {"reason": reason},
        )
        for recipient in (job.posted_by_id, job.hired_provider_id):
            events.record_event(db, job, events.PAYMENT_REFUNDED, recipient, {
                "transaction_id": str(transaction.transaction_id),
                "amount": str(transaction.amount),
                "reason": reason,
            })
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Refunded escrow for job %s: %s", job_id, reason)
    return job


async def cancel_job(db: AsyncSession, job_id: uuid.UUID, actor: Actor) -> Job:
    """Withdraw an unhired job from the marketplace."""
    job = await _get_job(db, job_id)
    if not actor.can_cancel(job):
        raise NotAuthorized("Only the job poster can cancel this job")

    now = datetime.now(UTC)
    result = await db.execute(
        update(Job)
        .where(Job.job_id == job_id, Job.state == JobState.OPEN)
        .values(state=JobState.CANCELLED, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if result.rowcount != 1:
        job = await _get_job(db, job_id)
        await db.commit()
        if job.state is JobState.CANCELLED:
            raise AlreadyProcessed("Job already cancelled", job=job)
        raise InvalidTransition(f"Only active jobs can be cancelled, job is {job.state.value}")

    try:
        result = await db.execute(
            select(Quote.provider_id).where(
                Quote.job_id == job_id, Quote.status == QuoteStatus.PENDING
            )
        )
        quoting_providers = list(result.scalars().all())
        await db.execute(
            update(Quote)
            .where(Quote.job_id == job_id, Quote.status == QuoteStatus.PENDING)
            .values(status=QuoteStatus.REJECTED)
            .execution_options(**_NO_SYNC)
        )
        job = await _get_job(db, job_id, lock=True)
        for provider_id in quoting_providers:
            events.record_event(db, job, events.JOB_CANCELLED, provider_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Job %s cancelled by %s", job_id, actor.user_id)
    return job
