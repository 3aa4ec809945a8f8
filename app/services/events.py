"""Domain event outbox.

The state machine records events in the same database transaction as the
transition that caused them, so an event exists if and only if the state
change committed. A background dispatcher publishes pending rows to a
Redis stream that the notification layer consumes. Delivery is
at-least-once.
"""

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.escrow import EscrowEvent, EventStatus
from app.models.job import Job

logger = logging.getLogger(__name__)

EVENT_STREAM = "escrow:events"
EVENT_STREAM_MAXLEN = 100_000

CHARGE_SUCCEEDED = "charge_succeeded"
HIRED = "hired"
JOB_COMPLETED = "job_completed"
PAYMENT_RELEASED = "payment_released"
CHARGE_FAILED = "charge_failed"
PAYMENT_REFUNDED = "payment_refunded"
JOB_CANCELLED = "job_cancelled"


def build_event_payload(event_type: str, job: Job, details: dict) -> dict:
    return {
        "event": event_type,
        "job_id": str(job.job_id),
        "job_title": job.title,
        "status": job.status,
        "payment_status": job.payment_status,
        "timestamp": datetime.now(UTC).isoformat(),
        **details,
    }


def record_event(
    db: AsyncSession,
    job: Job,
    event_type: str,
    recipient_id: uuid.UUID | None,
    details: dict | None = None,
) -> EscrowEvent:
    """Add an outbox row to the caller's transaction. Does not commit."""
    event = EscrowEvent(
        event_id=uuid.uuid4(),
        event_type=event_type,
        job_id=job.job_id,
        recipient_id=recipient_id,
        payload=build_event_payload(event_type, job, details or {}),
        status=EventStatus.PENDING,
    )
    db.add(event)
    return event


async def dispatch_pending_events(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
    batch_size: int = 100,
) -> int:
    """Publish pending outbox rows to the event stream. Returns the number published."""
    async with session_factory() as db:
        result = await db.execute(
            select(EscrowEvent)
            .where(EscrowEvent.status == EventStatus.PENDING)
            .order_by(EscrowEvent.created_at)
            .limit(batch_size)
        )
        events = list(result.scalars().all())
        await db.commit()

        published = 0
        for event in events:
            await redis.xadd(
                EVENT_STREAM,
                {
                    "event_id": str(event.event_id),
                    "event_type": event.event_type,
                    "job_id": str(event.job_id),
                    "recipient_id": str(event.recipient_id) if event.recipient_id else "",
                    "payload": json.dumps(event.payload),
                },
                maxlen=EVENT_STREAM_MAXLEN,
                approximate=True,
            )
            event.status = EventStatus.DELIVERED
            event.delivered_at = datetime.now(UTC)
            await db.commit()
            published += 1

    if published:
        logger.info("Published %d escrow events", published)
    return published


async def run_event_dispatcher() -> None:
    """Poll the outbox and publish until cancelled."""
    from app.config import settings
    from app.database import async_session_factory
    from app.redis import redis_client

    redis = redis_client()

    while True:
        try:
            await dispatch_pending_events(async_session_factory, redis)
            await asyncio.sleep(settings.event_dispatch_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Event dispatcher shutting down")
            break
        except Exception:
            logger.exception("Event dispatcher error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
