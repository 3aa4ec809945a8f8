"""Escrow auto-release queue using a Redis sorted set.

When a charge is confirmed we ZADD the job_id with score = escrow_end_date
unix timestamp. A single async consumer sleeps until the earliest entry is
due, claims it with ZREM (only one consumer wins) and calls
`attempt_auto_release`. The release itself is guarded by the job's state,
so a fire after manual completion or refund is a logged no-op and nothing
ever needs to be cancelled.

Redis is not the source of truth: `jobs.escrow_end_date` is. Startup
reconciliation and a periodic sweep re-arm anything Redis lost.
"""

import asyncio
import logging
import time
import uuid
from datetime import UTC, datetime

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.errors import AlreadyProcessed, InvalidTransition, NotFound
from app.models.job import Job, JobState
from app.redis import get_redis

logger = logging.getLogger(__name__)

RELEASE_KEY = "escrow:releases"


class ReleaseScheduler:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def arm(self, job_id: uuid.UUID, fire_at: datetime) -> None:
        """Schedule an auto-release attempt. A past fire_at fires on the next tick.

        ZADD is idempotent, re-arming a job only moves its score.
        """
        await self.redis.zadd(RELEASE_KEY, {str(job_id): fire_at.timestamp()})
        logger.info("Armed release for job %s at %s", job_id, fire_at.isoformat())

    async def next_due_in(self) -> float | None:
        """Seconds until the earliest armed release, or None if nothing is armed."""
        entries = await self.redis.zrange(RELEASE_KEY, 0, 0, withscores=True)
        if not entries:
            return None
        _, fire_ts = entries[0]
        return max(fire_ts - time.time(), 0.0)

    async def claim_due(self, now: float | None = None) -> list[uuid.UUID]:
        """Remove and return every due job. ZREM decides the winner between consumers."""
        if now is None:
            now = time.time()
        members = await self.redis.zrangebyscore(RELEASE_KEY, "-inf", now)
        claimed = []
        for member in members:
            if await self.redis.zrem(RELEASE_KEY, member):
                raw = member.decode() if isinstance(member, bytes) else member
                claimed.append(uuid.UUID(raw))
        return claimed


async def _release_one(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: uuid.UUID,
) -> bool:
    """Attempt one auto-release in its own session. Returns True if funds moved."""
    from app.services.escrow import attempt_auto_release

    async with session_factory() as db:
        try:
            await attempt_auto_release(db, job_id)
            return True
        except AlreadyProcessed:
            logger.info("Job %s already released, skipping auto-release", job_id)
        except InvalidTransition as e:
            logger.info("Skipping auto-release for job %s: %s", job_id, e.message)
        except NotFound:
            logger.warning("Release fired for nonexistent job %s", job_id)
    return False


async def process_due_releases(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: ReleaseScheduler,
) -> int:
    """One consumer tick: release every due job. Returns the number released.

    Unexpected failures leave the job in escrow and re-arm it after a delay.
    """
    released = 0
    for job_id in await scheduler.claim_due():
        try:
            if await _release_one(session_factory, job_id):
                released += 1
        except Exception:
            logger.exception("Auto-release failed for job %s, re-arming", job_id)
            retry_at = datetime.fromtimestamp(time.time() + settings.release_retry_delay_seconds, UTC)
            await scheduler.arm(job_id, retry_at)
    return released


async def sweep_due_releases(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: ReleaseScheduler,
    due_only: bool = True,
) -> int:
    """Arm escrowed jobs straight from the database. Returns the number armed."""
    async with session_factory() as db:
        stmt = select(Job.job_id, Job.escrow_end_date).where(
            Job.state == JobState.IN_ESCROW,
            Job.escrow_end_date.isnot(None),
        )
        if due_only:
            stmt = stmt.where(Job.escrow_end_date <= datetime.now(UTC))
        rows = (await db.execute(stmt)).all()
        await db.commit()

    for job_id, escrow_end_date in rows:
        await scheduler.arm(job_id, escrow_end_date)
    return len(rows)


async def reconcile_on_startup(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: ReleaseScheduler,
) -> int:
    """Re-arm every escrowed job after a restart, then release the overdue ones now."""
    armed = await sweep_due_releases(session_factory, scheduler, due_only=False)
    if not armed:
        logger.info("Release recovery: no jobs in escrow")
        return 0
    released = await process_due_releases(session_factory, scheduler)
    logger.info("Release recovery: re-armed %d jobs, released %d overdue", armed, released)
    return armed


async def run_release_consumer() -> None:
    """Sleep until the next release is due, fire it, repeat.

    Sleeps are capped so a newly armed, earlier release is picked up, and a
    database sweep runs periodically in case Redis lost entries.
    """
    from app.database import async_session_factory
    from app.redis import redis_client

    redis = redis_client()
    scheduler = ReleaseScheduler(redis)
    last_sweep = 0.0

    while True:
        try:
            if time.monotonic() - last_sweep >= settings.release_sweep_interval_seconds:
                swept = await sweep_due_releases(async_session_factory, scheduler)
                if swept:
                    logger.info("Release sweep re-armed %d overdue jobs", swept)
                last_sweep = time.monotonic()

            await process_due_releases(async_session_factory, scheduler)

            wait = await scheduler.next_due_in()
            if wait is None:
                wait = settings.release_max_sleep_seconds
            await asyncio.sleep(min(wait, settings.release_max_sleep_seconds))

        except asyncio.CancelledError:
            logger.info("Release consumer shutting down")
            break
        except Exception:
            logger.exception("Release consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def get_release_scheduler(
    redis: aioredis.Redis = Depends(get_redis),
) -> ReleaseScheduler:
    return ReleaseScheduler(redis)
