"""Tests for the Redis-backed auto-release queue and its database sweeps."""

import time
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import redis.asyncio as aioredis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.capabilities import actor_for
from app.models.job import Job, JobState
from app.models.transaction import PaymentMethod
from app.models.user import User, UserRole
from app.services import escrow as escrow_service
from app.services.release_scheduler import (
    RELEASE_KEY,
    ReleaseScheduler,
    process_due_releases,
    reconcile_on_startup,
    sweep_due_releases,
)
from tests.conftest import FakeGateway, make_job, make_user


async def _escrowed_job(
    db: AsyncSession, gateway: FakeGateway, scheduler: ReleaseScheduler | None = None
) -> tuple[Job, User]:
    poster = await make_user(db, UserRole.BUYER)
    provider = await make_user(db, UserRole.SELLER)
    job = await make_job(db, poster, Decimal("80.00"), quoting=[provider])
    hired = await escrow_service.initiate_hire(
        db, gateway, job.job_id, provider.user_id, actor_for(poster), PaymentMethod.CARD
    )
    job, _ = await escrow_service.confirm_charge(db, hired.transaction.transaction_id, scheduler)
    return job, provider


async def _set_escrow_end(db: AsyncSession, job_id: uuid.UUID, when: datetime) -> None:
    await db.execute(update(Job).where(Job.job_id == job_id).values(escrow_end_date=when))
    await db.commit()


async def _reload(session_factory: async_sessionmaker[AsyncSession], model, pk):  # type: ignore[no-untyped-def]
    async with session_factory() as s:
        return await s.get(model, pk)


# ---------------------------------------------------------------------------
# Queue primitives
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_arm_and_claim_due(redis_client: aioredis.Redis) -> None:
    scheduler = ReleaseScheduler(redis_client)
    due, later = uuid.uuid4(), uuid.uuid4()
    await scheduler.arm(due, datetime.now(UTC) - timedelta(seconds=1))
    await scheduler.arm(later, datetime.now(UTC) + timedelta(hours=1))

    assert await scheduler.claim_due() == [due]
    assert await scheduler.claim_due() == []
    assert await redis_client.zscore(RELEASE_KEY, str(later)) is not None


@pytest.mark.asyncio
async def test_rearm_moves_score(redis_client: aioredis.Redis) -> None:
    scheduler = ReleaseScheduler(redis_client)
    job_id = uuid.uuid4()
    first = datetime.now(UTC) + timedelta(hours=1)
    second = datetime.now(UTC) + timedelta(hours=2)
    await scheduler.arm(job_id, first)
    await scheduler.arm(job_id, second)

    assert await redis_client.zcard(RELEASE_KEY) == 1
    assert await redis_client.zscore(RELEASE_KEY, str(job_id)) == pytest.approx(second.timestamp())


@pytest.mark.asyncio
async def test_next_due_in(redis_client: aioredis.Redis) -> None:
    scheduler = ReleaseScheduler(redis_client)
    assert await scheduler.next_due_in() is None

    await scheduler.arm(uuid.uuid4(), datetime.now(UTC) + timedelta(seconds=120))
    wait = await scheduler.next_due_in()
    assert 100 < wait <= 120

    await scheduler.arm(uuid.uuid4(), datetime.now(UTC) - timedelta(seconds=30))
    assert await scheduler.next_due_in() == 0.0


@pytest.mark.asyncio
async def test_claim_respects_explicit_now(redis_client: aioredis.Redis) -> None:
    scheduler = ReleaseScheduler(redis_client)
    job_id = uuid.uuid4()
    await scheduler.arm(job_id, datetime.now(UTC) + timedelta(minutes=5))

    assert await scheduler.claim_due() == []
    assert await scheduler.claim_due(now=time.time() + 600) == [job_id]


# ---------------------------------------------------------------------------
# Consumer tick
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_due_release_is_processed(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
) -> None:
    scheduler = ReleaseScheduler(redis_client)
    job, provider = await _escrowed_job(db_session, stripe_gateway, scheduler)
    past = datetime.now(UTC) - timedelta(seconds=5)
    await _set_escrow_end(db_session, job.job_id, past)
    await scheduler.arm(job.job_id, past)

    assert await process_due_releases(session_factory, scheduler) == 1

    reloaded = await _reload(session_factory, Job, job.job_id)
    assert reloaded.state is JobState.RELEASED
    provider_row = await _reload(session_factory, User, provider.user_id)
    assert provider_row.available_balance == Decimal("80.00")
    assert await redis_client.zcard(RELEASE_KEY) == 0


@pytest.mark.asyncio
async def test_fire_after_manual_completion_is_noop(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
) -> None:
    scheduler = ReleaseScheduler(redis_client)
    job, provider = await _escrowed_job(db_session, stripe_gateway, scheduler)
    await escrow_service.complete_job(db_session, job.job_id, actor_for(provider))
    await scheduler.arm(job.job_id, datetime.now(UTC) - timedelta(seconds=1))

    assert await process_due_releases(session_factory, scheduler) == 0

    provider_row = await _reload(session_factory, User, provider.user_id)
    assert provider_row.available_balance == Decimal("80.00")


@pytest.mark.asyncio
async def test_early_fire_does_not_release(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
) -> None:
    """A stale Redis score earlier than the stored deadline cannot release early."""
    scheduler = ReleaseScheduler(redis_client)
    job, _ = await _escrowed_job(db_session, stripe_gateway)
    await scheduler.arm(job.job_id, datetime.now(UTC) - timedelta(seconds=1))

    assert await process_due_releases(session_factory, scheduler) == 0

    reloaded = await _reload(session_factory, Job, job.job_id)
    assert reloaded.state is JobState.IN_ESCROW


@pytest.mark.asyncio
async def test_fire_for_unknown_job_is_skipped(
    session_factory: async_sessionmaker[AsyncSession], redis_client: aioredis.Redis
) -> None:
    scheduler = ReleaseScheduler(redis_client)
    await scheduler.arm(uuid.uuid4(), datetime.now(UTC) - timedelta(seconds=1))

    assert await process_due_releases(session_factory, scheduler) == 0
    assert await redis_client.zcard(RELEASE_KEY) == 0


@pytest.mark.asyncio
async def test_unexpected_failure_rearms(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def explode(db, job_id):  # type: ignore[no-untyped-def]
        raise RuntimeError("database went away")

    monkeypatch.setattr(escrow_service, "attempt_auto_release", explode)
    scheduler = ReleaseScheduler(redis_client)
    job_id = uuid.uuid4()
    await scheduler.arm(job_id, datetime.now(UTC) - timedelta(seconds=1))

    assert await process_due_releases(session_factory, scheduler) == 0

    score = await redis_client.zscore(RELEASE_KEY, str(job_id))
    assert score is not None
    assert score > time.time()


# ---------------------------------------------------------------------------
# Sweeps and restart recovery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_arms_only_overdue_jobs(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
) -> None:
    overdue, _ = await _escrowed_job(db_session, stripe_gateway)
    pending, _ = await _escrowed_job(db_session, stripe_gateway)
    await _set_escrow_end(db_session, overdue.job_id, datetime.now(UTC) - timedelta(hours=1))

    scheduler = ReleaseScheduler(redis_client)
    assert await sweep_due_releases(session_factory, scheduler) == 1

    members = await redis_client.zrange(RELEASE_KEY, 0, -1)
    assert [m.decode() for m in members] == [str(overdue.job_id)]


@pytest.mark.asyncio
async def test_startup_recovery_rearms_and_releases_overdue(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
) -> None:
    """Redis lost everything while the service was down."""
    overdue, overdue_provider = await _escrowed_job(db_session, stripe_gateway)
    future, _ = await _escrowed_job(db_session, stripe_gateway)
    await _set_escrow_end(db_session, overdue.job_id, datetime.now(UTC) - timedelta(days=1))
    await redis_client.delete(RELEASE_KEY)

    scheduler = ReleaseScheduler(redis_client)
    assert await reconcile_on_startup(session_factory, scheduler) == 2

    released = await _reload(session_factory, Job, overdue.job_id)
    assert released.state is JobState.RELEASED
    provider_row = await _reload(session_factory, User, overdue_provider.user_id)
    assert provider_row.available_balance == Decimal("80.00")

    held = await _reload(session_factory, Job, future.job_id)
    assert held.state is JobState.IN_ESCROW
    score = await redis_client.zscore(RELEASE_KEY, str(future.job_id))
    assert score == pytest.approx(held.escrow_end_date.timestamp())


@pytest.mark.asyncio
async def test_startup_recovery_with_nothing_in_escrow(
    session_factory: async_sessionmaker[AsyncSession], redis_client: aioredis.Redis
) -> None:
    assert await reconcile_on_startup(session_factory, ReleaseScheduler(redis_client)) == 0
