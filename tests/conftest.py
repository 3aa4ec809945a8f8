"""Test configuration and fixtures.

Each test gets its own SQLite database file (via aiosqlite) and its own
fakeredis server. SQLite transactions are begun IMMEDIATE so concurrent
sessions serialize on the database the way row locks make them on
PostgreSQL; that keeps the concurrency tests meaningful.
"""

import uuid
from collections.abc import AsyncGenerator, Mapping
from datetime import UTC, datetime
from decimal import Decimal

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database import Base, get_db
from app.errors import SignatureVerificationFailed
from app.gateways.base import (
    CaptureResult,
    ChargeResult,
    GatewayEvent,
    PaymentGateway,
)
from app.gateways.registry import get_gateway_provider
from app.main import app
from app.models.job import Job, JobState, Quote
from app.models.transaction import GatewayName
from app.models.user import User, UserRole
from app.redis import get_redis

TEST_SESSION_KEY = "test-session-signing-key"


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "clerk_jwt_key", TEST_SESSION_KEY)
    object.__setattr__(settings, "clerk_jwt_algorithms", ["HS256"])
    object.__setattr__(settings, "clerk_issuer", "")
    object.__setattr__(settings, "service_fee_rate", Decimal("0.10"))
    object.__setattr__(settings, "escrow_period_minutes", 14400)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Database and Redis
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:  # type: ignore[no-untyped-def]
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[aioredis.Redis, None]:
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# Gateway double
# ---------------------------------------------------------------------------

class FakeGateway(PaymentGateway):
    """In-memory gateway. Tests set the next results and inspect the calls."""

    def __init__(self, name: GatewayName = GatewayName.STRIPE) -> None:
        self.name = name
        self.charges: list[dict] = []
        self.captures: list[dict] = []
        self.voided: list[str] = []
        self.charge_error: str | None = None
        self.capture_result: CaptureResult | None = None
        self.void_result = True
        self.next_event: GatewayEvent | None = None

    async def charge(
        self,
        amount: Decimal,
        job_id: str,
        customer_id: str,
        description: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self._check_amount(amount)
        self.charges.append({
            "amount": amount,
            "job_id": job_id,
            "customer_id": customer_id,
            "idempotency_key": idempotency_key,
        })
        if self.charge_error:
            return ChargeResult(success=False, error_message=self.charge_error)
        payment_id = f"{self.name.value}_{uuid.uuid4().hex[:16]}"
        return ChargeResult(
            success=True,
            external_payment_id=payment_id,
            redirect_or_client_secret=f"{payment_id}_secret",
        )

    async def capture(self, external_payment_id: str, idempotency_key: str) -> CaptureResult:
        self.captures.append({"payment_id": external_payment_id, "idempotency_key": idempotency_key})
        return self.capture_result or CaptureResult(success=True)

    async def void(self, external_payment_id: str) -> bool:
        self.voided.append(external_payment_id)
        return self.void_result

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        if self._lower_headers(headers).get("x-test-signature") != "valid" or self.next_event is None:
            raise SignatureVerificationFailed("Invalid test signature")
        return self.next_event


@pytest.fixture
def stripe_gateway() -> FakeGateway:
    return FakeGateway(GatewayName.STRIPE)


@pytest.fixture
def paypal_gateway() -> FakeGateway:
    return FakeGateway(GatewayName.PAYPAL)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: aioredis.Redis,
    stripe_gateway: FakeGateway,
    paypal_gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield redis_client

    fakes = {GatewayName.STRIPE: stripe_gateway, GatewayName.PAYPAL: paypal_gateway}

    def override_gateway_provider():  # type: ignore[no-untyped-def]
        return lambda name: fakes[GatewayName(name)]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_gateway_provider] = override_gateway_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def make_user(
    db: AsyncSession,
    role: UserRole = UserRole.BUYER,
    name: str = "Test User",
) -> User:
    user = User(
        user_id=uuid.uuid4(),
        clerk_id=f"user_{uuid.uuid4().hex[:20]}",
        name=name,
        email=f"{uuid.uuid4().hex[:8]}@example.com",
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


async def make_job(
    db: AsyncSession,
    poster: User,
    price: Decimal = Decimal("100.00"),
    quoting: list[User] | None = None,
    state: JobState = JobState.OPEN,
) -> Job:
    """Create a job, with a pending quote from each provider in `quoting`."""
    job = Job(
        job_id=uuid.uuid4(),
        title="Fix leaking kitchen tap",
        price=price,
        posted_by_id=poster.user_id,
        state=state,
    )
    db.add(job)
    for provider in quoting or []:
        db.add(Quote(job_id=job.job_id, provider_id=provider.user_id, price=price))
    await db.commit()
    return job


def make_auth_headers(user: User, expires_in: int = 300) -> dict[str, str]:
    """Bearer header carrying a session token for `user`."""
    now = int(datetime.now(UTC).timestamp())
    token = jwt.encode(
        {"sub": user.clerk_id, "iat": now, "exp": now + expires_in},
        TEST_SESSION_KEY,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}
