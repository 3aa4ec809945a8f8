"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.errors import EscrowError
from app.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from app.routers import accounts, admin, jobs, payments, webhooks

logger = logging.getLogger(__name__)


async def _recover_releases() -> None:
    """Re-arm auto-releases for every job in escrow after a restart.

    Overdue releases run immediately. ZADD is idempotent, so this is safe
    to call unconditionally at startup.
    """
    from app.database import async_session_factory
    from app.redis import redis_client
    from app.services.release_scheduler import ReleaseScheduler, reconcile_on_startup

    redis = redis_client()
    try:
        await reconcile_on_startup(async_session_factory, ReleaseScheduler(redis))
    except Exception:
        # The consumer's periodic sweep re-arms from the database.
        logger.exception("Release recovery failed")
    finally:
        await redis.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from app.gateways.registry import close_gateways
    from app.services.events import run_event_dispatcher
    from app.services.release_scheduler import run_release_consumer

    await _recover_releases()
    background = [
        asyncio.create_task(run_release_consumer()),
        asyncio.create_task(run_event_dispatcher()),
    ]

    yield

    for task in background:
        task.cancel()
    for task in background:
        try:
            await task
        except asyncio.CancelledError:
            pass
    await close_gateways()


app = FastAPI(
    title="Repair Marketplace Escrow",
    description="Escrow payment lifecycle for repair jobs: charge, hold, release, refund",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware: the last one added runs outermost
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_body_bytes)
app.add_middleware(RequestLoggingMiddleware)

# Routers
app.include_router(jobs.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(accounts.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
