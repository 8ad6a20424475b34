"""FastAPI application entry point for the escrow ledger.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, the Paystack client and
       the background reconciliation sweeps.
    2. Running: Serve the REST API and the Paystack webhook at /api/v1/*.
    3. Shutdown: Stop the sweeps, then close the gateway client, database
       and Redis connections gracefully.

Run with:
    uvicorn escrow_ledger.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

from fastapi import FastAPI
from redis.exceptions import RedisError

from escrow_ledger.config import get_settings
from escrow_ledger.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from escrow_ledger.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (optional: webhooks fall back to the ledger checks)
    from escrow_ledger.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except (RedisError, OSError) as exc:
        logger.warning("app.redis_unavailable", error=str(exc))
        await close_redis()

    # 4. Payment gateway client
    from escrow_ledger.infrastructure.paystack_client import PaystackClient

    app.state.paystack = PaystackClient.from_settings(settings)

    # 5. Background sweeps
    from escrow_ledger.infrastructure.audit_sink import SqlAuditSink
    from escrow_ledger.services.reconciliation_service import run_periodic_sweeps

    stop = asyncio.Event()
    sweeps: asyncio.Task[None] | None = None
    if settings.escrow_sweep_interval_seconds > 0:
        sweeps = asyncio.create_task(
            run_periodic_sweeps(
                None,
                SqlAuditSink,
                settings.escrow_sweep_interval_seconds,
                stop,
            )
        )

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    stop.set()
    if sweeps is not None:
        with suppress(asyncio.CancelledError):
            await sweeps
    await app.state.paystack.aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Ledger",
        description=(
            "Escrow custody, transaction ledger and Paystack webhook "
            "reconciliation for a delivery marketplace."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_ledger.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_ledger.api.routes.admin import router as admin_router
    from escrow_ledger.api.routes.escrows import router as escrows_router
    from escrow_ledger.api.routes.health import router as health_router
    from escrow_ledger.api.routes.orders import router as orders_router
    from escrow_ledger.api.routes.payments import router as payments_router
    from escrow_ledger.api.routes.transactions import router as transactions_router
    from escrow_ledger.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(escrows_router)
    app.include_router(transactions_router)
    app.include_router(webhooks_router)
    app.include_router(payments_router)
    app.include_router(admin_router)

    return app


# The app instance used by Uvicorn
app = create_app()
