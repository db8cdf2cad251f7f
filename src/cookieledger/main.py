"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI
from redis.exceptions import RedisError

from cookieledger.allowance.router import router as allowance_router
from cookieledger.allowance.scheduling import ArqWakeScheduler
from cookieledger.config import get_settings
from cookieledger.database import close_db, create_schema, get_session_factory, init_db
from cookieledger.health.router import router as health_router
from cookieledger.ledger.redemption import wait_for_pending_log_writes
from cookieledger.ledger.router import router as ledger_router
from cookieledger.ledger.sql_store import SqlLedgerStore
from cookieledger.middleware import setup_middleware
from cookieledger.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    if settings.auto_create_schema:
        await create_schema()

    app.state.ledger_store = SqlLedgerStore(get_session_factory(), max_attempts=settings.store_max_attempts)

    # Background wakes are optional: without arq the device refreshes on its own schedule
    arq_pool = None
    try:
        arq_pool = await create_pool(RedisSettings.from_dsn(settings.arq_redis_url))
        app.state.wake_scheduler = ArqWakeScheduler(arq_pool)
    except (OSError, RedisError):
        logger.warning("arq pool unavailable, lock refresh wakes disabled", exc_info=True)
        app.state.wake_scheduler = None

    yield

    # Let in-flight redemption log appends land before the store goes away
    await wait_for_pending_log_writes()
    if arq_pool is not None:
        await arq_pool.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Cookies Ledger API",
        description="Token pack ledger and device unlock allowance for Cookies",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(ledger_router)
    app.include_router(allowance_router)

    return app


app = create_app()
