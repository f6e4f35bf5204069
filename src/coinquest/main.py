"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from coinquest.auth.pending import close_pending_cache, init_pending_cache
from coinquest.auth.router import router as auth_router
from coinquest.config import get_settings
from coinquest.database import close_db, init_db
from coinquest.health.router import router as health_router
from coinquest.learning.router import router as learning_router
from coinquest.middleware import setup_middleware
from coinquest.redis_client import close_redis, get_redis, init_redis
from coinquest.rewards.router import router as wallet_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database, Redis and the pending-signup cache; close them on shutdown."""
    settings = get_settings()
    await init_db(settings.database_url, create_all=settings.db_create_all)

    redis = None
    if settings.redis_enabled or settings.pending_backend == "redis":
        await init_redis(settings.redis_url)
        redis = get_redis()

    pending = init_pending_cache(settings, redis)
    pending.start()
    logger.info("startup_complete", version=settings.app_version, pending_backend=settings.pending_backend)

    yield

    await close_pending_cache()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CoinQuest Academy API",
        description="Backend API for CoinQuest Academy, a gamified financial-literacy course",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(wallet_router)
    app.include_router(learning_router)

    return app


app = create_app()
