"""
Social Publisher - FastAPI Backend
Platform connections, publishing and metrics collection.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import health, connections, posts, admin
from services.metrics_collector import run_scheduled_metrics_backfill
from services.publishing import publish_scheduled_posts
from services.token_refresh import refresh_expiring_connections

logger = logging.getLogger(__name__)


async def _periodic_metrics_backfill() -> None:
    interval_minutes = max(int(settings.METRICS_BACKFILL_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_scheduled_metrics_backfill()
            if result.get("processed") or result.get("skipped"):
                logger.info(
                    "Metrics backfill tick: processed=%s failed=%s skipped=%s",
                    result.get("processed", 0),
                    result.get("failed", 0),
                    result.get("skipped", 0),
                )
        except Exception as exc:
            logger.warning("Metrics backfill tick failed: %s", exc)


async def _periodic_token_refresh() -> None:
    interval_minutes = max(int(settings.TOKEN_REFRESH_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await refresh_expiring_connections(async_session_maker)
            if result.get("refreshed") or result.get("failed"):
                logger.info(
                    "Token refresh tick: refreshed=%s failed=%s",
                    result.get("refreshed", 0),
                    result.get("failed", 0),
                )
        except Exception as exc:
            logger.warning("Token refresh tick failed: %s", exc)


async def _periodic_scheduled_publish() -> None:
    interval_minutes = max(int(settings.SCHEDULED_PUBLISH_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await publish_scheduled_posts()
            if result.get("processed"):
                logger.info(
                    "Scheduled publish tick: processed=%s failed=%s",
                    result.get("processed", 0),
                    result.get("failed", 0),
                )
        except Exception as exc:
            logger.warning("Scheduled publish tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Social Publisher API")
    # ConfigurationError for a missing or malformed ENCRYPTION_KEY stops startup here.
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)

    tasks = []
    if int(settings.METRICS_BACKFILL_INTERVAL_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_metrics_backfill()))
        logger.info("Metrics backfill loop enabled (every %s min).", int(settings.METRICS_BACKFILL_INTERVAL_MINUTES))
    if int(settings.SCHEDULED_PUBLISH_INTERVAL_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_scheduled_publish()))
        logger.info("Scheduled publish loop enabled (every %s min).", int(settings.SCHEDULED_PUBLISH_INTERVAL_MINUTES))
    if int(settings.TOKEN_REFRESH_SWEEP_INTERVAL_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_token_refresh()))
        logger.info("Token refresh loop enabled (every %s min).", int(settings.TOKEN_REFRESH_SWEEP_INTERVAL_MINUTES))
    yield
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API")


app = FastAPI(
    title="Social Publisher API",
    description="Connect social accounts, publish posts and collect engagement metrics",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(connections.router, prefix="/connections", tags=["Connections"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Social Publisher API",
        "version": "0.1.0",
        "status": "running"
    }
