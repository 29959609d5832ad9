"""Operator endpoints guarded by ADMIN_SECRET."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_factory
from routers.auth_scope import require_admin
from routers.error_mapping import raise_http_error
from services.errors import ConnectorError
from services.job_queue import enqueue_metrics_backfill, enqueue_scheduled_publish, enqueue_token_refresh_sweep
from services.metrics_collector import MetricsCollector
from services.publishing import PublishOrchestrator
from services.token_refresh import refresh_expiring_connections

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/metrics/backfill")
async def trigger_metrics_backfill(
    enqueue: bool = Query(default=False),
    limit: int = Query(default=500, ge=1, le=5000),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Run the stale-metrics backfill inline, or hand it to the worker queue."""
    if enqueue:
        job = enqueue_metrics_backfill()
        return {"queued": True, "job_id": job.id}
    try:
        summary = await MetricsCollector(session_factory).run_scheduled_backfill(limit=limit)
    except ConnectorError as exc:
        raise_http_error(exc)
    logger.info("Admin metrics backfill processed=%s failed=%s", summary["processed"], summary["failed"])
    return summary


@router.post("/tokens/refresh")
async def trigger_token_refresh(
    enqueue: bool = Query(default=False),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if enqueue:
        job = enqueue_token_refresh_sweep()
        return {"queued": True, "job_id": job.id}
    try:
        return await refresh_expiring_connections(session_factory)
    except ConnectorError as exc:
        raise_http_error(exc)


@router.post("/posts/publish-scheduled")
async def trigger_scheduled_publish(
    enqueue: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Publish every scheduled post that is due, inline or on the worker queue."""
    if enqueue:
        job = enqueue_scheduled_publish()
        return {"queued": True, "job_id": job.id}
    try:
        summary = await PublishOrchestrator(session_factory).run_scheduled_publish(limit=limit)
    except ConnectorError as exc:
        raise_http_error(exc)
    logger.info("Admin scheduled publish processed=%s failed=%s", summary["processed"], summary["failed"])
    return summary
