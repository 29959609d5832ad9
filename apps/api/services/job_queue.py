"""Durable background job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


PUBLISH_QUEUE_NAME = "publish_jobs"
METRICS_QUEUE_NAME = "metrics_jobs"
MAINTENANCE_QUEUE_NAME = "maintenance_jobs"
NOTIFICATION_QUEUE_NAME = "notification_jobs"
ALL_QUEUE_NAMES = (PUBLISH_QUEUE_NAME, METRICS_QUEUE_NAME, MAINTENANCE_QUEUE_NAME, NOTIFICATION_QUEUE_NAME)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_queue(name: str, default_timeout: int = 900) -> Queue:
    return Queue(name=name, connection=get_redis_connection(), default_timeout=default_timeout)


def enqueue_scheduled_publish() -> Job:
    """Enqueue one pass over due scheduled posts. Duplicate enqueues collapse onto one job id."""
    queue = get_queue(PUBLISH_QUEUE_NAME)
    return queue.enqueue(
        "services.publishing.run_scheduled_publish_job",
        job_id="publish:scheduled",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=900,
        result_ttl=3600,
        failure_ttl=86400,
    )


def enqueue_metrics_backfill() -> Job:
    """Enqueue one scheduled backfill run. Duplicate enqueues collapse onto one job id."""
    queue = get_queue(METRICS_QUEUE_NAME, default_timeout=3600)
    return queue.enqueue(
        "services.metrics_collector.run_metrics_backfill_job",
        job_id="metrics:backfill",
        retry=Retry(max=2, interval=[60, 300]),
        job_timeout=3600,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_post_metrics_refresh(user_id: str, post_id: str) -> Job:
    queue = get_queue(METRICS_QUEUE_NAME)
    return queue.enqueue(
        "services.metrics_collector.refresh_post_metrics_job",
        user_id,
        post_id,
        job_id=f"metrics:post:{post_id}",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_token_refresh_sweep() -> Job:
    queue = get_queue(MAINTENANCE_QUEUE_NAME)
    return queue.enqueue(
        "services.token_refresh.run_token_refresh_sweep_job",
        job_id="tokens:refresh-sweep",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=900,
        result_ttl=3600,
        failure_ttl=86400,
    )


def enqueue_notification(event: str, payload: Dict[str, Any]) -> Job:
    queue = get_queue(NOTIFICATION_QUEUE_NAME, default_timeout=60)
    return queue.enqueue(
        "services.notifications.deliver_notification_job",
        event,
        payload,
        retry=Retry(max=3, interval=[5, 30, 120]),
        job_timeout=60,
        result_ttl=3600,
        failure_ttl=86400,
    )
