"""
Best-effort side-channel notifications.

Publishing and connect flows announce outcomes here. Delivery failures are
logged and reported through the return value; they never change the result of
the operation that triggered them.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from services.job_queue import enqueue_notification

logger = logging.getLogger(__name__)

Sender = Callable[[str, Dict[str, Any]], Any]

PUBLISH_COMPLETED = "post.publish.completed"
CONNECTION_CREATED = "connection.created"


def notify_best_effort(event: str, payload: Dict[str, Any], sender: Optional[Sender] = None) -> bool:
    """Hand ``event`` to the sender. Returns False instead of raising on failure."""
    try:
        (sender or enqueue_notification)(event, payload)
    except Exception as exc:
        logger.warning("Notification %s not delivered: %s", event, exc)
        return False
    return True


def deliver_notification_job(event: str, payload: Dict[str, Any]) -> None:
    """RQ worker entrypoint for notification jobs."""
    logger.info("Notification %s user=%s payload=%s", event, payload.get("user_id"), payload)
