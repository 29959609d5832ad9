"""Daily per-user, per-platform metrics API budget backed by metric_fetch_log."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.metric_fetch_log import MetricFetchLog
from services.clock import utc_now
from services.errors import QuotaExceededError


def _day_start(now: Optional[datetime] = None) -> datetime:
    current = now or utc_now()
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


async def calls_used_today(
    db: AsyncSession,
    user_id: str,
    platform: str,
    now: Optional[datetime] = None,
) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(MetricFetchLog.calls_used), 0)).where(
            MetricFetchLog.user_id == user_id,
            MetricFetchLog.platform == platform,
            MetricFetchLog.created_at >= _day_start(now),
        )
    )
    return int(result.scalar() or 0)


async def ensure_budget(
    db: AsyncSession,
    user_id: str,
    platform: str,
    requested: int,
    *,
    budget: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Check that ``requested`` more calls fit today's budget.

    Returns the number of calls already used. Raises QuotaExceededError
    without recording anything when the batch would overrun the budget.
    """
    limit = int(settings.METRICS_DAILY_CALL_BUDGET if budget is None else budget)
    used = await calls_used_today(db, user_id, platform, now)
    if used + int(requested) > limit:
        raise QuotaExceededError(
            f"Daily {platform} metrics budget exceeded: used {used}, requested {requested}, budget {limit}",
            used=used,
            requested=int(requested),
            budget=limit,
        )
    return used


async def record_fetch(
    db: AsyncSession,
    *,
    user_id: str,
    platform: str,
    status: str,
    publication_target_id: Optional[str] = None,
    calls_used: int = 1,
    error_message: Optional[str] = None,
) -> MetricFetchLog:
    entry = MetricFetchLog(
        id=str(uuid.uuid4()),
        user_id=user_id,
        platform=platform,
        publication_target_id=publication_target_id,
        status=status,
        calls_used=int(calls_used),
        error_message=error_message,
        created_at=utc_now(),
    )
    db.add(entry)
    await db.flush()
    return entry
