"""
Metrics collection for published posts.

Two entry points share one unit-of-work pipeline: an on-demand refresh of a
single post's publication targets and a scheduled backfill over every
publication whose latest snapshot is stale. Units fan out under a semaphore,
each with its own database session, and a failed unit never aborts its
siblings. Snapshots are append-only; readers take the latest one per target.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.metric_snapshot import MetricSnapshot
from models.post import Post
from models.publication_target import PublicationStatus, PublicationTarget
from services.clock import as_utc, utc_now
from services.connections import ConnectionStore
from services.connectors.base import BasePlatformAdapter
from services.connectors.registry import get_adapter, parse_platform
from services.connectors.types import ConnectionStatus, MetricsObservation, Platform
from services.errors import (
    ConfigurationError,
    IntegrityError,
    PlatformRequestError,
    PostNotFoundError,
    QuotaExceededError,
)
from services.quota import ensure_budget, record_fetch
from services.retry import RetryPolicy, with_retry
from services.token_refresh import get_valid_access_token

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Platform], BasePlatformAdapter]

# (post age upper bound, refresh interval); a None bound covers everything older.
_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)
DECAY_SCHEDULES: Dict[Platform, List[Tuple[Optional[timedelta], timedelta]]] = {
    Platform.TWITTER: [
        (2 * _HOUR, timedelta(minutes=15)),
        (6 * _HOUR, timedelta(minutes=30)),
        (24 * _HOUR, _HOUR),
        (3 * _DAY, 6 * _HOUR),
        (7 * _DAY, 12 * _HOUR),
        (30 * _DAY, _DAY),
        (90 * _DAY, 3 * _DAY),
        (None, 7 * _DAY),
    ],
    # LinkedIn stops refreshing after 90 days.
    Platform.LINKEDIN: [
        (2 * _HOUR, timedelta(minutes=30)),
        (6 * _HOUR, _HOUR),
        (24 * _HOUR, 3 * _HOUR),
        (3 * _DAY, 12 * _HOUR),
        (7 * _DAY, _DAY),
        (30 * _DAY, 3 * _DAY),
        (90 * _DAY, 7 * _DAY),
    ],
}


def refresh_interval(platform: Platform, post_age: timedelta) -> Optional[timedelta]:
    """Interval between snapshots for a post of this age, or None once it is retired."""
    for upper_bound, interval in DECAY_SCHEDULES[Platform(platform)]:
        if upper_bound is None or post_age < upper_bound:
            return interval
    return None


def is_due(
    platform: Platform,
    published_at: datetime,
    last_observed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    current = now or utc_now()
    interval = refresh_interval(platform, current - as_utc(published_at))
    if interval is None:
        return False
    if last_observed_at is None:
        return True
    return current - as_utc(last_observed_at) >= interval


def engagement_rate(observation: MetricsObservation) -> Optional[float]:
    if not observation.impressions:
        return None
    engagements = (observation.likes or 0) + (observation.replies or 0) + (observation.reposts or 0)
    return round(engagements / observation.impressions, 6)


@dataclass(frozen=True)
class MetricsUnit:
    target_id: str
    user_id: str
    platform: Platform
    platform_post_id: str
    published_at: Optional[datetime]


class MetricsCollector:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        adapter_factory: AdapterFactory = get_adapter,
        policy: Optional[RetryPolicy] = None,
        concurrency: Optional[int] = None,
        daily_budget: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.policy = policy
        self.concurrency = max(int(concurrency or settings.METRICS_FETCH_CONCURRENCY), 1)
        self.daily_budget = daily_budget
        self.cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Stop starting new units. Calls already in flight run to completion."""
        self.cancel_event.set()

    async def refresh_post(self, user_id: str, post_id: str) -> Dict[str, int]:
        """
        Refresh metrics for every published target of one post.

        Raises:
            PostNotFoundError: the post does not exist for this user
            QuotaExceededError: the batch would overrun a daily budget; raised
                before any platform call is made
        """
        async with self.session_factory() as db:
            post = await db.execute(select(Post.id).where(Post.id == post_id, Post.user_id == user_id))
            if post.scalar_one_or_none() is None:
                raise PostNotFoundError("Post not found")
            result = await db.execute(
                select(PublicationTarget).where(
                    PublicationTarget.post_id == post_id,
                    PublicationTarget.status == PublicationStatus.PUBLISHED.value,
                    PublicationTarget.platform_post_id.is_not(None),
                )
            )
            units = [self._unit_from_target(row) for row in result.scalars().all()]
            for (unit_user, platform), group in self._group(units).items():
                await ensure_budget(db, unit_user, platform.value, len(group), budget=self.daily_budget)

        refreshed, failed, _ = await self._collect(units)
        return {"refreshed": refreshed, "failed": failed}

    async def run_scheduled_backfill(self, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Refresh every stale publication.

        ``processed`` counts units that were attempted; groups over their daily
        budget are skipped whole and reported under ``skipped``.
        """
        current = now or utc_now()
        units = await self.find_due_units(now=current, limit=limit)

        allowed: List[MetricsUnit] = []
        skipped = 0
        async with self.session_factory() as db:
            for (user_id, platform), group in self._group(units).items():
                try:
                    await ensure_budget(db, user_id, platform.value, len(group), budget=self.daily_budget)
                except QuotaExceededError as exc:
                    logger.warning("Skipping metrics backfill user=%s platform=%s: %s", user_id, platform.value, exc)
                    skipped += len(group)
                    continue
                allowed.extend(group)

        refreshed, failed, cancelled = await self._collect(allowed)
        summary = {
            "processed": refreshed + failed,
            "refreshed": refreshed,
            "failed": failed,
            "skipped": skipped + cancelled,
        }
        logger.info(
            "Metrics backfill finished processed=%s failed=%s skipped=%s",
            summary["processed"],
            summary["failed"],
            summary["skipped"],
        )
        return summary

    async def find_due_units(self, *, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[MetricsUnit]:
        current = now or utc_now()
        oldest = current - timedelta(days=int(settings.METRICS_BACKFILL_MAX_AGE_DAYS))
        latest = (
            select(
                MetricSnapshot.publication_target_id.label("target_id"),
                func.max(MetricSnapshot.observed_at).label("last_observed_at"),
            )
            .group_by(MetricSnapshot.publication_target_id)
            .subquery()
        )
        async with self.session_factory() as db:
            result = await db.execute(
                select(PublicationTarget, latest.c.last_observed_at)
                .outerjoin(latest, latest.c.target_id == PublicationTarget.id)
                .where(
                    PublicationTarget.status == PublicationStatus.PUBLISHED.value,
                    PublicationTarget.platform_post_id.is_not(None),
                    PublicationTarget.published_at.is_not(None),
                    PublicationTarget.published_at >= oldest,
                )
                .order_by(PublicationTarget.published_at.desc())
            )
            rows = result.all()

        units: List[MetricsUnit] = []
        for target, last_observed_at in rows:
            unit = self._unit_from_target(target)
            if not is_due(unit.platform, unit.published_at, last_observed_at, current):
                continue
            units.append(unit)
            if limit is not None and len(units) >= limit:
                break
        return units

    @staticmethod
    def _unit_from_target(target: PublicationTarget) -> MetricsUnit:
        return MetricsUnit(
            target_id=target.id,
            user_id=target.user_id,
            platform=parse_platform(target.platform),
            platform_post_id=target.platform_post_id,
            published_at=as_utc(target.published_at),
        )

    @staticmethod
    def _group(units: Iterable[MetricsUnit]) -> Dict[Tuple[str, Platform], List[MetricsUnit]]:
        groups: Dict[Tuple[str, Platform], List[MetricsUnit]] = defaultdict(list)
        for unit in units:
            groups[(unit.user_id, unit.platform)].append(unit)
        return groups

    async def _collect(self, units: Sequence[MetricsUnit]) -> Tuple[int, int, int]:
        """Run units with bounded concurrency. Returns (refreshed, failed, cancelled)."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(unit: MetricsUnit) -> Optional[bool]:
            if self.cancel_event.is_set():
                return None
            async with semaphore:
                if self.cancel_event.is_set():
                    return None
                return await self._refresh_unit(unit)

        outcomes = await asyncio.gather(*(guarded(unit) for unit in units), return_exceptions=True)

        refreshed = failed = cancelled = 0
        fatal: Optional[BaseException] = None
        for unit, outcome in zip(units, outcomes):
            if isinstance(outcome, (ConfigurationError, IntegrityError)):
                fatal = fatal or outcome
                failed += 1
            elif isinstance(outcome, BaseException):
                logger.warning("Metrics unit crashed target=%s: %s", unit.target_id, outcome)
                failed += 1
            elif outcome is None:
                cancelled += 1
            elif outcome:
                refreshed += 1
            else:
                failed += 1
        if fatal is not None:
            raise fatal
        return refreshed, failed, cancelled

    async def _refresh_unit(self, unit: MetricsUnit) -> bool:
        async with self.session_factory() as db:
            store = ConnectionStore(db)
            connection = await store.get_by_platform(unit.user_id, unit.platform)
            if connection is None or connection.status == ConnectionStatus.REVOKED.value:
                logger.warning(
                    "No usable %s connection for metrics target=%s",
                    unit.platform.value,
                    unit.target_id,
                )
                return False

            calls = 0

            async def fetch() -> MetricsObservation:
                nonlocal calls
                calls += 1
                return await adapter.fetch_post_metrics(access_token, unit.platform_post_id)

            try:
                adapter = self.adapter_factory(unit.platform)
                access_token = await get_valid_access_token(store, connection, adapter, policy=self.policy)
                observation = await with_retry(
                    fetch,
                    self.policy,
                    label=f"{unit.platform.value} metrics",
                )
            except (ConfigurationError, IntegrityError):
                raise
            except Exception as exc:
                logger.warning("Metrics fetch failed target=%s platform=%s: %s", unit.target_id, unit.platform.value, exc)
                if isinstance(exc, PlatformRequestError) and exc.status_code == 401:
                    await store.mark_expired(connection.id, str(exc))
                await record_fetch(
                    db,
                    user_id=unit.user_id,
                    platform=unit.platform.value,
                    publication_target_id=unit.target_id,
                    status="failed",
                    calls_used=calls,
                    error_message=str(exc),
                )
                await db.commit()
                return False

            await self._append_snapshot(db, unit, observation)
            await record_fetch(
                db,
                user_id=unit.user_id,
                platform=unit.platform.value,
                publication_target_id=unit.target_id,
                status="success",
                calls_used=calls,
            )
            connection.last_synced_at = utc_now()
            await db.commit()
            return True

    @staticmethod
    async def _append_snapshot(db: AsyncSession, unit: MetricsUnit, observation: MetricsObservation) -> MetricSnapshot:
        observed_at = as_utc(observation.observed_at) or utc_now()
        hours = None
        if unit.published_at is not None:
            hours = round(max((observed_at - unit.published_at).total_seconds(), 0.0) / 3600.0, 3)
        snapshot = MetricSnapshot(
            id=str(uuid.uuid4()),
            publication_target_id=unit.target_id,
            observed_at=observed_at,
            impressions=observation.impressions,
            likes=observation.likes,
            replies=observation.replies,
            reposts=observation.reposts,
            clicks=observation.clicks,
            profile_visits=observation.profile_visits,
            follows_from_post=observation.follows_from_post,
            engagement_rate=engagement_rate(observation),
            hours_since_publish=hours,
        )
        db.add(snapshot)
        return snapshot


async def latest_snapshots_for_post(db: AsyncSession, post_id: str) -> Dict[str, MetricSnapshot]:
    """Most recent snapshot per platform. Latest wins even when counts went down."""
    result = await db.execute(
        select(PublicationTarget.platform, MetricSnapshot)
        .join(MetricSnapshot, MetricSnapshot.publication_target_id == PublicationTarget.id)
        .where(PublicationTarget.post_id == post_id)
        .order_by(MetricSnapshot.observed_at.desc(), MetricSnapshot.created_at.desc())
    )
    latest: Dict[str, MetricSnapshot] = {}
    for platform, snapshot in result.all():
        latest.setdefault(platform, snapshot)
    return latest


def snapshot_to_dict(snapshot: MetricSnapshot) -> Dict[str, object]:
    observed_at = as_utc(snapshot.observed_at)
    return {
        "observed_at": observed_at.isoformat() if observed_at else None,
        "impressions": snapshot.impressions,
        "likes": snapshot.likes,
        "replies": snapshot.replies,
        "reposts": snapshot.reposts,
        "clicks": snapshot.clicks,
        "profile_visits": snapshot.profile_visits,
        "follows_from_post": snapshot.follows_from_post,
        "engagement_rate": snapshot.engagement_rate,
        "hours_since_publish": snapshot.hours_since_publish,
    }


async def refresh_metrics(user_id: str, post_id: str) -> Dict[str, int]:
    return await MetricsCollector(async_session_maker).refresh_post(user_id, post_id)


async def run_scheduled_metrics_backfill() -> Dict[str, int]:
    return await MetricsCollector(async_session_maker).run_scheduled_backfill()


def run_metrics_backfill_job() -> Dict[str, int]:
    """RQ worker entrypoint for the scheduled backfill."""
    return asyncio.run(run_scheduled_metrics_backfill())


def refresh_post_metrics_job(user_id: str, post_id: str) -> Dict[str, int]:
    """RQ worker entrypoint for a single post refresh."""
    return asyncio.run(refresh_metrics(user_id, post_id))
