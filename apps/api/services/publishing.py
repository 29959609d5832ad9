"""
Publish orchestration.

One logical post fans out to every target platform independently: a failure on
one platform never prevents the attempt on another, and callers always get the
full per-platform result list. Threads are published post by post because each
reply needs the platform id of the post before it.

A publish run first claims its posts by moving them to ``publishing`` with a
conditional update, so two concurrent runs can never both reach a platform.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.post import PUBLISHABLE_STATUSES, Post, PostStatus
from models.publication_target import PublicationStatus, PublicationTarget
from models.thread import Thread
from services.clock import as_utc, utc_now
from services.connections import ConnectionStore
from services.connectors.base import BasePlatformAdapter
from services.connectors.capabilities import capabilities_for
from services.connectors.registry import get_adapter, parse_platform
from services.connectors.types import Platform, PostContent
from services.crypto import CredentialCipher
from services.errors import (
    ConfigurationError,
    IntegrityError,
    PlatformRequestError,
    PostNotFoundError,
    PublishStateError,
    UnsupportedPlatformError,
)
from services.media import discard_media, load_media
from services.notifications import PUBLISH_COMPLETED, Sender, notify_best_effort
from services.retry import RetryPolicy, with_retry
from services.token_refresh import get_valid_access_token

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Platform], BasePlatformAdapter]


@dataclass
class PublishResult:
    platform: str
    success: bool
    target_id: Optional[str] = None
    platform_post_id: Optional[str] = None
    platform_url: Optional[str] = None
    published_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["published_at"] = self.published_at.isoformat() if self.published_at else None
        return payload


@dataclass
class ThreadPostResult:
    post_id: str
    position: int
    results: List[PublishResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.results) and all(item.success for item in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "post_id": self.post_id,
            "position": self.position,
            "success": self.success,
            "results": [item.to_dict() for item in self.results],
        }


def build_publish_text(body: str, tags: Optional[Sequence[str]], character_limit: int) -> str:
    """Append ``#tag`` suffixes to ``body`` while the result fits the platform limit."""
    text = (body or "").strip()
    for raw_tag in tags or []:
        tag = str(raw_tag).strip().lstrip("#").replace(" ", "")
        if not tag:
            continue
        candidate = f"{text} #{tag}" if text else f"#{tag}"
        if len(candidate) > character_limit:
            break
        text = candidate
    return text


def _error_message(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


def _raise_fatal(outcomes: Sequence[Any]) -> None:
    for outcome in outcomes:
        if isinstance(outcome, (ConfigurationError, IntegrityError)):
            raise outcome


class PublishOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        adapter_factory: AdapterFactory = get_adapter,
        policy: Optional[RetryPolicy] = None,
        cipher: Optional[CredentialCipher] = None,
        notify_sender: Optional[Sender] = None,
    ) -> None:
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.policy = policy
        self._cipher = cipher
        self._notify_sender = notify_sender

    async def _load_post(self, db, user_id: str, post_id: str) -> Post:
        result = await db.execute(select(Post).where(Post.id == post_id, Post.user_id == user_id))
        post = result.scalar_one_or_none()
        if post is None:
            raise PostNotFoundError("Post not found")
        return post

    async def _claim(self, db, posts: Sequence[Post]) -> Dict[str, str]:
        """
        Move every post to ``publishing`` in one transaction.

        Each update only matches while the row still holds the status that was
        read, so a concurrent run that got there first leaves zero rows to
        update. Returns the prior status per post id.

        Raises:
            PublishStateError: a post is not publishable or was claimed first
        """
        previous: Dict[str, str] = {}
        for post in posts:
            if post.status not in PUBLISHABLE_STATUSES:
                await db.rollback()
                raise PublishStateError(f"Post {post.id} cannot be published from status '{post.status}'")
            result = await db.execute(
                update(Post)
                .where(Post.id == post.id, Post.status == post.status)
                .values(status=PostStatus.PUBLISHING.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise PublishStateError(f"Post {post.id} is already being published")
            previous[post.id] = post.status
        await db.commit()
        return previous

    async def _release(self, previous: Dict[str, str]) -> None:
        """Hand claimed posts that were never rolled up back their prior status."""
        if not previous:
            return
        async with self.session_factory() as db:
            for post_id, status in previous.items():
                await db.execute(
                    update(Post)
                    .where(Post.id == post_id, Post.status == PostStatus.PUBLISHING.value)
                    .values(status=status)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()

    async def _prepare_targets(
        self,
        db,
        post: Post,
        platforms: Sequence[Platform],
    ) -> Dict[Platform, PublicationTarget]:
        result = await db.execute(select(PublicationTarget).where(PublicationTarget.post_id == post.id))
        existing = {row.platform: row for row in result.scalars().all()}
        targets: Dict[Platform, PublicationTarget] = {}
        for platform in platforms:
            target = existing.get(platform.value)
            if target is None:
                target = PublicationTarget(
                    id=str(uuid.uuid4()),
                    post_id=post.id,
                    user_id=post.user_id,
                    platform=platform.value,
                )
                db.add(target)
            if target.status != PublicationStatus.PUBLISHED.value:
                target.status = PublicationStatus.PENDING.value
                target.last_error = None
            targets[platform] = target
        try:
            await db.commit()
        except DBIntegrityError as exc:
            await db.rollback()
            raise PublishStateError(f"Post {post.id} is already being published") from exc
        return targets

    async def _prepare_post_targets(
        self,
        post_id: str,
        platforms: Sequence[Platform],
    ) -> Dict[Platform, PublicationTarget]:
        async with self.session_factory() as db:
            post = await db.get(Post, post_id)
            return await self._prepare_targets(db, post, platforms)

    def _platforms_for(self, post: Post) -> List[Platform]:
        platforms: List[Platform] = []
        for value in post.platforms or []:
            platform = parse_platform(value)
            if platform not in platforms:
                platforms.append(platform)
        if not platforms:
            raise PublishStateError("Post has no target platforms")
        return platforms

    async def _upload_media(
        self,
        adapter: BasePlatformAdapter,
        platform: Platform,
        access_token: str,
        user_id: str,
        author_id: Optional[str],
        media_paths: Sequence[str],
    ) -> List[str]:
        media_ids: List[str] = []
        for relative in media_paths:
            data, mime_type = load_media(user_id, relative)
            media_id = await with_retry(
                lambda: adapter.upload_media(access_token, data, mime_type, author_id=author_id),
                self.policy,
                label=f"{platform.value} media upload",
            )
            media_ids.append(media_id)
        return media_ids

    async def _attempt(
        self,
        user_id: str,
        target_id: str,
        platform: Platform,
        text: str,
        media_paths: Sequence[str],
        reply_to_id: Optional[str] = None,
    ) -> PublishResult:
        """Run one ``pending -> published|failed`` transition for a single target."""
        async with self.session_factory() as db:
            target = await db.get(PublicationTarget, target_id)
            store = ConnectionStore(db, self._cipher)
            connection = None
            try:
                adapter = self.adapter_factory(platform)
                connection = await store.get_active(user_id, platform)
                access_token = await get_valid_access_token(store, connection, adapter, policy=self.policy)
                media_ids = await self._upload_media(
                    adapter,
                    platform,
                    access_token,
                    user_id,
                    connection.platform_user_id,
                    media_paths,
                )
                content = PostContent(
                    text=text,
                    author_id=connection.platform_user_id,
                    reply_to_id=reply_to_id,
                    media_ids=media_ids,
                )
                published = await with_retry(
                    lambda: adapter.publish(access_token, content),
                    self.policy,
                    label=f"{platform.value} publish",
                )
            except (ConfigurationError, IntegrityError) as exc:
                target.status = PublicationStatus.FAILED.value
                target.last_error = _error_message(exc)
                await db.commit()
                raise
            except Exception as exc:
                logger.warning("Publish failed target=%s platform=%s: %s", target_id, platform.value, exc)
                if (
                    connection is not None
                    and isinstance(exc, PlatformRequestError)
                    and exc.status_code == 401
                ):
                    await store.mark_expired(connection.id, _error_message(exc))
                target.status = PublicationStatus.FAILED.value
                target.last_error = _error_message(exc)
                await db.commit()
                return PublishResult(
                    platform=platform.value,
                    success=False,
                    target_id=target_id,
                    error=_error_message(exc),
                )

            target.status = PublicationStatus.PUBLISHED.value
            target.connection_id = connection.id
            target.platform_post_id = published.platform_post_id
            target.platform_url = published.platform_url
            target.published_at = published.published_at
            target.last_error = None
            await db.commit()
            logger.info(
                "Published target=%s platform=%s platform_post_id=%s",
                target_id,
                platform.value,
                published.platform_post_id,
            )
            return PublishResult(
                platform=platform.value,
                success=True,
                target_id=target_id,
                platform_post_id=published.platform_post_id,
                platform_url=published.platform_url,
                published_at=published.published_at,
            )

    async def _roll_up_post(self, post_id: str, results: Sequence[PublishResult], complete: bool = False) -> str:
        """
        Settle a claimed post as ``published`` (any platform succeeded) or
        ``failed``. ``complete`` means every target platform now has the post,
        so its stored media is no longer needed.
        """
        async with self.session_factory() as db:
            post = await db.get(Post, post_id)
            published_times = [as_utc(item.published_at) for item in results if item.success and item.published_at]
            if any(item.success for item in results):
                post.status = PostStatus.PUBLISHED.value
                post.published_at = as_utc(post.published_at) or (min(published_times) if published_times else utc_now())
            else:
                post.status = PostStatus.FAILED.value
            media_paths = list(post.media_paths or [])
            await db.commit()
            status = post.status
        if complete and media_paths:
            discard_media(media_paths)
        return status

    @staticmethod
    def _already_published(platform: Platform, target: PublicationTarget) -> PublishResult:
        return PublishResult(
            platform=platform.value,
            success=True,
            target_id=target.id,
            platform_post_id=target.platform_post_id,
            platform_url=target.platform_url,
            published_at=as_utc(target.published_at),
        )

    async def publish_post(self, user_id: str, post_id: str) -> List[PublishResult]:
        """
        Publish a standalone post to each of its target platforms.

        Returns one result per platform in the post's platform order. Per
        platform failures are reported in the results, never raised.

        Raises:
            PublishStateError: post missing, part of a thread, not in a
                publishable state, or already claimed by another run
        """
        async with self.session_factory() as db:
            post = await self._load_post(db, user_id, post_id)
            if post.thread_id:
                raise PublishStateError("Post belongs to a thread; publish the thread instead")
            platforms = self._platforms_for(post)
            previous = await self._claim(db, [post])
            try:
                targets = await self._prepare_targets(db, post, platforms)
            except Exception:
                await self._release(previous)
                raise
            body, tags, media_paths = post.body, list(post.tags or []), list(post.media_paths or [])

        pending = []
        results: Dict[Platform, PublishResult] = {}
        for platform, target in targets.items():
            if target.status == PublicationStatus.PUBLISHED.value:
                results[platform] = self._already_published(platform, target)
                continue
            text = build_publish_text(body, tags, capabilities_for(platform).character_limit)
            pending.append((platform, self._attempt(user_id, target.id, platform, text, media_paths)))

        outcomes = await asyncio.gather(*(attempt for _, attempt in pending), return_exceptions=True)
        for (platform, _), outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                results[platform] = PublishResult(
                    platform=platform.value,
                    success=False,
                    target_id=targets[platform].id,
                    error=_error_message(outcome),
                )
            else:
                results[platform] = outcome

        ordered = [results[platform] for platform in platforms]
        status = await self._roll_up_post(post_id, ordered, complete=all(item.success for item in ordered))
        _raise_fatal(outcomes)

        notify_best_effort(
            PUBLISH_COMPLETED,
            {
                "user_id": user_id,
                "post_id": post_id,
                "status": status,
                "results": [item.to_dict() for item in ordered],
            },
            sender=self._notify_sender,
        )
        return ordered

    async def publish_thread(self, user_id: str, thread_id: str) -> List[ThreadPostResult]:
        """
        Publish a thread in order, each post replying to the previous one.

        Each platform's chain stops at its first failure. The run stops once
        no platform chain is still alive, so a failed post N means post N+1 is
        never attempted. Results cover only the posts that were attempted, and
        publication targets are only created for those posts.
        """
        async with self.session_factory() as db:
            result = await db.execute(select(Thread).where(Thread.id == thread_id, Thread.user_id == user_id))
            thread = result.scalar_one_or_none()
            if thread is None:
                raise PostNotFoundError("Thread not found")
            post_rows = await db.execute(
                select(Post).where(Post.thread_id == thread_id).order_by(Post.thread_position, Post.created_at)
            )
            posts = list(post_rows.scalars().all())
            if not posts:
                raise PublishStateError("Thread has no posts")
            platforms = self._platforms_for(posts[0])
            previous = await self._claim(db, posts)
            plan = [(post.id, post.body, list(post.tags or []), list(post.media_paths or [])) for post in posts]

        previous_ids: Dict[Platform, str] = {}
        alive = list(platforms)
        thread_results: List[ThreadPostResult] = []
        settled = set()

        try:
            for position, (post_id, body, tags, media_paths) in enumerate(plan):
                if not alive:
                    break
                targets = await self._prepare_post_targets(post_id, alive)
                entry = ThreadPostResult(post_id=post_id, position=position)
                for platform in list(alive):
                    target = targets[platform]
                    caps = capabilities_for(platform)
                    if len(plan) > 1 and not caps.supports_threads:
                        outcome = await self._fail_target(
                            target.id,
                            platform,
                            f"{platform.value} does not support threads",
                        )
                    else:
                        text = build_publish_text(body, tags, caps.character_limit)
                        outcome = await self._attempt(
                            user_id,
                            target.id,
                            platform,
                            text,
                            media_paths,
                            reply_to_id=previous_ids.get(platform),
                        )
                    entry.results.append(outcome)
                    if outcome.success:
                        previous_ids[platform] = outcome.platform_post_id
                    else:
                        alive.remove(platform)
                complete = entry.success and len(entry.results) == len(platforms)
                await self._roll_up_post(post_id, entry.results, complete=complete)
                settled.add(post_id)
                thread_results.append(entry)
        finally:
            await self._release({key: value for key, value in previous.items() if key not in settled})

        await self._roll_up_thread(thread_id, thread_results, len(plan))
        notify_best_effort(
            PUBLISH_COMPLETED,
            {
                "user_id": user_id,
                "thread_id": thread_id,
                "posts": [item.to_dict() for item in thread_results],
            },
            sender=self._notify_sender,
        )
        return thread_results

    async def run_scheduled_publish(self, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Publish every standalone post whose ``scheduled_at`` has passed.

        ``processed`` counts due posts picked up by this run. ``failed`` counts
        those that raised or reached no platform. A post claimed by a
        concurrent run is skipped and counted in neither.
        """
        cutoff = as_utc(now) or utc_now()
        batch = limit if limit is not None else max(int(settings.SCHEDULED_PUBLISH_BATCH_SIZE), 1)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Post.id, Post.user_id)
                .where(
                    Post.status == PostStatus.SCHEDULED.value,
                    Post.thread_id.is_(None),
                    Post.scheduled_at.is_not(None),
                    Post.scheduled_at <= cutoff,
                )
                .order_by(Post.scheduled_at)
                .limit(batch)
            )
            due = [(row.id, row.user_id) for row in result.all()]

        summary = {"processed": 0, "failed": 0}
        for post_id, user_id in due:
            try:
                results = await self.publish_post(user_id, post_id)
            except PublishStateError as exc:
                logger.info("Scheduled post skipped post=%s: %s", post_id, exc)
                continue
            except (ConfigurationError, IntegrityError):
                raise
            except Exception as exc:
                logger.warning("Scheduled publish failed post=%s: %s", post_id, exc)
                summary["processed"] += 1
                summary["failed"] += 1
                continue
            summary["processed"] += 1
            if not any(item.success for item in results):
                summary["failed"] += 1

        if due:
            logger.info(
                "Scheduled publish finished processed=%s failed=%s",
                summary["processed"],
                summary["failed"],
            )
        return summary

    async def _fail_target(self, target_id: str, platform: Platform, message: str) -> PublishResult:
        async with self.session_factory() as db:
            target = await db.get(PublicationTarget, target_id)
            target.status = PublicationStatus.FAILED.value
            target.last_error = message
            await db.commit()
        return PublishResult(platform=platform.value, success=False, target_id=target_id, error=message)

    async def _roll_up_thread(self, thread_id: str, results: Sequence[ThreadPostResult], total_posts: int) -> None:
        async with self.session_factory() as db:
            thread = await db.get(Thread, thread_id)
            if results and len(results) == total_posts and all(item.success for item in results):
                thread.status = "published"
            elif any(outcome.success for item in results for outcome in item.results):
                thread.status = "partial"
            else:
                thread.status = "failed"
            await db.commit()

    async def _published_target(self, db, user_id: str, post_id: str, platform: Platform) -> PublicationTarget:
        await self._load_post(db, user_id, post_id)
        result = await db.execute(
            select(PublicationTarget).where(
                PublicationTarget.post_id == post_id,
                PublicationTarget.platform == platform.value,
            )
        )
        target = result.scalar_one_or_none()
        if target is None or target.status != PublicationStatus.PUBLISHED.value or not target.platform_post_id:
            raise PublishStateError(f"Post is not published on {platform.value}")
        return target

    async def _toggle_repost(self, user_id: str, post_id: str, platform: Platform, undo: bool) -> Dict[str, Any]:
        platform = parse_platform(platform)
        if not capabilities_for(platform).supports_repost:
            raise UnsupportedPlatformError(f"{platform.value} does not support reposts")

        async with self.session_factory() as db:
            target = await self._published_target(db, user_id, post_id, platform)
            store = ConnectionStore(db, self._cipher)
            connection = await store.get_active(user_id, platform)
            adapter = self.adapter_factory(platform)
            operation = getattr(adapter, "unrepost" if undo else "repost", None)
            if operation is None:
                raise UnsupportedPlatformError(f"{platform.value} adapter has no repost operation")
            access_token = await get_valid_access_token(store, connection, adapter, policy=self.policy)
            await with_retry(
                lambda: operation(access_token, connection.platform_user_id, target.platform_post_id),
                self.policy,
                label=f"{platform.value} {'unrepost' if undo else 'repost'}",
            )
        return {
            "post_id": post_id,
            "platform": platform.value,
            "platform_post_id": target.platform_post_id,
            "reposted": not undo,
        }

    async def repost(self, user_id: str, post_id: str, platform: Platform) -> Dict[str, Any]:
        return await self._toggle_repost(user_id, post_id, platform, undo=False)

    async def unrepost(self, user_id: str, post_id: str, platform: Platform) -> Dict[str, Any]:
        return await self._toggle_repost(user_id, post_id, platform, undo=True)

    async def delete_post(self, user_id: str, post_id: str) -> List[Dict[str, Any]]:
        """Remove a published post from every platform it went out on."""
        async with self.session_factory() as db:
            post = await self._load_post(db, user_id, post_id)
            result = await db.execute(
                select(PublicationTarget).where(
                    PublicationTarget.post_id == post.id,
                    PublicationTarget.status == PublicationStatus.PUBLISHED.value,
                )
            )
            targets = [(row.id, parse_platform(row.platform), row.platform_post_id) for row in result.scalars().all()]

        outcomes: List[Dict[str, Any]] = []
        for target_id, platform, platform_post_id in targets:
            async with self.session_factory() as db:
                store = ConnectionStore(db, self._cipher)
                try:
                    adapter = self.adapter_factory(platform)
                    connection = await store.get_active(user_id, platform)
                    access_token = await get_valid_access_token(store, connection, adapter, policy=self.policy)
                    await with_retry(
                        lambda: adapter.delete_post(access_token, platform_post_id),
                        self.policy,
                        label=f"{platform.value} delete",
                    )
                except (ConfigurationError, IntegrityError):
                    raise
                except Exception as exc:
                    logger.warning("Delete failed target=%s platform=%s: %s", target_id, platform.value, exc)
                    outcomes.append({"platform": platform.value, "success": False, "error": _error_message(exc)})
                    continue
            outcomes.append({"platform": platform.value, "success": True, "error": None})

        if all(item["success"] for item in outcomes):
            async with self.session_factory() as db:
                post = await db.get(Post, post_id)
                post.status = PostStatus.DELETED.value
                await db.commit()
        return outcomes


async def publish_scheduled_posts() -> Dict[str, int]:
    return await PublishOrchestrator(async_session_maker).run_scheduled_publish()


def run_scheduled_publish_job() -> Dict[str, int]:
    """RQ worker entrypoint for posts whose scheduled time has passed."""
    return asyncio.run(publish_scheduled_posts())
