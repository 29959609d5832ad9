import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from models.connection import Connection
from models.post import Post
from models.publication_target import PublicationTarget
from models.thread import Thread
from services.connectors.types import Platform
from services.errors import (
    ConfigurationError,
    PlatformRequestError,
    PostNotFoundError,
    PublishStateError,
    RateLimitError,
    UnsupportedPlatformError,
)
from services.publishing import PublishOrchestrator, build_publish_text
from services.retry import RetryPolicy

from fakes import FakeAdapter

NO_WAIT = RetryPolicy(max_retries=2, base_delay=0.0)


class Outbox:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []

    def __call__(self, event, payload):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.events.append((event, payload))


def _orchestrator(session_maker, adapters, outbox=None):
    return PublishOrchestrator(
        session_maker,
        adapter_factory=lambda platform: adapters[platform],
        policy=NO_WAIT,
        notify_sender=outbox or Outbox(),
    )


async def _targets(session_maker, post_id):
    async with session_maker() as db:
        result = await db.execute(select(PublicationTarget).where(PublicationTarget.post_id == post_id))
        return {row.platform: row for row in result.scalars().all()}


def test_build_publish_text_appends_tags_that_fit():
    assert build_publish_text("Launch day", ["python", "#fastapi", " "], 280) == "Launch day #python #fastapi"
    # tags are appended in order and stop at the first one that would overflow
    assert build_publish_text("x" * 275, ["python", "ai"], 280) == "x" * 275
    assert build_publish_text("x" * 270, ["ai", "python"], 280) == "x" * 270 + " #ai"
    assert build_publish_text("  body  ", None, 280) == "body"


@pytest.mark.asyncio
async def test_one_platform_failing_does_not_block_the_other(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    await seed.connection("user-1", Platform.LINKEDIN)
    post = await seed.post("user-1", ["twitter", "linkedin"], tags=["launch"])
    adapters = {
        Platform.TWITTER: FakeAdapter(Platform.TWITTER),
        Platform.LINKEDIN: FakeAdapter(
            Platform.LINKEDIN,
            publish_outcomes=[PlatformRequestError("Publish failed: server error", status_code=500)],
        ),
    }
    outbox = Outbox()

    results = await _orchestrator(session_maker, adapters, outbox).publish_post("user-1", post.id)

    assert [item.platform for item in results] == ["twitter", "linkedin"]
    assert results[0].success is True
    assert results[0].platform_post_id.startswith("twitter-")
    assert results[1].success is False
    assert "server error" in results[1].error
    assert adapters[Platform.TWITTER].published[0].text == "Hello from the test suite #launch"
    assert adapters[Platform.LINKEDIN].published[0].author_id == "platform-user-1"

    targets = await _targets(session_maker, post.id)
    assert targets["twitter"].status == "published"
    assert targets["linkedin"].status == "failed"
    async with session_maker() as db:
        stored = await db.get(Post, post.id)
        assert stored.status == "published"
        assert stored.published_at is not None

    assert outbox.events[0][0] == "post.publish.completed"
    assert outbox.events[0][1]["status"] == "published"


@pytest.mark.asyncio
async def test_missing_connection_is_a_per_platform_failure(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter", "linkedin"])
    adapters = {Platform.TWITTER: FakeAdapter(Platform.TWITTER), Platform.LINKEDIN: FakeAdapter(Platform.LINKEDIN)}

    results = await _orchestrator(session_maker, adapters).publish_post("user-1", post.id)

    assert results[0].success is True
    assert results[1].success is False
    assert "linkedin" in results[1].error
    assert adapters[Platform.LINKEDIN].published == []


@pytest.mark.asyncio
async def test_all_platforms_failing_marks_post_failed_and_allows_retry(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapter = FakeAdapter(Platform.TWITTER, publish_outcomes=[PlatformRequestError("duplicate", status_code=403)])
    orchestrator = _orchestrator(session_maker, {Platform.TWITTER: adapter})

    first = await orchestrator.publish_post("user-1", post.id)
    assert first[0].success is False
    async with session_maker() as db:
        assert (await db.get(Post, post.id)).status == "failed"

    second = await orchestrator.publish_post("user-1", post.id)
    assert second[0].success is True
    assert second[0].target_id == first[0].target_id
    async with session_maker() as db:
        assert (await db.get(Post, post.id)).status == "published"


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_is_reported_not_raised(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapter = FakeAdapter(
        Platform.TWITTER,
        publish_outcomes=[RateLimitError("Publish failed: rate limited") for _ in range(3)],
    )

    results = await _orchestrator(session_maker, {Platform.TWITTER: adapter}).publish_post("user-1", post.id)

    assert len(adapter.published) == 3
    assert results[0].success is False
    assert "rate limited" in results[0].error


@pytest.mark.asyncio
async def test_unauthorized_publish_marks_connection_expired(session_maker, seed):
    connection = await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapter = FakeAdapter(Platform.TWITTER, publish_outcomes=[PlatformRequestError("Unauthorized", status_code=401)])

    results = await _orchestrator(session_maker, {Platform.TWITTER: adapter}).publish_post("user-1", post.id)

    assert results[0].success is False
    async with session_maker() as db:
        assert (await db.get(Connection, connection.id)).status == "expired"


@pytest.mark.asyncio
async def test_configuration_error_propagates_after_recording_outcomes(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    await seed.connection("user-1", Platform.LINKEDIN)
    post = await seed.post("user-1", ["twitter", "linkedin"])
    linkedin = FakeAdapter(Platform.LINKEDIN)

    def factory(platform):
        if platform is Platform.TWITTER:
            raise ConfigurationError("TWITTER_CLIENT_ID and TWITTER_CLIENT_SECRET must be configured")
        return linkedin

    orchestrator = PublishOrchestrator(session_maker, adapter_factory=factory, policy=NO_WAIT, notify_sender=Outbox())
    with pytest.raises(ConfigurationError):
        await orchestrator.publish_post("user-1", post.id)

    targets = await _targets(session_maker, post.id)
    assert targets["twitter"].status == "failed"
    assert targets["linkedin"].status == "published"


@pytest.mark.asyncio
async def test_notification_failure_does_not_change_result(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapters = {Platform.TWITTER: FakeAdapter(Platform.TWITTER)}

    results = await _orchestrator(session_maker, adapters, Outbox(fail=True)).publish_post("user-1", post.id)

    assert results[0].success is True


@pytest.mark.asyncio
async def test_publish_rejects_missing_thread_and_published_posts(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    orchestrator = _orchestrator(session_maker, {Platform.TWITTER: FakeAdapter(Platform.TWITTER)})
    published = await seed.post("user-1", ["twitter"], status="published")
    _, thread_posts = await seed.thread("user-1", ["one", "two"], ["twitter"])

    with pytest.raises(PostNotFoundError):
        await orchestrator.publish_post("user-1", "missing-post")
    with pytest.raises(PostNotFoundError):
        await orchestrator.publish_post("user-2", published.id)
    with pytest.raises(PublishStateError):
        await orchestrator.publish_post("user-1", published.id)
    with pytest.raises(PublishStateError):
        await orchestrator.publish_post("user-1", thread_posts[0].id)


@pytest.mark.asyncio
async def test_thread_publishes_in_order_as_reply_chain(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    thread, posts = await seed.thread("user-1", ["first", "second", "third"], ["twitter"])
    adapter = FakeAdapter(Platform.TWITTER)

    results = await _orchestrator(session_maker, {Platform.TWITTER: adapter}).publish_thread("user-1", thread.id)

    assert [item.post_id for item in results] == [post.id for post in posts]
    assert all(item.success for item in results)
    texts = [content.text for content in adapter.published]
    assert texts == ["first", "second", "third"]
    assert adapter.published[0].reply_to_id is None
    assert adapter.published[1].reply_to_id == results[0].results[0].platform_post_id
    assert adapter.published[2].reply_to_id == results[1].results[0].platform_post_id
    async with session_maker() as db:
        assert (await db.get(Thread, thread.id)).status == "published"


@pytest.mark.asyncio
async def test_thread_stops_after_first_failed_post(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    thread, posts = await seed.thread("user-1", ["first", "second", "third"], ["twitter"])
    chain = FakeAdapter(
        Platform.TWITTER,
        publish_outcomes=[None, PlatformRequestError("Publish failed: forbidden", status_code=403)],
    )

    results = await _orchestrator(session_maker, {Platform.TWITTER: chain}).publish_thread("user-1", thread.id)

    assert len(results) == 2
    assert results[0].success is True
    assert results[1].success is False
    assert [content.text for content in chain.published] == ["first", "second"]

    # the third post was never attempted, so no publication target exists for it
    assert await _targets(session_maker, posts[2].id) == {}
    async with session_maker() as db:
        assert (await db.get(Thread, thread.id)).status == "partial"
        assert (await db.get(Post, posts[2].id)).status == "draft"


@pytest.mark.asyncio
async def test_thread_on_platform_without_threads_fails_that_platform_only(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    await seed.connection("user-1", Platform.LINKEDIN)
    thread, _ = await seed.thread("user-1", ["first", "second"], ["twitter", "linkedin"])
    adapters = {Platform.TWITTER: FakeAdapter(Platform.TWITTER), Platform.LINKEDIN: FakeAdapter(Platform.LINKEDIN)}

    results = await _orchestrator(session_maker, adapters).publish_thread("user-1", thread.id)

    assert len(results) == 2
    first = {item.platform: item for item in results[0].results}
    assert first["twitter"].success is True
    assert first["linkedin"].error == "linkedin does not support threads"
    assert [item.platform for item in results[1].results] == ["twitter"]
    assert adapters[Platform.LINKEDIN].published == []
    assert len(adapters[Platform.TWITTER].published) == 2


@pytest.mark.asyncio
async def test_repost_requires_capability_before_any_call(session_maker, seed):
    await seed.connection("user-1", Platform.LINKEDIN)
    target = await seed.published_target("user-1", Platform.LINKEDIN, platform_post_id="urn:li:share:1")
    adapter = FakeAdapter(Platform.LINKEDIN)

    with pytest.raises(UnsupportedPlatformError):
        await _orchestrator(session_maker, {Platform.LINKEDIN: adapter}).repost("user-1", target.post_id, "linkedin")

    assert adapter.reposts == []


@pytest.mark.asyncio
async def test_repost_and_unrepost_on_twitter(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER, platform_user_id="42")
    target = await seed.published_target("user-1", Platform.TWITTER, platform_post_id="1850")
    adapter = FakeAdapter(Platform.TWITTER)
    orchestrator = _orchestrator(session_maker, {Platform.TWITTER: adapter})

    reposted = await orchestrator.repost("user-1", target.post_id, "twitter")
    undone = await orchestrator.unrepost("user-1", target.post_id, "twitter")

    assert reposted["reposted"] is True
    assert undone["reposted"] is False
    assert adapter.reposts == [("repost", "42", "1850"), ("unrepost", "42", "1850")]


@pytest.mark.asyncio
async def test_repost_of_unpublished_post_is_rejected(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])

    with pytest.raises(PublishStateError):
        await _orchestrator(session_maker, {Platform.TWITTER: FakeAdapter(Platform.TWITTER)}).repost(
            "user-1", post.id, "twitter"
        )


@pytest.mark.asyncio
async def test_delete_post_removes_from_platforms(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    target = await seed.published_target("user-1", Platform.TWITTER, platform_post_id="1850")
    adapter = FakeAdapter(Platform.TWITTER)

    outcomes = await _orchestrator(session_maker, {Platform.TWITTER: adapter}).delete_post("user-1", target.post_id)

    assert outcomes == [{"platform": "twitter", "success": True, "error": None}]
    assert adapter.deleted == ["1850"]
    async with session_maker() as db:
        assert (await db.get(Post, target.post_id)).status == "deleted"


@pytest.mark.asyncio
async def test_concurrent_retries_of_a_failed_post_publish_once(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapter = FakeAdapter(Platform.TWITTER, publish_outcomes=[PlatformRequestError("Publish failed", status_code=503)])
    orchestrator = _orchestrator(session_maker, {Platform.TWITTER: adapter})
    await orchestrator.publish_post("user-1", post.id)

    outcomes = await asyncio.gather(
        orchestrator.publish_post("user-1", post.id),
        orchestrator.publish_post("user-1", post.id),
        return_exceptions=True,
    )

    rejected = [item for item in outcomes if isinstance(item, PublishStateError)]
    completed = [item for item in outcomes if isinstance(item, list)]
    assert len(rejected) == 1
    assert len(completed) == 1
    assert completed[0][0].success is True
    # one failed first attempt plus exactly one successful retry
    assert len(adapter.published) == 2
    async with session_maker() as db:
        assert (await db.get(Post, post.id)).status == "published"


@pytest.mark.asyncio
async def test_concurrent_first_publish_of_a_draft_is_rejected_cleanly(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"])
    adapter = FakeAdapter(Platform.TWITTER)
    orchestrator = _orchestrator(session_maker, {Platform.TWITTER: adapter})

    outcomes = await asyncio.gather(
        orchestrator.publish_post("user-1", post.id),
        orchestrator.publish_post("user-1", post.id),
        return_exceptions=True,
    )

    assert sum(isinstance(item, PublishStateError) for item in outcomes) == 1
    assert sum(isinstance(item, list) for item in outcomes) == 1
    assert len(adapter.published) == 1
    assert len(await _targets(session_maker, post.id)) == 1


@pytest.mark.asyncio
async def test_post_already_being_published_is_rejected(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"], status="publishing")
    adapter = FakeAdapter(Platform.TWITTER)

    with pytest.raises(PublishStateError):
        await _orchestrator(session_maker, {Platform.TWITTER: adapter}).publish_post("user-1", post.id)

    assert adapter.published == []


@pytest.mark.asyncio
async def test_media_is_uploaded_separately_for_each_platform(session_maker, seed, media_dir):
    await seed.connection("user-1", Platform.TWITTER)
    await seed.connection("user-1", Platform.LINKEDIN, platform_user_id="li-person")
    (media_dir / "user-1").mkdir(parents=True)
    (media_dir / "user-1" / "one.png").write_bytes(b"png-one")
    (media_dir / "user-1" / "two.jpg").write_bytes(b"jpg-two")
    post = await seed.post("user-1", ["twitter", "linkedin"], media_paths=["user-1/one.png", "user-1/two.jpg"])
    adapters = {Platform.TWITTER: FakeAdapter(Platform.TWITTER), Platform.LINKEDIN: FakeAdapter(Platform.LINKEDIN)}

    results = await _orchestrator(session_maker, adapters).publish_post("user-1", post.id)

    assert all(item.success for item in results)
    assert adapters[Platform.TWITTER].published[0].media_ids == ["twitter-media-1", "twitter-media-2"]
    assert adapters[Platform.LINKEDIN].published[0].media_ids == ["linkedin-media-1", "linkedin-media-2"]
    assert adapters[Platform.LINKEDIN].uploads[0] == (b"png-one", "image/png", "li-person")
    assert adapters[Platform.TWITTER].uploads[1] == (b"jpg-two", "image/jpeg", "platform-user-1")
    # every platform has the images now, so the stored copies are gone
    assert not (media_dir / "user-1" / "one.png").exists()


@pytest.mark.asyncio
async def test_failed_media_upload_fails_only_that_platform_and_keeps_files(session_maker, seed, media_dir):
    await seed.connection("user-1", Platform.TWITTER)
    await seed.connection("user-1", Platform.LINKEDIN)
    (media_dir / "user-1").mkdir(parents=True)
    (media_dir / "user-1" / "one.png").write_bytes(b"png-one")
    post = await seed.post("user-1", ["twitter", "linkedin"], media_paths=["user-1/one.png"])
    adapters = {
        Platform.TWITTER: FakeAdapter(Platform.TWITTER),
        Platform.LINKEDIN: FakeAdapter(
            Platform.LINKEDIN,
            upload_outcomes=[PlatformRequestError("Image upload init failed: forbidden", status_code=403)],
        ),
    }

    results = await _orchestrator(session_maker, adapters).publish_post("user-1", post.id)

    assert results[0].success is True
    assert results[1].success is False
    assert "Image upload init failed" in results[1].error
    assert adapters[Platform.LINKEDIN].published == []
    assert (media_dir / "user-1" / "one.png").exists()


@pytest.mark.asyncio
async def test_missing_media_file_is_a_per_platform_failure(session_maker, seed):
    await seed.connection("user-1", Platform.TWITTER)
    post = await seed.post("user-1", ["twitter"], media_paths=["user-1/gone.png"])
    adapter = FakeAdapter(Platform.TWITTER)

    results = await _orchestrator(session_maker, {Platform.TWITTER: adapter}).publish_post("user-1", post.id)

    assert results[0].success is False
    assert "no longer exists" in results[0].error
    assert adapter.published == []


@pytest.mark.asyncio
async def test_scheduled_publish_runs_due_posts_only(session_maker, seed):
    now = datetime.now(timezone.utc)
    await seed.connection("user-1", Platform.TWITTER)
    due = await seed.post("user-1", ["twitter"], status="scheduled", scheduled_at=now - timedelta(minutes=5))
    unreachable = await seed.post("user-1", ["linkedin"], status="scheduled", scheduled_at=now - timedelta(minutes=1))
    future = await seed.post("user-1", ["twitter"], status="scheduled", scheduled_at=now + timedelta(hours=1))
    draft = await seed.post("user-1", ["twitter"])
    adapters = {Platform.TWITTER: FakeAdapter(Platform.TWITTER), Platform.LINKEDIN: FakeAdapter(Platform.LINKEDIN)}

    summary = await _orchestrator(session_maker, adapters).run_scheduled_publish(now=now)

    assert summary == {"processed": 2, "failed": 1}
    assert len(adapters[Platform.TWITTER].published) == 1
    async with session_maker() as db:
        assert (await db.get(Post, due.id)).status == "published"
        assert (await db.get(Post, unreachable.id)).status == "failed"
        assert (await db.get(Post, future.id)).status == "scheduled"
        assert (await db.get(Post, draft.id)).status == "draft"

    again = await _orchestrator(session_maker, adapters).run_scheduled_publish(now=now)
    assert again == {"processed": 0, "failed": 0}
