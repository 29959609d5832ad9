import os

os.environ["ENCRYPTION_KEY"] = "6a" * 32
os.environ["JWT_SECRET"] = "test-session-secret-with-enough-entropy"
os.environ["ADMIN_SECRET"] = "test-admin-secret"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./publisher_test.db")

import uuid
from datetime import datetime, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db, get_session_factory
from main import app
from models.post import Post
from models.publication_target import PublicationTarget
from models.thread import Thread
from models.user import User
from routers import rate_limit
from services.connections import ConnectionStore
from services.connectors.types import Platform, PlatformUser, RefreshTokenState, TokenBundle
from services import notifications
from services.crypto import get_cipher
from services.session_token import create_session_token


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def notification_outbox(monkeypatch):
    """Capture queued notifications instead of talking to Redis."""
    sent = []
    monkeypatch.setattr(notifications, "enqueue_notification", lambda event, payload: sent.append((event, payload)))
    return sent


@pytest.fixture(autouse=True)
def media_dir(tmp_path, monkeypatch):
    """Store uploaded post media under the test's temporary directory."""
    root = tmp_path / "media"
    monkeypatch.setattr(settings, "MEDIA_UPLOAD_DIR", str(root))
    return root


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "publisher.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)


def auth_header_for(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


class Seeder:
    """Inserts fixture rows through the same code paths the services use."""

    def __init__(self, session_maker):
        self.session_maker = session_maker
        self.cipher = get_cipher()

    async def user(self, user_id: str) -> User:
        async with self.session_maker() as db:
            user = await db.get(User, user_id)
            if user is None:
                user = User(id=user_id, email=f"{user_id}@example.com")
                db.add(user)
                await db.commit()
            return user

    async def connection(
        self,
        user_id: str,
        platform: Platform,
        *,
        access_token: str = "access-token",
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        platform_user_id: str = "platform-user-1",
    ):
        await self.user(user_id)
        tokens = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scopes=["tweet.read", "tweet.write"],
            refresh_token_state=RefreshTokenState.PRESENT if refresh_token else RefreshTokenState.ABSENT,
        )
        profile = PlatformUser(platform_user_id=platform_user_id, username="creator", display_name="Creator")
        async with self.session_maker() as db:
            return await ConnectionStore(db, self.cipher).upsert(user_id, platform, tokens, profile)

    async def post(
        self,
        user_id: str,
        platforms: List[str],
        *,
        body: str = "Hello from the test suite",
        tags: Optional[List[str]] = None,
        status: str = "draft",
        thread_id: Optional[str] = None,
        thread_position: Optional[int] = None,
        media_paths: Optional[List[str]] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Post:
        await self.user(user_id)
        async with self.session_maker() as db:
            post = Post(
                id=str(uuid.uuid4()),
                user_id=user_id,
                body=body,
                tags=tags or [],
                platforms=platforms,
                media_paths=media_paths or [],
                status=status,
                scheduled_at=scheduled_at,
                thread_id=thread_id,
                thread_position=thread_position,
            )
            db.add(post)
            await db.commit()
            return post

    async def thread(self, user_id: str, bodies: List[str], platforms: List[str]):
        await self.user(user_id)
        async with self.session_maker() as db:
            thread = Thread(id=str(uuid.uuid4()), user_id=user_id, title="test thread")
            db.add(thread)
            await db.commit()
        posts = []
        for position, body in enumerate(bodies):
            posts.append(
                await self.post(user_id, platforms, body=body, thread_id=thread.id, thread_position=position)
            )
        return thread, posts

    async def published_target(
        self,
        user_id: str,
        platform: Platform,
        *,
        platform_post_id: str,
        published_at: Optional[datetime] = None,
        post_id: Optional[str] = None,
    ) -> PublicationTarget:
        if post_id is None:
            post = await self.post(user_id, [platform.value], status="published")
            post_id = post.id
        async with self.session_maker() as db:
            target = PublicationTarget(
                id=str(uuid.uuid4()),
                post_id=post_id,
                user_id=user_id,
                platform=platform.value,
                platform_post_id=platform_post_id,
                platform_url=f"https://example.com/{platform_post_id}",
                status="published",
                published_at=published_at or datetime.now(timezone.utc),
            )
            db.add(target)
            await db.commit()
            return target


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)
