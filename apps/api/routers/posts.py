"""Posts router: drafts, threads, publishing, reposts and metrics."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import get_db, get_session_factory
from models.post import Post, PostStatus
from models.thread import Thread
from routers.auth_scope import AuthContext, ensure_user_record, get_auth_context
from routers.error_mapping import raise_http_error
from routers.rate_limit import rate_limit
from services.clock import as_utc
from services.connectors.registry import parse_platform
from services.errors import ConnectorError, MediaError, PostNotFoundError
from services.job_queue import enqueue_post_metrics_refresh
from services.media import image_extension, media_root, new_media_path, validate_media_paths
from services.metrics_collector import MetricsCollector, latest_snapshots_for_post, snapshot_to_dict
from services.publishing import PublishOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


def _normalize_platforms(value: List[str]) -> List[str]:
    normalized: List[str] = []
    for item in value:
        try:
            platform = parse_platform(item).value
        except ConnectorError as exc:
            raise ValueError(str(exc)) from exc
        if platform not in normalized:
            normalized.append(platform)
    return normalized


class PostCreateRequest(BaseModel):
    body: str = Field(min_length=1)
    platforms: List[str] = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)
    media_paths: List[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None

    @field_validator("platforms")
    @classmethod
    def _known_platforms(cls, value: List[str]) -> List[str]:
        return _normalize_platforms(value)


class ThreadPostInput(BaseModel):
    body: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)
    media_paths: List[str] = Field(default_factory=list)


class ThreadCreateRequest(BaseModel):
    title: Optional[str] = None
    platforms: List[str] = Field(min_length=1)
    posts: List[ThreadPostInput] = Field(min_length=1)

    @field_validator("platforms")
    @classmethod
    def _known_platforms(cls, value: List[str]) -> List[str]:
        return _normalize_platforms(value)


def _post_payload(post: Post) -> dict:
    return {
        "id": post.id,
        "status": post.status,
        "body": post.body,
        "tags": list(post.tags or []),
        "platforms": list(post.platforms or []),
        "thread_id": post.thread_id,
        "thread_position": post.thread_position,
        "media_paths": list(post.media_paths or []),
        "scheduled_at": as_utc(post.scheduled_at).isoformat() if post.scheduled_at else None,
        "published_at": as_utc(post.published_at).isoformat() if post.published_at else None,
    }


@router.post("")
async def create_post(
    request: PostCreateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        media_paths = validate_media_paths(auth.user_id, request.media_paths)
    except MediaError as exc:
        raise_http_error(exc)
    scheduled_at = as_utc(request.scheduled_at)
    await ensure_user_record(db, auth)
    post = Post(
        id=str(uuid.uuid4()),
        user_id=auth.user_id,
        body=request.body,
        tags=request.tags,
        platforms=request.platforms,
        media_paths=media_paths,
        scheduled_at=scheduled_at,
        status=PostStatus.SCHEDULED.value if scheduled_at else PostStatus.DRAFT.value,
    )
    db.add(post)
    await db.commit()
    return _post_payload(post)


@router.post("/media")
async def upload_media(
    file: UploadFile = File(...),
    auth: AuthContext = Depends(get_auth_context),
):
    """Store one image for later attachment to a post. Returns its media path."""
    try:
        extension = image_extension(file.filename or "", file.content_type or "")
    except MediaError as exc:
        await file.close()
        raise_http_error(exc)

    relative_path = new_media_path(auth.user_id, extension)
    destination = media_root() / relative_path
    destination.parent.mkdir(parents=True, exist_ok=True)
    max_bytes = int(settings.MEDIA_MAX_UPLOAD_BYTES)

    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_bytes:
                    out.close()
                    destination.unlink(missing_ok=True)
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                    )
                out.write(chunk)
    finally:
        await file.close()

    logger.info("Stored media user=%s path=%s bytes=%s", auth.user_id, relative_path, total_size)
    return {"media_path": relative_path, "size_bytes": total_size}


@router.post("/threads")
async def create_thread(
    request: ThreadCreateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        item_media = [validate_media_paths(auth.user_id, item.media_paths) for item in request.posts]
    except MediaError as exc:
        raise_http_error(exc)
    await ensure_user_record(db, auth)
    thread = Thread(id=str(uuid.uuid4()), user_id=auth.user_id, title=request.title)
    db.add(thread)
    posts = []
    for position, item in enumerate(request.posts):
        post = Post(
            id=str(uuid.uuid4()),
            user_id=auth.user_id,
            thread_id=thread.id,
            thread_position=position,
            body=item.body,
            tags=item.tags,
            platforms=request.platforms,
            media_paths=item_media[position],
            status=PostStatus.DRAFT.value,
        )
        db.add(post)
        posts.append(post)
    await db.commit()
    return {"id": thread.id, "title": thread.title, "posts": [_post_payload(post) for post in posts]}


@router.post("/threads/{thread_id}/publish")
async def publish_thread(
    thread_id: str,
    _rate_limit: None = Depends(rate_limit("publish", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        results = await PublishOrchestrator(session_factory).publish_thread(auth.user_id, thread_id)
    except ConnectorError as exc:
        raise_http_error(exc)
    return {"thread_id": thread_id, "posts": [item.to_dict() for item in results]}


@router.post("/{post_id}/publish")
async def publish_post(
    post_id: str,
    _rate_limit: None = Depends(rate_limit("publish", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        results = await PublishOrchestrator(session_factory).publish_post(auth.user_id, post_id)
    except ConnectorError as exc:
        raise_http_error(exc)
    return {
        "post_id": post_id,
        "published": sum(1 for item in results if item.success),
        "failed": sum(1 for item in results if not item.success),
        "results": [item.to_dict() for item in results],
    }


@router.post("/{post_id}/repost/{platform}")
async def repost(
    post_id: str,
    platform: str,
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        return await PublishOrchestrator(session_factory).repost(auth.user_id, post_id, platform)
    except ConnectorError as exc:
        raise_http_error(exc)


@router.delete("/{post_id}/repost/{platform}")
async def unrepost(
    post_id: str,
    platform: str,
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        return await PublishOrchestrator(session_factory).unrepost(auth.user_id, post_id, platform)
    except ConnectorError as exc:
        raise_http_error(exc)


@router.delete("/{post_id}")
async def delete_post(
    post_id: str,
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        results = await PublishOrchestrator(session_factory).delete_post(auth.user_id, post_id)
    except ConnectorError as exc:
        raise_http_error(exc)
    return {"post_id": post_id, "results": results}


@router.post("/{post_id}/metrics/refresh")
async def refresh_post_metrics(
    post_id: str,
    enqueue: bool = Query(default=False),
    _rate_limit: None = Depends(rate_limit("metrics_refresh", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if enqueue:
        job = enqueue_post_metrics_refresh(auth.user_id, post_id)
        return {"queued": True, "job_id": job.id}
    try:
        return await MetricsCollector(session_factory).refresh_post(auth.user_id, post_id)
    except ConnectorError as exc:
        raise_http_error(exc)


@router.get("/{post_id}/metrics")
async def post_metrics(
    post_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Post.id).where(Post.id == post_id, Post.user_id == auth.user_id))
    if result.scalar_one_or_none() is None:
        raise_http_error(PostNotFoundError("Post not found"))
    latest = await latest_snapshots_for_post(db, post_id)
    return {
        "post_id": post_id,
        "metrics": {platform: snapshot_to_dict(snapshot) for platform, snapshot in latest.items()},
    }
