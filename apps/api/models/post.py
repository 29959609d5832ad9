"""Post model for logical (platform independent) content."""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PostStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    DELETED = "deleted"


PUBLISHABLE_STATUSES = {PostStatus.DRAFT.value, PostStatus.SCHEDULED.value, PostStatus.FAILED.value}


class Post(Base):
    """One logical post fanned out to several platforms."""

    __tablename__ = "posts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    thread_id = Column(String, ForeignKey("threads.id"), nullable=True, index=True)
    thread_position = Column(Integer, nullable=True)
    body = Column(Text, nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    platforms = Column(JSON, nullable=False, default=list)
    media_paths = Column(JSON, nullable=False, default=list)  # relative to MEDIA_UPLOAD_DIR
    status = Column(String, nullable=False, default=PostStatus.DRAFT.value, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="posts")
    thread = relationship("Thread", back_populates="posts")
    targets = relationship("PublicationTarget", back_populates="post", cascade="all, delete-orphan")
