"""PublicationTarget model: one (post, platform) publish attempt."""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PublicationStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class PublicationTarget(Base):
    __tablename__ = "publication_targets"
    __table_args__ = (UniqueConstraint("post_id", "platform", name="uq_publication_targets_post_platform"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    post_id = Column(String, ForeignKey("posts.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    connection_id = Column(String, ForeignKey("connections.id"), nullable=True)
    platform_post_id = Column(String, nullable=True, index=True)
    platform_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default=PublicationStatus.PENDING.value, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    post = relationship("Post", back_populates="targets")
    snapshots = relationship(
        "MetricSnapshot",
        back_populates="target",
        cascade="all, delete-orphan",
        order_by="MetricSnapshot.observed_at",
    )
