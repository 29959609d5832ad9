"""MetricSnapshot model. Append-only; never updated after insert."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class MetricSnapshot(Base):
    """One timestamped observation of a publication's engagement counters."""

    __tablename__ = "metric_snapshots"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    publication_target_id = Column(String, ForeignKey("publication_targets.id"), nullable=False, index=True)
    observed_at = Column(DateTime(timezone=True), nullable=False, index=True)
    # NULL means the platform does not expose the counter; 0 is an observed value.
    impressions = Column(Integer, nullable=True)
    likes = Column(Integer, nullable=True)
    replies = Column(Integer, nullable=True)
    reposts = Column(Integer, nullable=True)
    clicks = Column(Integer, nullable=True)
    profile_visits = Column(Integer, nullable=True)
    follows_from_post = Column(Integer, nullable=True)
    engagement_rate = Column(Float, nullable=True)
    hours_since_publish = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    target = relationship("PublicationTarget", back_populates="snapshots")
