"""MetricFetchLog model used to account for daily platform API budget."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class MetricFetchLog(Base):
    __tablename__ = "metric_fetch_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    publication_target_id = Column(String, ForeignKey("publication_targets.id"), nullable=True)
    status = Column(String, nullable=False)  # success, failed
    calls_used = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
