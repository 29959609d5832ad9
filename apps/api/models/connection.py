"""Connection model for OAuth tokens."""

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Connection(Base):
    """OAuth connection for one (user, platform) pair. Tokens are stored encrypted."""

    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("user_id", "platform", name="uq_connections_user_platform"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)  # twitter, linkedin
    platform_user_id = Column(String, nullable=True, index=True)
    platform_handle = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    refresh_token_state = Column(String, nullable=False, default="absent")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default="active", index=True)  # active, expired, revoked
    last_error = Column(Text, nullable=True)
    connected_at = Column(DateTime(timezone=True), server_default=func.now())
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="connections")
