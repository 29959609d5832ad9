"""Platform adapter contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class Platform(str, Enum):
    TWITTER = "twitter"
    LINKEDIN = "linkedin"


class RefreshTokenState(str, Enum):
    """Whether a connection holds a refresh token, and whether it ever could."""

    NOT_APPLICABLE = "not_applicable"  # platform never issues one
    ABSENT = "absent"  # platform issues them but none was captured
    PRESENT = "present"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    code_verifier: Optional[str] = None


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    refresh_token_state: RefreshTokenState = RefreshTokenState.ABSENT

    def __repr__(self) -> str:
        return (
            f"TokenBundle(access_token=***, refresh_token_state={self.refresh_token_state.value}, "
            f"expires_at={self.expires_at!r}, scopes={self.scopes!r})"
        )


@dataclass(frozen=True)
class PlatformUser:
    platform_user_id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class PostContent:
    text: str
    author_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    media_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PublishedPost:
    platform_post_id: str
    platform_url: str
    published_at: datetime


@dataclass(frozen=True)
class MetricsObservation:
    """Raw engagement counters. ``None`` means the platform does not expose it."""

    observed_at: datetime
    impressions: Optional[int] = None
    likes: Optional[int] = None
    replies: Optional[int] = None
    reposts: Optional[int] = None
    clicks: Optional[int] = None
    profile_visits: Optional[int] = None
    follows_from_post: Optional[int] = None
