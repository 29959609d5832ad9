"""Domain exceptions for platform connections, publishing and metrics."""

from __future__ import annotations

from typing import Optional


class ConnectorError(RuntimeError):
    """Base class for platform connection pipeline failures."""


class ConfigurationError(ConnectorError):
    """Secret material or platform credentials are missing or malformed."""


class IntegrityError(ConnectorError):
    """Ciphertext failed authentication (tampered, truncated or foreign key)."""


class OAuthStateError(ConnectorError):
    """Transport cookie missing, expired, undecodable or nonce mismatch."""

    def __init__(self, message: str, code: str = "session_expired") -> None:
        super().__init__(message)
        self.code = code


class TokenExchangeError(ConnectorError):
    """Platform rejected an authorization code exchange."""


class TokenRefreshError(ConnectorError):
    """Platform rejected a refresh token; the connection must be revoked."""


class PlatformRequestError(ConnectorError):
    """Non rate-limit failure returned by a platform API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ConnectorError):
    """Platform signalled a rate limit. Transient; retried by the retry policy."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        remaining: Optional[int] = None,
        reset: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.remaining = remaining
        self.reset = reset


class QuotaExceededError(ConnectorError):
    """Daily call budget would be exceeded by the requested batch."""

    def __init__(self, message: str, *, used: int, requested: int, budget: int) -> None:
        super().__init__(message)
        self.used = used
        self.requested = requested
        self.budget = budget


class ConnectionNotFoundError(ConnectorError):
    """No usable connection exists for a (user, platform) pair."""


class PublishStateError(ConnectorError):
    """Post is missing or not in a publishable state."""


class UnsupportedPlatformError(ConnectorError):
    """No adapter is registered, or the adapter lacks the requested capability."""


class PostNotFoundError(PublishStateError):
    """Post or thread does not exist for the calling user."""


class MediaError(ConnectorError):
    """Media reference is unknown, foreign to the user or of an unsupported type."""
