"""Translate domain exceptions into HTTP responses."""

from typing import NoReturn

from fastapi import HTTPException

from services.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    ConnectorError,
    IntegrityError,
    OAuthStateError,
    MediaError,
    PostNotFoundError,
    PublishStateError,
    QuotaExceededError,
    RateLimitError,
    TokenExchangeError,
    TokenRefreshError,
    UnsupportedPlatformError,
)


def raise_http_error(exc: ConnectorError) -> NoReturn:
    if isinstance(exc, QuotaExceededError):
        raise HTTPException(
            status_code=429,
            detail={
                "message": str(exc),
                "used": exc.used,
                "requested": exc.requested,
                "budget": exc.budget,
            },
        ) from exc
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
        raise HTTPException(status_code=429, detail=str(exc), headers=headers) from exc
    if isinstance(exc, MediaError):
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if isinstance(exc, PostNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, PublishStateError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, UnsupportedPlatformError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, ConnectionNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (OAuthStateError, TokenExchangeError, TokenRefreshError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, (ConfigurationError, IntegrityError)):
        raise HTTPException(status_code=500, detail="Server credential configuration error.") from exc
    raise HTTPException(status_code=502, detail=str(exc)) from exc
