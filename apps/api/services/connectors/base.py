"""
Base platform adapter providing the shared OAuth 2.0 and HTTP plumbing.

Every adapter call that crosses the network funnels through ``_request`` so
platform rate-limit signalling is translated into ``RateLimitError`` in one
place and the orchestration layer never branches on platform identity.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Type

import httpx

from config import oauth_client_credentials, settings
from services.connectors.types import (
    AuthorizationRequest,
    MetricsObservation,
    Platform,
    PlatformUser,
    PostContent,
    PublishedPost,
    RefreshTokenState,
    TokenBundle,
)
from services.errors import (
    ConfigurationError,
    ConnectorError,
    PlatformRequestError,
    RateLimitError,
)

logger = logging.getLogger(__name__)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def rate_limit_error_from_response(response: httpx.Response, message: str) -> RateLimitError:
    """Build a RateLimitError carrying the retry hints a platform sent back."""
    headers = response.headers
    retry_after = _parse_int(headers.get("retry-after"))
    return RateLimitError(
        message,
        retry_after=float(retry_after) if retry_after is not None else None,
        remaining=_parse_int(headers.get("x-rate-limit-remaining")),
        reset=_parse_int(headers.get("x-rate-limit-reset")),
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for key in ("error_description", "error", "detail", "message", "title"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase or f"HTTP {response.status_code}"


class BasePlatformAdapter(ABC):
    platform: Platform
    requires_pkce: bool = False
    issues_refresh_tokens: bool = True

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        configured_id, configured_secret = oauth_client_credentials(self.platform.value)
        self.client_id = client_id if client_id is not None else configured_id
        self.client_secret = client_secret if client_secret is not None else configured_secret
        self._transport = transport
        self._timeout = timeout if timeout is not None else float(settings.PLATFORM_REQUEST_TIMEOUT_SECONDS)

    def _require_client_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            prefix = self.platform.value.upper()
            raise ConfigurationError(f"{prefix}_CLIENT_ID and {prefix}_CLIENT_SECRET must be configured")

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        failure_message: str,
        error_cls: Type[ConnectorError] = PlatformRequestError,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Perform one HTTP round trip with the adapter's transport and timeout.

        Raises:
            RateLimitError: on HTTP 429
            error_cls: on any other non-2xx response or transport failure
        """
        try:
            async with self._http_client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s request to %s failed: %s", self.platform.value, url, exc)
            raise self._build_error(error_cls, f"{failure_message}: {exc}") from exc

        if response.status_code == 429:
            raise rate_limit_error_from_response(response, f"{failure_message}: rate limited")
        if response.is_error:
            raise self._build_error(
                error_cls,
                f"{failure_message}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response

    def _json(
        self,
        response: httpx.Response,
        failure_message: str,
        error_cls: Type[ConnectorError] = PlatformRequestError,
    ) -> Dict[str, Any]:
        """Decode a 2xx body, raising ``error_cls`` unless it is a JSON object."""
        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("%s returned a non-JSON body from %s", self.platform.value, response.request.url)
            raise self._build_error(
                error_cls,
                f"{failure_message}: response was not valid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise self._build_error(
                error_cls,
                f"{failure_message}: response was not a JSON object",
                status_code=response.status_code,
            )
        return payload

    @staticmethod
    def _build_error(
        error_cls: Type[ConnectorError],
        message: str,
        status_code: Optional[int] = None,
    ) -> ConnectorError:
        if issubclass(error_cls, PlatformRequestError):
            return error_cls(message, status_code=status_code)
        return error_cls(message)

    def _token_bundle(
        self,
        payload: Mapping[str, Any],
        error_cls: Type[ConnectorError] = PlatformRequestError,
    ) -> TokenBundle:
        access_token = payload.get("access_token")
        if not access_token:
            raise self._build_error(error_cls, f"{self.platform.value} token response did not include access_token")

        refresh_token = payload.get("refresh_token") or None
        if refresh_token:
            refresh_state = RefreshTokenState.PRESENT
        elif self.issues_refresh_tokens:
            refresh_state = RefreshTokenState.ABSENT
        else:
            refresh_state = RefreshTokenState.NOT_APPLICABLE

        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

        raw_scope = payload.get("scope") or ""
        scopes = [item for item in str(raw_scope).replace(",", " ").split() if item]

        return TokenBundle(
            access_token=str(access_token),
            refresh_token=str(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            scopes=list(dict.fromkeys(scopes)),
            refresh_token_state=refresh_state,
        )

    @abstractmethod
    def get_auth_url(self, state: str, redirect_uri: str) -> AuthorizationRequest:
        raise NotImplementedError

    @abstractmethod
    async def exchange_code_for_tokens(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenBundle:
        raise NotImplementedError

    @abstractmethod
    async def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        raise NotImplementedError

    @abstractmethod
    async def get_current_user(self, access_token: str) -> PlatformUser:
        raise NotImplementedError

    @abstractmethod
    async def publish(self, access_token: str, content: PostContent) -> PublishedPost:
        raise NotImplementedError

    @abstractmethod
    async def delete_post(self, access_token: str, platform_post_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def fetch_post_metrics(self, access_token: str, platform_post_id: str) -> MetricsObservation:
        raise NotImplementedError

    @abstractmethod
    async def upload_media(
        self,
        access_token: str,
        data: bytes,
        mime_type: str,
        *,
        author_id: Optional[str] = None,
    ) -> str:
        """Upload one image and return the platform's media id for it."""
        raise NotImplementedError
