"""OAuth connect flow: authorization redirect and callback completion."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.connection import Connection
from services.connections import ConnectionStore
from services.connectors.base import BasePlatformAdapter
from services.connectors.registry import get_adapter, parse_platform
from services.connectors.types import Platform
from services.crypto import CredentialCipher
from services.errors import OAuthStateError
from services.notifications import CONNECTION_CREATED, Sender, notify_best_effort
from services.oauth_state import (
    OAuthTransportState,
    cookie_name,
    decode_transport_state,
    encode_transport_state,
    transport_cookie_attributes,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectStart:
    redirect_url: str
    cookie_name: str
    cookie_value: str
    cookie_attributes: Dict[str, Any]


def callback_redirect_uri(platform: Platform) -> str:
    return f"{settings.API_PUBLIC_URL.rstrip('/')}/connections/{Platform(platform).value}/callback"


def connections_page_url(**params: str) -> str:
    base = f"{settings.APP_URL.rstrip('/')}/dashboard/connections"
    if not params:
        return base
    return f"{base}?{urlencode(params)}"


def initiate_connect(
    user_id: str,
    platform: Platform,
    *,
    adapter: Optional[BasePlatformAdapter] = None,
    cipher: Optional[CredentialCipher] = None,
    redirect_uri: Optional[str] = None,
) -> ConnectStart:
    """
    Build the platform authorization redirect and the transport cookie to set.

    The redirect URI is stored in the cookie so the token exchange sends the
    exact value the platform saw on the authorization request.
    """
    platform = parse_platform(platform)
    adapter = adapter or get_adapter(platform)
    redirect_uri = redirect_uri or callback_redirect_uri(platform)

    transport = OAuthTransportState.issue(platform.value, user_id, redirect_uri)
    auth_request = adapter.get_auth_url(transport.state, redirect_uri)
    if auth_request.code_verifier:
        transport = OAuthTransportState(
            state=transport.state,
            redirect_uri=transport.redirect_uri,
            platform=transport.platform,
            user_id=transport.user_id,
            code_verifier=auth_request.code_verifier,
            issued_at=transport.issued_at,
        )

    logger.info("OAuth connect started user=%s platform=%s", user_id, platform.value)
    return ConnectStart(
        redirect_url=auth_request.url,
        cookie_name=cookie_name(platform.value),
        cookie_value=encode_transport_state(transport, cipher),
        cookie_attributes=transport_cookie_attributes(),
    )


async def complete_connect(
    db: AsyncSession,
    user_id: Optional[str],
    platform: Platform,
    *,
    code: Optional[str],
    state: Optional[str],
    cookie_value: Optional[str],
    error: Optional[str] = None,
    adapter: Optional[BasePlatformAdapter] = None,
    cipher: Optional[CredentialCipher] = None,
    notify_sender: Optional[Sender] = None,
) -> Connection:
    """
    Validate the callback against the transport cookie and persist the connection.

    Raises:
        OAuthStateError: platform error, missing code, missing/expired cookie or
            nonce mismatch. ``code`` carries the value for the error redirect.
        TokenExchangeError: the platform rejected the authorization code
    """
    platform = parse_platform(platform)
    if error:
        raise OAuthStateError(f"{platform.value} returned an OAuth error: {error}", code=error)

    transport = decode_transport_state(cookie_value, cipher=cipher)
    if transport.platform != platform.value:
        raise OAuthStateError("OAuth session belongs to a different platform", code="invalid_state")
    if not state or not hmac.compare_digest(transport.state.encode("utf-8"), state.encode("utf-8")):
        raise OAuthStateError("OAuth state mismatch", code="invalid_state")
    if user_id and not hmac.compare_digest(transport.user_id.encode("utf-8"), user_id.encode("utf-8")):
        raise OAuthStateError("OAuth session belongs to a different user", code="invalid_state")
    if not code:
        raise OAuthStateError("OAuth callback is missing the authorization code", code="invalid_state")
    user_id = transport.user_id

    adapter = adapter or get_adapter(platform)
    tokens = await adapter.exchange_code_for_tokens(code, transport.redirect_uri, transport.code_verifier)
    profile = await adapter.get_current_user(tokens.access_token)

    connection = await ConnectionStore(db, cipher).upsert(user_id, platform, tokens, profile)
    notify_best_effort(
        CONNECTION_CREATED,
        {"user_id": user_id, "platform": platform.value, "connection_id": connection.id},
        sender=notify_sender,
    )
    return connection
