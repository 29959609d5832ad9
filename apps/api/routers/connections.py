"""Platform connection router: OAuth connect/callback, listing and disconnect."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, get_auth_context
from routers.error_mapping import raise_http_error
from routers.rate_limit import rate_limit
from services.connect_flow import complete_connect, connections_page_url, initiate_connect
from services.connections import ConnectionStore
from services.connectors.capabilities import connector_capabilities
from services.connectors.registry import parse_platform, supported_platforms
from services.errors import (
    ConfigurationError,
    ConnectorError,
    OAuthStateError,
    TokenExchangeError,
    UnsupportedPlatformError,
)
from services.oauth_state import cookie_name

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def list_connections(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    summaries = await ConnectionStore(db).list_for_user(auth.user_id)
    return {"connections": [item.to_dict() for item in summaries]}


@router.get("/capabilities")
async def platform_capabilities():
    return {
        "platforms": [platform.value for platform in supported_platforms()],
        "capabilities": connector_capabilities(),
    }


@router.post("/{platform}/connect")
async def start_connect(
    platform: str,
    _rate_limit: None = Depends(rate_limit("connect_start", limit=30, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the authorization URL and set the encrypted transport cookie."""
    try:
        platform_key = parse_platform(platform)
        start = initiate_connect(auth.user_id, platform_key)
    except ConnectorError as exc:
        raise_http_error(exc)
    # The callback carries no session, so the user row must exist before it lands.
    await ensure_user_record(db, auth)
    await db.commit()

    response = JSONResponse({"authorization_url": start.redirect_url, "platform": platform_key.value})
    response.set_cookie(start.cookie_name, start.cookie_value, **start.cookie_attributes)
    return response


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    """
    Platform redirect target. Always answers with a redirect to the dashboard
    and always clears the transport cookie, on success and on failure.
    """
    try:
        platform_key = parse_platform(platform)
    except UnsupportedPlatformError:
        return RedirectResponse(connections_page_url(error="unsupported_platform"), status_code=302)

    name = cookie_name(platform_key.value)
    try:
        await complete_connect(
            db,
            None,
            platform_key,
            code=code,
            state=state,
            error=error,
            cookie_value=request.cookies.get(name),
        )
        target = connections_page_url(connected=platform_key.value)
    except OAuthStateError as exc:
        logger.warning("OAuth callback rejected platform=%s: %s", platform_key.value, exc)
        target = connections_page_url(error=exc.code)
    except TokenExchangeError as exc:
        logger.warning("OAuth token exchange failed platform=%s: %s", platform_key.value, exc)
        target = connections_page_url(error="token_exchange_failed")
    except ConfigurationError as exc:
        logger.error("OAuth callback misconfigured platform=%s: %s", platform_key.value, exc)
        target = connections_page_url(error="configuration_error")
    except ConnectorError as exc:
        logger.warning("OAuth callback failed platform=%s: %s", platform_key.value, exc)
        target = connections_page_url(error="connection_failed")
    except Exception:
        logger.exception("OAuth callback crashed platform=%s", platform_key.value)
        await db.rollback()
        target = connections_page_url(error="connection_failed")

    response = RedirectResponse(target, status_code=302)
    response.delete_cookie(name, path="/")
    return response


@router.delete("/{platform}")
async def disconnect_platform(
    platform: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        platform_key = parse_platform(platform)
    except ConnectorError as exc:
        raise_http_error(exc)
    disconnected = await ConnectionStore(db).disconnect(auth.user_id, platform_key)
    return {"platform": platform_key.value, "disconnected": disconnected}
