"""Access token freshness: lazy refresh before use and a scheduled sweep."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.connection import Connection
from services.clock import as_utc, utc_now
from services.connections import ConnectionStore
from services.connectors.base import BasePlatformAdapter
from services.connectors.registry import get_adapter
from services.connectors.types import ConnectionStatus, RefreshTokenState
from services.errors import ConfigurationError, ConnectionNotFoundError, IntegrityError, TokenRefreshError
from services.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str], BasePlatformAdapter]


def is_expired(connection: Connection, now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(connection.expires_at)
    if expires_at is None:
        return False
    return expires_at <= (now or utc_now())


def needs_refresh(connection: Connection, now: Optional[datetime] = None) -> bool:
    """Past expiry, or rejected by the platform while a refresh token is on hand."""
    if is_expired(connection, now):
        return True
    return (
        connection.status == ConnectionStatus.EXPIRED.value
        and connection.refresh_token_state == RefreshTokenState.PRESENT.value
    )


async def refresh_connection(
    store: ConnectionStore,
    connection: Connection,
    adapter: BasePlatformAdapter,
    policy: Optional[RetryPolicy] = None,
) -> Connection:
    """
    Exchange the stored refresh token for a new access token.

    Raises:
        TokenRefreshError: the platform rejected the refresh token; the
            connection is marked revoked before the error propagates.
        ConnectionNotFoundError: there is no refresh token to use; the
            connection is marked expired.
    """
    refresh_token = store.decrypt_refresh_token(connection)
    if not refresh_token:
        await store.mark_expired(connection.id, "access token expired and no refresh token is stored")
        raise ConnectionNotFoundError(f"{connection.platform} access token expired; reconnect the account")

    try:
        tokens = await with_retry(
            lambda: adapter.refresh_tokens(refresh_token),
            policy,
            label=f"{connection.platform} token refresh",
        )
    except TokenRefreshError as exc:
        await store.mark_revoked(connection.id, str(exc))
        raise

    logger.info("Refreshed access token connection=%s platform=%s", connection.id, connection.platform)
    return await store.update_tokens(connection.id, tokens)


async def get_valid_access_token(
    store: ConnectionStore,
    connection: Connection,
    adapter: BasePlatformAdapter,
    *,
    policy: Optional[RetryPolicy] = None,
    now: Optional[datetime] = None,
) -> str:
    """Decrypted access token, refreshed first when it has expired."""
    if needs_refresh(connection, now):
        connection = await refresh_connection(store, connection, adapter, policy)
    return store.decrypt_access_token(connection)


async def refresh_expiring_connections(
    session_factory: async_sessionmaker,
    *,
    window_minutes: Optional[int] = None,
    adapter_factory: AdapterFactory = get_adapter,
    policy: Optional[RetryPolicy] = None,
) -> Dict[str, int]:
    """
    Refresh connections whose tokens expire inside the window, plus those a
    platform already rejected as expired. Revoked connections are left alone.
    """
    window = settings.TOKEN_REFRESH_WINDOW_MINUTES if window_minutes is None else window_minutes
    cutoff = utc_now() + timedelta(minutes=window)

    async with session_factory() as db:
        result = await db.execute(
            select(Connection.id).where(
                Connection.refresh_token_state == RefreshTokenState.PRESENT.value,
                or_(
                    Connection.status == ConnectionStatus.EXPIRED.value,
                    and_(
                        Connection.status == ConnectionStatus.ACTIVE.value,
                        Connection.expires_at.is_not(None),
                        Connection.expires_at <= cutoff,
                    ),
                ),
            )
        )
        connection_ids = [row[0] for row in result.all()]

    summary = {"refreshed": 0, "failed": 0}
    for connection_id in connection_ids:
        async with session_factory() as db:
            outcome = await _refresh_one(db, connection_id, adapter_factory, policy)
        summary["refreshed" if outcome else "failed"] += 1

    if connection_ids:
        logger.info(
            "Token refresh sweep finished refreshed=%s failed=%s",
            summary["refreshed"],
            summary["failed"],
        )
    return summary


async def _refresh_one(
    db: AsyncSession,
    connection_id: str,
    adapter_factory: AdapterFactory,
    policy: Optional[RetryPolicy],
) -> bool:
    store = ConnectionStore(db)
    connection = await store.get_by_id(connection_id)
    if connection is None:
        return False
    try:
        await refresh_connection(store, connection, adapter_factory(connection.platform), policy)
    except (ConfigurationError, IntegrityError):
        raise
    except Exception as exc:
        logger.warning("Token refresh failed connection=%s: %s", connection_id, exc)
        return False
    return True


def run_token_refresh_sweep_job() -> Dict[str, int]:
    """RQ worker entrypoint for the expiring-token sweep."""
    return asyncio.run(refresh_expiring_connections(async_session_maker))
