"""
Connection store.

Owns the persisted OAuth connection per (user, platform). Tokens are encrypted
before they reach the database and never leave this module on API-facing read
paths: ``list_for_user`` returns a projection without any token columns.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.connection import Connection
from services.clock import as_utc, utc_now
from services.connectors.types import (
    ConnectionStatus,
    Platform,
    PlatformUser,
    RefreshTokenState,
    TokenBundle,
)
from services.crypto import CredentialCipher, get_cipher
from services.errors import ConnectionNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionSummary:
    """Token-free view of a connection for API responses."""

    id: str
    platform: str
    status: str
    platform_user_id: Optional[str] = None
    platform_handle: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    refresh_status: str = RefreshTokenState.ABSENT.value
    expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, connection: Connection) -> "ConnectionSummary":
        return cls(
            id=connection.id,
            platform=connection.platform,
            status=connection.status,
            platform_user_id=connection.platform_user_id,
            platform_handle=connection.platform_handle,
            display_name=connection.display_name,
            avatar_url=connection.avatar_url,
            scopes=list(connection.scopes or []),
            refresh_status=connection.refresh_token_state,
            expires_at=as_utc(connection.expires_at),
            connected_at=as_utc(connection.connected_at),
            last_synced_at=as_utc(connection.last_synced_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("expires_at", "connected_at", "last_synced_at"):
            value = payload.get(key)
            payload[key] = value.isoformat() if value else None
        return payload


class ConnectionStore:
    def __init__(self, db: AsyncSession, cipher: Optional[CredentialCipher] = None) -> None:
        self.db = db
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def get_by_platform(self, user_id: str, platform: Platform) -> Optional[Connection]:
        result = await self.db.execute(
            select(Connection).where(
                Connection.user_id == user_id,
                Connection.platform == Platform(platform).value,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, connection_id: str) -> Optional[Connection]:
        result = await self.db.execute(select(Connection).where(Connection.id == connection_id))
        return result.scalar_one_or_none()

    async def get_active(self, user_id: str, platform: Platform) -> Connection:
        """Return the active connection or raise ConnectionNotFoundError."""
        connection = await self.get_by_platform(user_id, platform)
        if connection is None:
            raise ConnectionNotFoundError(f"No {Platform(platform).value} connection for this user")
        if connection.status == ConnectionStatus.REVOKED.value:
            raise ConnectionNotFoundError(
                f"{Platform(platform).value} connection was revoked; reconnect the account"
            )
        return connection

    def _apply_tokens(self, connection: Connection, tokens: TokenBundle, *, keep_refresh: bool) -> None:
        connection.access_token_encrypted = self.cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            connection.refresh_token_encrypted = self.cipher.encrypt(tokens.refresh_token)
            connection.refresh_token_state = RefreshTokenState.PRESENT.value
        elif not keep_refresh or connection.refresh_token_encrypted is None:
            connection.refresh_token_encrypted = None
            connection.refresh_token_state = tokens.refresh_token_state.value
        connection.expires_at = tokens.expires_at
        if tokens.scopes:
            connection.scopes = list(dict.fromkeys(tokens.scopes))

    async def upsert(
        self,
        user_id: str,
        platform: Platform,
        tokens: TokenBundle,
        profile: Optional[PlatformUser] = None,
    ) -> Connection:
        """
        Create or overwrite the connection for (user, platform) and mark it active.

        A reconnect replaces every token column; a refresh token missing from the
        new bundle is not carried over from the old row.
        """
        platform = Platform(platform)
        connection = await self.get_by_platform(user_id, platform)
        if connection is None:
            connection = Connection(id=str(uuid.uuid4()), user_id=user_id, platform=platform.value, scopes=[])
            self.db.add(connection)

        self._populate(connection, tokens, profile)
        try:
            await self.db.commit()
        except DBIntegrityError:
            # Concurrent callback for the same pair won the insert; overwrite it.
            await self.db.rollback()
            connection = await self.get_by_platform(user_id, platform)
            if connection is None:
                raise
            self._populate(connection, tokens, profile)
            await self.db.commit()

        await self.db.refresh(connection)
        logger.info("Connection upserted user=%s platform=%s", user_id, platform.value)
        return connection

    def _populate(self, connection: Connection, tokens: TokenBundle, profile: Optional[PlatformUser]) -> None:
        self._apply_tokens(connection, tokens, keep_refresh=False)
        connection.scopes = list(dict.fromkeys(tokens.scopes))
        connection.status = ConnectionStatus.ACTIVE.value
        connection.last_error = None
        connection.connected_at = utc_now()
        if profile is not None:
            connection.platform_user_id = profile.platform_user_id
            connection.platform_handle = profile.username
            connection.display_name = profile.display_name
            connection.avatar_url = profile.avatar_url

    async def update_tokens(self, connection_id: str, tokens: TokenBundle) -> Connection:
        """Persist refreshed tokens. Last writer wins under concurrent refreshes."""
        connection = await self.get_by_id(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        self._apply_tokens(connection, tokens, keep_refresh=True)
        connection.status = ConnectionStatus.ACTIVE.value
        connection.last_error = None
        await self.db.commit()
        await self.db.refresh(connection)
        return connection

    async def _set_status(self, connection_id: str, status: ConnectionStatus, reason: Optional[str]) -> None:
        connection = await self.get_by_id(connection_id)
        if connection is None:
            return
        platform = connection.platform
        connection.status = status.value
        connection.last_error = reason
        await self.db.commit()
        logger.warning(
            "Connection %s marked %s platform=%s reason=%s",
            connection_id,
            status.value,
            platform,
            reason,
        )

    async def mark_revoked(self, connection_id: str, reason: Optional[str] = None) -> None:
        await self._set_status(connection_id, ConnectionStatus.REVOKED, reason)

    async def mark_expired(self, connection_id: str, reason: Optional[str] = None) -> None:
        await self._set_status(connection_id, ConnectionStatus.EXPIRED, reason)

    async def disconnect(self, user_id: str, platform: Platform) -> bool:
        """
        Revoke the (user, platform) connection.

        The row is kept so publication history still links to it; stored tokens
        are wiped. Returns False when there was nothing to disconnect.
        """
        connection = await self.get_by_platform(user_id, platform)
        if connection is None:
            return False
        connection.status = ConnectionStatus.REVOKED.value
        connection.access_token_encrypted = ""
        connection.refresh_token_encrypted = None
        connection.last_error = "disconnected by user"
        await self.db.commit()
        logger.info("Connection disconnected user=%s platform=%s", user_id, Platform(platform).value)
        return True

    async def list_for_user(self, user_id: str) -> List[ConnectionSummary]:
        result = await self.db.execute(
            select(Connection).where(Connection.user_id == user_id).order_by(Connection.platform)
        )
        return [ConnectionSummary.from_model(row) for row in result.scalars().all()]

    def decrypt_access_token(self, connection: Connection) -> str:
        if not connection.access_token_encrypted:
            raise ConnectionNotFoundError(f"{connection.platform} connection has no access token")
        return self.cipher.decrypt(connection.access_token_encrypted)

    def decrypt_refresh_token(self, connection: Connection) -> Optional[str]:
        if not connection.refresh_token_encrypted:
            return None
        return self.cipher.decrypt(connection.refresh_token_encrypted)
