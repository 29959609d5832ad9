from datetime import datetime, timedelta, timezone

import pytest

from models.connection import Connection
from services.connections import ConnectionStore
from services.connectors.types import Platform, RefreshTokenState, TokenBundle
from services.errors import ConfigurationError, ConnectionNotFoundError, RateLimitError, TokenRefreshError
from services.retry import RetryPolicy
from services.token_refresh import (
    get_valid_access_token,
    is_expired,
    needs_refresh,
    refresh_connection,
    refresh_expiring_connections,
)

NO_WAIT = RetryPolicy(max_retries=2, base_delay=0.0)


class RefreshingAdapter:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def refresh_tokens(self, refresh_token):
        self.calls.append(refresh_token)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _fresh_bundle(access="at-fresh", refresh="rt-fresh"):
    return TokenBundle(
        access_token=access,
        refresh_token=refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
        refresh_token_state=RefreshTokenState.PRESENT if refresh else RefreshTokenState.ABSENT,
    )


def _past():
    return datetime.now(timezone.utc) - timedelta(minutes=5)


def test_is_expired_handles_missing_and_naive_values():
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    assert is_expired(Connection(expires_at=None), now) is False
    assert is_expired(Connection(expires_at=datetime(2026, 10, 18, 11, 59)), now) is True
    assert is_expired(Connection(expires_at=datetime(2026, 10, 18, 12, 1, tzinfo=timezone.utc)), now) is False


def test_needs_refresh_covers_platform_rejected_tokens():
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    later = datetime(2026, 10, 18, 13, 0, tzinfo=timezone.utc)

    assert needs_refresh(Connection(status="active", refresh_token_state="present", expires_at=later), now) is False
    assert needs_refresh(Connection(status="expired", refresh_token_state="present", expires_at=later), now) is True
    assert needs_refresh(Connection(status="expired", refresh_token_state="absent", expires_at=later), now) is False


@pytest.mark.asyncio
async def test_valid_token_is_returned_without_refresh(session_maker, seed):
    connection = await seed.connection(
        "user-1",
        Platform.TWITTER,
        access_token="at-live",
        refresh_token="rt",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    adapter = RefreshingAdapter()

    async with session_maker() as db:
        token = await get_valid_access_token(ConnectionStore(db), connection, adapter, policy=NO_WAIT)

    assert token == "at-live"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_use(session_maker, seed):
    connection = await seed.connection(
        "user-1", Platform.TWITTER, access_token="at-old", refresh_token="rt-old", expires_at=_past()
    )
    adapter = RefreshingAdapter(RateLimitError("slow"), _fresh_bundle())

    async with session_maker() as db:
        token = await get_valid_access_token(ConnectionStore(db), connection, adapter, policy=NO_WAIT)

    assert token == "at-fresh"
    assert adapter.calls == ["rt-old", "rt-old"]
    async with session_maker() as db:
        store = ConnectionStore(db)
        stored = await store.get_by_id(connection.id)
        assert store.decrypt_refresh_token(stored) == "rt-fresh"


@pytest.mark.asyncio
async def test_rejected_refresh_marks_connection_revoked(session_maker, seed):
    connection = await seed.connection(
        "user-1", Platform.TWITTER, refresh_token="rt-dead", expires_at=_past()
    )
    adapter = RefreshingAdapter(TokenRefreshError("invalid_grant"))

    async with session_maker() as db:
        with pytest.raises(TokenRefreshError):
            await refresh_connection(ConnectionStore(db), connection, adapter, NO_WAIT)

    async with session_maker() as db:
        stored = await db.get(Connection, connection.id)
        assert stored.status == "revoked"
        assert "invalid_grant" in stored.last_error


@pytest.mark.asyncio
async def test_expired_without_refresh_token_marks_expired(session_maker, seed):
    connection = await seed.connection("user-1", Platform.TWITTER, expires_at=_past())

    async with session_maker() as db:
        with pytest.raises(ConnectionNotFoundError):
            await get_valid_access_token(ConnectionStore(db), connection, RefreshingAdapter(), policy=NO_WAIT)

    async with session_maker() as db:
        assert (await db.get(Connection, connection.id)).status == "expired"


@pytest.mark.asyncio
async def test_sweep_refreshes_only_connections_inside_window(session_maker, seed):
    soon = datetime.now(timezone.utc) + timedelta(minutes=10)
    later = datetime.now(timezone.utc) + timedelta(days=2)
    await seed.connection("user-1", Platform.TWITTER, refresh_token="rt-1", expires_at=soon)
    await seed.connection("user-2", Platform.TWITTER, refresh_token="rt-2", expires_at=soon)
    await seed.connection("user-3", Platform.TWITTER, refresh_token="rt-3", expires_at=later)
    await seed.connection("user-4", Platform.TWITTER, expires_at=soon)

    adapter = RefreshingAdapter(_fresh_bundle(), TokenRefreshError("invalid_grant"))
    summary = await refresh_expiring_connections(
        session_maker,
        window_minutes=60,
        adapter_factory=lambda platform: adapter,
        policy=NO_WAIT,
    )

    assert summary == {"refreshed": 1, "failed": 1}
    assert sorted(adapter.calls) == ["rt-1", "rt-2"]


@pytest.mark.asyncio
async def test_sweep_propagates_configuration_errors(session_maker, seed):
    await seed.connection(
        "user-1",
        Platform.TWITTER,
        refresh_token="rt-1",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )

    def broken_factory(platform):
        raise ConfigurationError("TWITTER_CLIENT_ID and TWITTER_CLIENT_SECRET must be configured")

    with pytest.raises(ConfigurationError):
        await refresh_expiring_connections(session_maker, window_minutes=60, adapter_factory=broken_factory)


@pytest.mark.asyncio
async def test_platform_rejected_token_is_refreshed_before_its_expiry(session_maker, seed):
    connection = await seed.connection(
        "user-1",
        Platform.TWITTER,
        access_token="at-rejected",
        refresh_token="rt-live",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    async with session_maker() as db:
        await ConnectionStore(db).mark_expired(connection.id, "Publish failed: Unauthorized")
    adapter = RefreshingAdapter(_fresh_bundle())

    async with session_maker() as db:
        store = ConnectionStore(db)
        stale = await store.get_by_id(connection.id)
        token = await get_valid_access_token(store, stale, adapter, policy=NO_WAIT)

    assert token == "at-fresh"
    assert adapter.calls == ["rt-live"]
    async with session_maker() as db:
        assert (await db.get(Connection, connection.id)).status == "active"


@pytest.mark.asyncio
async def test_platform_rejected_token_without_refresh_token_is_used_as_is(session_maker, seed):
    connection = await seed.connection(
        "user-1",
        Platform.TWITTER,
        access_token="at-only",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    async with session_maker() as db:
        await ConnectionStore(db).mark_expired(connection.id, "Unauthorized")
    adapter = RefreshingAdapter()

    async with session_maker() as db:
        store = ConnectionStore(db)
        token = await get_valid_access_token(store, await store.get_by_id(connection.id), adapter, policy=NO_WAIT)

    assert token == "at-only"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_sweep_includes_platform_expired_connections(session_maker, seed):
    later = datetime.now(timezone.utc) + timedelta(days=2)
    rejected = await seed.connection("user-1", Platform.TWITTER, refresh_token="rt-rejected", expires_at=later)
    revoked = await seed.connection("user-2", Platform.TWITTER, refresh_token="rt-revoked", expires_at=later)
    no_refresh = await seed.connection("user-3", Platform.TWITTER, expires_at=later)
    async with session_maker() as db:
        store = ConnectionStore(db)
        await store.mark_expired(rejected.id, "Unauthorized")
        await store.mark_revoked(revoked.id, "invalid_grant")
        await store.mark_expired(no_refresh.id, "Unauthorized")

    adapter = RefreshingAdapter(_fresh_bundle())
    summary = await refresh_expiring_connections(
        session_maker,
        window_minutes=60,
        adapter_factory=lambda platform: adapter,
        policy=NO_WAIT,
    )

    assert summary == {"refreshed": 1, "failed": 0}
    assert adapter.calls == ["rt-rejected"]
    async with session_maker() as db:
        assert (await db.get(Connection, rejected.id)).status == "active"
