"""
Tests for session listing, logout and the per-user session limit.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from refresh_rotation.models.auth_audit import AuthAuditLog
from refresh_rotation.models.refresh_token import RefreshToken, ensure_utc, utcnow
from refresh_rotation.services.session_manager import SessionInfo, SessionManager
from refresh_rotation.services.token_issuer import DeviceContext, TokenIssuer


@pytest.fixture
def sessions(store, settings) -> SessionManager:
    return SessionManager(store, settings=settings)


class TestListSessions:
    @pytest.mark.asyncio
    async def test_lists_only_active_sessions_oldest_first(self, sessions, issuer, store):
        first = await issuer.issue("user-1", device=DeviceContext(device_name="Laptop"))
        second = await issuer.issue("user-1", device=DeviceContext(device_name="Phone"))
        revoked = await issuer.issue("user-1")
        await issuer.issue("user-2")
        await sessions.revoke(revoked.refresh_token)

        result = await sessions.list_sessions("user-1")

        assert [s.device_name for s in result] == ["Laptop", "Phone"]
        assert all(isinstance(s, SessionInfo) for s in result)
        assert result[0].expires_at.tzinfo is not None
        stored = await store.find_by_value(first.refresh_token)
        assert result[0].id == stored.id
        assert second.refresh_token not in repr(result)

    @pytest.mark.asyncio
    async def test_expired_sessions_are_hidden(self, store, issuer, settings):
        await issuer.issue("user-1")
        later = utcnow() + timedelta(days=8)
        manager = SessionManager(store, settings=settings, clock=lambda: later)
        assert await manager.list_sessions("user-1") == []


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_single_session(self, sessions, issuer, store):
        pair = await issuer.issue("user-1")
        other = await issuer.issue("user-1")

        assert await sessions.revoke(pair.refresh_token) is True

        stored = await store.find_by_value(pair.refresh_token)
        assert stored.revoked_at is not None
        assert stored.revoke_reason == RefreshToken.REASON_LOGOUT
        assert (await store.find_by_value(other.refresh_token)).is_active()

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, sessions, issuer, store):
        pair = await issuer.issue("user-1")
        assert await sessions.revoke(pair.refresh_token) is True
        first_revoked_at = ensure_utc((await store.find_by_value(pair.refresh_token)).revoked_at)

        assert await sessions.revoke(pair.refresh_token) is True

        await store.db.rollback()
        stored = await store.find_by_value(pair.refresh_token)
        assert ensure_utc(stored.revoked_at) == first_revoked_at

    @pytest.mark.asyncio
    async def test_revoke_unknown_token(self, sessions):
        assert await sessions.revoke("unknown-token") is False

    @pytest.mark.asyncio
    async def test_revoke_all(self, sessions, issuer, store, db_session):
        for _ in range(3):
            await issuer.issue("user-1")
        await issuer.issue("user-2")

        assert await sessions.revoke_all("user-1") == 3
        assert await store.find_active_by_user("user-1") == []
        assert len(await store.find_active_by_user("user-2")) == 1
        assert await sessions.revoke_all("user-1") == 0

        result = await db_session.execute(
            select(AuthAuditLog).where(AuthAuditLog.action == AuthAuditLog.ACTION_LOGOUT_ALL)
        )
        assert len(result.scalars().all()) == 2


class TestSessionLimit:
    @pytest.mark.asyncio
    async def test_oldest_sessions_are_revoked(self, store, settings):
        limited = settings.model_copy(update={"MAX_SESSIONS_PER_USER": 2})
        now = utcnow()
        values = []
        for minutes_ago in (30, 20, 10):
            issuer = TokenIssuer(store, settings=limited, clock=lambda m=minutes_ago: now - timedelta(minutes=m))
            values.append((await issuer.issue("user-1")).refresh_token)

        manager = SessionManager(store, settings=limited)
        assert await manager.enforce_session_limit("user-1") == 2

        oldest, middle, newest = [await store.find_by_value(v) for v in values]
        assert oldest.revoke_reason == RefreshToken.REASON_SESSION_LIMIT
        assert middle.revoke_reason == RefreshToken.REASON_SESSION_LIMIT
        assert newest.is_active()

    @pytest.mark.asyncio
    async def test_under_limit_revokes_nothing(self, sessions, issuer):
        await issuer.issue("user-1")
        assert await sessions.enforce_session_limit("user-1") == 0

    @pytest.mark.asyncio
    async def test_zero_disables_limit(self, store, issuer, settings):
        for _ in range(6):
            await issuer.issue("user-1")
        manager = SessionManager(store, settings=settings.model_copy(update={"MAX_SESSIONS_PER_USER": 0}))
        assert await manager.enforce_session_limit("user-1") == 0
