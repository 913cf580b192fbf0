"""Device/session listing and revocation."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from refresh_rotation.config import Settings, get_settings
from refresh_rotation.models.auth_audit import AuthAuditLog
from refresh_rotation.models.refresh_token import RefreshToken, ensure_utc, utcnow
from refresh_rotation.services.audit import AuditService
from refresh_rotation.services.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    """One active session (refresh token) as shown to its user."""
    id: int
    device_id: Optional[str]
    device_name: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_token(cls, token: RefreshToken) -> "SessionInfo":
        return cls(
            id=token.id,
            device_id=token.device_id,
            device_name=token.device_name,
            ip_address=token.ip_address,
            user_agent=token.user_agent,
            created_at=ensure_utc(token.created_at),
            expires_at=ensure_utc(token.expires_at),
        )


class SessionManager:
    """Lists a user's active sessions and revokes one or all of them."""

    def __init__(
        self,
        store: TokenStore,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit or AuditService(store.db)
        self.settings = settings or get_settings()
        self.clock = clock

    async def list_sessions(self, user_id: str) -> list[SessionInfo]:
        tokens = await self.store.find_active_by_user(user_id, now=self.clock())
        return [SessionInfo.from_token(token) for token in tokens]

    async def revoke(
        self,
        token_value: str,
        reason: str = RefreshToken.REASON_LOGOUT,
    ) -> bool:
        """
        Revoke a single refresh token (single-device logout).

        Idempotent: an already revoked token counts as success and keeps its
        original revoked_at.

        Returns:
            True if the token exists, False if the value is unknown
        """
        async with self.store.transaction():
            token = await self.store.find_by_value(token_value)
            if token is None:
                return False

            if token.is_revoked:
                return True

            revoked = await self.store.revoke_if_active(token.id, now=self.clock(), reason=reason)
            if revoked:
                self.audit.log(
                    action=AuthAuditLog.ACTION_LOGOUT,
                    user_id=token.user_id,
                    metadata={"session_id": token.id, "reason": reason},
                )
        return True

    async def revoke_all(
        self,
        user_id: str,
        reason: str = RefreshToken.REASON_LOGOUT_ALL,
    ) -> int:
        """
        Revoke every active token of a user ("log out everywhere").

        Returns:
            Number of tokens revoked
        """
        async with self.store.transaction():
            count = await self.store.revoke_active_for_user(user_id, now=self.clock(), reason=reason)
            self.audit.log(
                action=AuthAuditLog.ACTION_LOGOUT_ALL,
                user_id=user_id,
                metadata={"sessions_revoked": count, "reason": reason},
            )
        logger.info(f"Revoked {count} active sessions for user {user_id} (reason={reason})")
        return count

    async def enforce_session_limit(self, user_id: str) -> int:
        """
        Make room for one more session under MAX_SESSIONS_PER_USER.

        The oldest active sessions are revoked, not deleted; deletion is left
        to the cleanup sweeper.

        Returns:
            Number of sessions revoked
        """
        limit = self.settings.MAX_SESSIONS_PER_USER
        if limit <= 0:
            return 0

        now = self.clock()
        revoked = 0
        async with self.store.transaction():
            active = await self.store.find_active_by_user(user_id, now=now)
            excess = len(active) - limit + 1
            for token in active[:max(excess, 0)]:
                if await self.store.revoke_if_active(
                    token.id, now=now, reason=RefreshToken.REASON_SESSION_LIMIT
                ):
                    revoked += 1
            if revoked:
                self.audit.log(
                    action=AuthAuditLog.ACTION_SESSION_LIMIT,
                    user_id=user_id,
                    metadata={"sessions_revoked": revoked, "limit": limit},
                )

        if revoked:
            logger.info(f"Session limit {limit} reached for user {user_id}; revoked {revoked} oldest")
        return revoked
