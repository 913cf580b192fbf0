"""
Refresh token rotation.

A refresh token moves from Active to Revoked exactly once, through rotation,
logout or replay defence. Expiry is a time predicate and is never written.

Presenting a token that is already revoked means it was rotated away earlier
and is being replayed, by an attacker or by a client retrying a rotation whose
response it never saw. Either way the user's sessions are treated as
compromised and every active token of that user is revoked.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from refresh_rotation.config import Settings, get_settings
from refresh_rotation.errors import (
    TokenExpired,
    TokenMismatch,
    TokenNotFound,
    TokenReuseDetected,
)
from refresh_rotation.models.auth_audit import AuthAuditLog
from refresh_rotation.models.refresh_token import (
    RefreshToken,
    TokenState,
    ensure_utc,
    utcnow,
)
from refresh_rotation.services.audit import AuditService
from refresh_rotation.services.token_issuer import (
    DeviceContext,
    TokenIssuer,
    TokenPair,
    decode_access_token,
)
from refresh_rotation.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class RotationEngine:
    """Validates presented refresh tokens and swaps them for new pairs."""

    def __init__(
        self,
        store: TokenStore,
        issuer: Optional[TokenIssuer] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.audit = audit or AuditService(store.db)
        self.issuer = issuer or TokenIssuer(store, settings=self.settings, clock=clock)

    async def rotate(
        self,
        refresh_token: str,
        access_token: str,
        device: Optional[DeviceContext] = None,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Implements rotation:
        1. Look up the refresh token by value
        2. Reject it if expired (nothing is revoked)
        3. If already revoked, revoke all of the user's sessions (replay)
        4. Check the access token belongs to the same user (its expiry is ignored)
        5. Revoke the old token and issue its replacement in one transaction

        Raises:
            TokenNotFound, TokenExpired, TokenMismatch, TokenReuseDetected:
                the token was rejected; callers show only the generic message
            TokenStoreError: the store failed; the old token is left untouched
        """
        device = device or DeviceContext()
        reuse: Optional[TokenReuseDetected] = None
        pair: Optional[TokenPair] = None

        async with self.store.transaction():
            stored = await self.store.find_by_value(refresh_token)
            if stored is None:
                logger.warning("Refresh attempted with an unknown refresh token")
                raise TokenNotFound()

            now = self.clock()
            state = stored.state_at(now)

            if state is TokenState.EXPIRED:
                logger.info(f"Expired refresh token presented for user {stored.user_id}")
                raise TokenExpired(user_id=stored.user_id)

            if state is TokenState.REVOKED:
                reuse = await self._revoke_after_reuse(stored, device)
            else:
                roles = self._verified_roles(access_token, stored)

                if not self.settings.ROTATE_ON_USE:
                    new_access, access_expires = self.issuer.create_access_token(
                        stored.user_id, roles, now=now
                    )
                    pair = TokenPair(
                        access_token=new_access,
                        refresh_token=refresh_token,
                        access_token_expires_at=access_expires,
                        refresh_token_expires_at=ensure_utc(stored.expires_at),
                    )
                elif not await self.store.revoke_if_active(
                    stored.id, now=now, reason=RefreshToken.REASON_ROTATION
                ):
                    # Lost a race with a concurrent rotation of the same token
                    reuse = await self._revoke_after_reuse(stored, device)
                else:
                    pair = await self.issuer.issue(
                        stored.user_id,
                        device=device.merged_over(stored),
                        roles=roles,
                        parent_id=stored.id,
                    )
                    self.audit.log(
                        action=AuthAuditLog.ACTION_TOKEN_REFRESH,
                        user_id=stored.user_id,
                        ip_address=device.ip_address,
                        user_agent=device.user_agent,
                        metadata={"session_id": stored.id},
                    )

        # Raised only after the cascade has committed
        if reuse is not None:
            raise reuse
        return pair

    def _verified_roles(self, access_token: str, stored: RefreshToken) -> list[str]:
        """Check the access token's subject and return its roles."""
        claims = decode_access_token(access_token, self.settings, verify_exp=False)
        if claims is None:
            logger.warning(f"Invalid access token presented with refresh token of user {stored.user_id}")
            raise TokenMismatch(user_id=stored.user_id)

        if str(claims["sub"]) != stored.user_id:
            logger.warning(
                f"Access token subject {claims['sub']} does not own refresh token "
                f"of user {stored.user_id}"
            )
            raise TokenMismatch(user_id=stored.user_id)

        roles = claims.get("roles") or []
        return [str(role) for role in roles]

    async def _revoke_after_reuse(
        self, stored: RefreshToken, device: DeviceContext
    ) -> TokenReuseDetected:
        # Audited below as token_reuse_detected, not as a logout
        count = await self.store.revoke_active_for_user(
            stored.user_id, now=self.clock(), reason=RefreshToken.REASON_REUSE_DETECTED
        )
        logger.warning(
            f"Refresh token reuse detected for user {stored.user_id} "
            f"(session {stored.id}). Revoked {count} active sessions."
        )
        self.audit.log(
            action=AuthAuditLog.ACTION_TOKEN_REUSE_DETECTED,
            user_id=stored.user_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=False,
            error_message="Revoked refresh token presented - possible token theft",
            metadata={"session_id": stored.id, "sessions_revoked": count},
        )
        return TokenReuseDetected(
            f"Refresh token {stored.id} reused", user_id=stored.user_id, revoked_count=count
        )
