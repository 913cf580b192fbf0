"""Refresh token storage model for secure token rotation."""

import enum
import hashlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String

from refresh_rotation.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_token_value(token_value: str) -> str:
    """
    Hash an opaque refresh token value for storage.

    SHA-256 is appropriate here: refresh token values are high-entropy random
    strings, so neither salting nor a slow hash adds anything.
    """
    return hashlib.sha256(token_value.encode("utf-8")).hexdigest()


class TokenState(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RefreshToken(Base):
    """
    One issued refresh token, bound to a user and a device.

    Only the SHA-256 hash of the token value is stored. Apart from the one-time
    ``revoked_at``/``revoke_reason`` write, a row is never modified; it is
    deleted by the cleanup sweeper once expired or revoked.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True)
    token_hash = Column(String(64), unique=True, nullable=False)  # SHA-256 hex
    user_id = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(50), nullable=True)
    # Token this one replaced on rotation
    parent_id = Column(
        Integer,
        ForeignKey("refresh_tokens.id", ondelete="SET NULL"),
        nullable=True,
    )

    device_id = Column(String(100), nullable=True)
    device_name = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_refresh_tokens_user_expires", "user_id", "expires_at"),
        Index("ix_refresh_tokens_user_revoked", "user_id", "revoked_at"),
    )

    # Revoke reasons
    REASON_ROTATION = "rotation"
    REASON_LOGOUT = "logout"
    REASON_LOGOUT_ALL = "logout_all"
    REASON_REUSE_DETECTED = "reuse_detected"
    REASON_SESSION_LIMIT = "session_limit"

    def state_at(self, now: Optional[datetime] = None) -> TokenState:
        """
        Lifecycle state at ``now``.

        Expiry wins over revocation: an expired token reports EXPIRED whether or
        not it was revoked first.
        """
        if self.is_expired(now):
            return TokenState.EXPIRED
        if self.revoked_at is not None:
            return TokenState.REVOKED
        return TokenState.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state_at(now) is TokenState.ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # Expired from expires_at itself on, the same boundary as the store queries
        return (now or utcnow()) >= ensure_utc(self.expires_at)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def should_cleanup(self, now: Optional[datetime] = None) -> bool:
        """Expired or revoked tokens are eligible for deletion."""
        return self.is_expired(now) or self.is_revoked

    def __repr__(self):
        return (
            f"<RefreshToken(id={self.id}, user_id={self.user_id!r}, "
            f"revoked={self.is_revoked})>"
        )
