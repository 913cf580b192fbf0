"""Auth audit log model for security event tracking."""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from refresh_rotation.db.database import Base


class AuthAuditLog(Base):
    """
    Stores session-related events for security auditing.

    Users live in the external identity provider, so ``user_id`` is a plain
    string rather than a foreign key.
    """

    __tablename__ = "auth_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)  # login, logout, token_refresh, etc.
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)  # Additional context as JSON
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        Index("ix_auth_audit_user_action", "user_id", "action"),
    )

    # Action constants
    ACTION_LOGIN = "login"
    ACTION_LOGOUT = "logout"
    ACTION_LOGOUT_ALL = "logout_all"
    ACTION_TOKEN_REFRESH = "token_refresh"
    ACTION_TOKEN_REUSE_DETECTED = "token_reuse_detected"
    ACTION_SESSION_LIMIT = "session_limit"

    def __repr__(self):
        return f"<AuthAuditLog(id={self.id}, user_id={self.user_id!r}, action='{self.action}', success={self.success})>"
