"""Audit trail for session events."""

import json
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from refresh_rotation.models.auth_audit import AuthAuditLog


class AuditService:
    """Service for logging authentication events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuthAuditLog:
        """
        Record an event in the current session.

        Nothing is flushed here; the entry is written by the caller's next
        commit, so it lands in the same transaction as the change it describes.
        """
        log_entry = AuthAuditLog(
            user_id=user_id,
            action=action,
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:500] if user_agent else None,
            success=success,
            error_message=error_message,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.db.add(log_entry)
        return log_entry
