from .auth_audit import AuthAuditLog
from .refresh_token import RefreshToken, TokenState, hash_token_value

__all__ = [
    "AuthAuditLog",
    "RefreshToken",
    "TokenState",
    "hash_token_value",
]
