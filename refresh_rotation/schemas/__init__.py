from .auth import (
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
)
