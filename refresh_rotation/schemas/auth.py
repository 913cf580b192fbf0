from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class LoginRequest(BaseModel):
    """Credentials forwarded to the identity provider, plus optional device labels"""

    username: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=1, max_length=500)
    device_id: Optional[str] = Field(default=None, max_length=100)
    device_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip()
        return value


class RefreshRequest(BaseModel):
    """Request body for token refresh. The access token may already be expired."""

    refresh_token: str = Field(..., min_length=1, max_length=512)
    access_token: str = Field(..., min_length=1, max_length=4096)
    device_id: Optional[str] = Field(default=None, max_length=100)
    device_name: Optional[str] = Field(default=None, max_length=100)


class LogoutRequest(BaseModel):
    """Request body for logout with refresh token."""

    refresh_token: str = Field(..., min_length=1, max_length=512)
    all_devices: bool = False


class TokenPairResponse(BaseModel):
    """Response containing both access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiration in seconds")
    refresh_expires_at: datetime


class SessionResponse(BaseModel):
    """Response for a single session."""

    id: int
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    """Response for session list."""

    sessions: List[SessionResponse]
    total: int
