"""Request-scoped dependencies shared by the auth routes."""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from refresh_rotation.config import Settings, get_settings
from refresh_rotation.services.identity import IdentityProvider
from refresh_rotation.services.token_issuer import decode_access_token

security = HTTPBearer(auto_error=False)


def get_client_info(request: Request) -> tuple[str, str]:
    """Extract client IP and User-Agent from request."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip_address = real_ip.strip()
        elif request.client:
            ip_address = request.client.host
        else:
            ip_address = "unknown"

    user_agent = request.headers.get("User-Agent", "unknown")

    return ip_address, user_agent


def get_identity_provider(request: Request) -> IdentityProvider:
    """The identity provider installed on ``app.state`` at startup."""
    provider = getattr(request.app.state, "identity_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Login is not available",
        )
    return provider


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """Dependency returning the user id of a valid, unexpired access token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = decode_access_token(credentials.credentials, settings, verify_exp=True)
    if payload is None:
        raise credentials_exception

    return str(payload["sub"])
