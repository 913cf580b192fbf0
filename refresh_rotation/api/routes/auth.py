"""Authentication routes with JWT access tokens and refresh token rotation."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from refresh_rotation.api.deps import (
    get_client_info,
    get_current_user_id,
    get_identity_provider,
)
from refresh_rotation.config import Settings, get_settings
from refresh_rotation.db.database import get_db
from refresh_rotation.errors import RotationError, StoreUnavailable, TokenStoreError
from refresh_rotation.models.auth_audit import AuthAuditLog
from refresh_rotation.models.refresh_token import utcnow
from refresh_rotation.schemas.auth import (
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
)
from refresh_rotation.services.audit import AuditService
from refresh_rotation.services.identity import IdentityProvider
from refresh_rotation.services.rotation import RotationEngine
from refresh_rotation.services.session_manager import SessionManager
from refresh_rotation.services.token_issuer import DeviceContext, TokenIssuer, TokenPair
from refresh_rotation.services.token_store import TokenStore

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _store_error(e: TokenStoreError) -> HTTPException:
    # Never leak raw DB error text.
    logger.error(f"Token store failure: {e}")
    if isinstance(e, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable. Please retry.",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal error while handling the session",
    )


def _token_pair_response(tokens: TokenPair, settings: Settings) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        refresh_expires_at=tokens.refresh_token_expires_at,
    )


# === Auth Endpoints ===


@router.post("/login", response_model=TokenPairResponse)
async def login(
    login_data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """
    Login with credentials checked by the identity provider.

    Starts a new session: the oldest sessions are revoked once the user is at
    MAX_SESSIONS_PER_USER, then a fresh token pair is issued.
    """
    ip_address, user_agent = get_client_info(request)
    store = TokenStore(db)
    audit = AuditService(db)

    identity = await provider.authenticate(login_data.username, login_data.password)

    try:
        if identity is None:
            async with store.transaction():
                audit.log(
                    action=AuthAuditLog.ACTION_LOGIN,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                    error_message="Invalid credentials",
                )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

        device = DeviceContext(
            device_id=login_data.device_id,
            device_name=login_data.device_name,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        sessions = SessionManager(store, audit=audit, settings=settings)
        issuer = TokenIssuer(store, settings=settings)

        # Limit enforcement, the new token and the audit entry commit together
        async with store.transaction():
            await sessions.enforce_session_limit(identity.user_id)
            tokens = await issuer.issue(identity.user_id, device=device, roles=identity.roles)
            audit.log(
                action=AuthAuditLog.ACTION_LOGIN,
                user_id=identity.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"device_id": device.device_id} if device.device_id else None,
            )
    except TokenStoreError as e:
        raise _store_error(e) from e

    logger.info(f"User {identity.user_id} logged in from {ip_address}")
    return _token_pair_response(tokens, settings)


@router.post("/refresh", response_model=TokenPairResponse)
async def refresh_tokens(
    refresh_data: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Exchange a refresh token for a new token pair.

    The access token issued with it must accompany the request; it may
    already be expired. Every rejection returns the same 401 so callers
    cannot tell an unknown token from a revoked or expired one.
    """
    ip_address, user_agent = get_client_info(request)
    device = DeviceContext(
        device_id=refresh_data.device_id,
        device_name=refresh_data.device_name,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    engine = RotationEngine(TokenStore(db), settings=settings)

    try:
        tokens = await engine.rotate(
            refresh_data.refresh_token,
            refresh_data.access_token,
            device=device,
        )
    except RotationError as e:
        logger.info(f"Refresh rejected ({e.__class__.__name__}) from {ip_address}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.public_message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except TokenStoreError as e:
        raise _store_error(e) from e

    return _token_pair_response(tokens, settings)


@router.post("/logout")
async def logout(
    logout_data: LogoutRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Logout by revoking the refresh token.

    With ``all_devices`` every active session of the token's user is revoked.
    Unknown or already revoked tokens still get a success response.
    """
    store = TokenStore(db)
    sessions = SessionManager(store, settings=settings)

    try:
        if logout_data.all_devices:
            token = await store.find_by_value(logout_data.refresh_token)
            # Only a live session may end the user's other sessions
            if token is not None and token.is_active(utcnow()):
                await sessions.revoke_all(token.user_id)
        else:
            await sessions.revoke(logout_data.refresh_token)
    except TokenStoreError as e:
        raise _store_error(e) from e

    return {"message": "Logged out successfully"}


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Get list of active sessions for the current user.

    Each session represents a device/browser with an active refresh token.
    """
    sessions = SessionManager(TokenStore(db), settings=settings)
    try:
        active = await sessions.list_sessions(user_id)
    except TokenStoreError as e:
        raise _store_error(e) from e

    session_responses = [SessionResponse.model_validate(session) for session in active]
    return SessionListResponse(
        sessions=session_responses,
        total=len(session_responses),
    )
