"""Issuance of access/refresh token pairs."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import uuid4

from jose import JWTError, jwt

from refresh_rotation.config import Settings, get_settings
from refresh_rotation.errors import GenerationCollision, StoreIntegrityError
from refresh_rotation.models.refresh_token import RefreshToken, hash_token_value, utcnow
from refresh_rotation.services.token_store import TokenStore

logger = logging.getLogger(__name__)

# 48 random bytes = 384 bits of entropy
REFRESH_TOKEN_BYTES = 48
MAX_GENERATION_ATTEMPTS = 3


def generate_token_value() -> str:
    """Generate an opaque, URL-safe refresh token value."""
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


@dataclass
class TokenPair:
    """Represents a pair of access and refresh tokens."""
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass
class DeviceContext:
    """Session-identifying metadata captured when a token is issued."""
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def merged_over(self, previous: RefreshToken) -> "DeviceContext":
        """Fill fields this context leaves empty from a previously issued token."""
        return DeviceContext(
            device_id=self.device_id or previous.device_id,
            device_name=self.device_name or previous.device_name,
            ip_address=self.ip_address or previous.ip_address,
            user_agent=self.user_agent or previous.user_agent,
        )


def decode_access_token(
    token: str,
    settings: Optional[Settings] = None,
    verify_exp: bool = True,
) -> Optional[dict]:
    """
    Verify an access token and return its claims if valid.

    Signature, issuer, audience and the ``type`` claim are always checked.
    ``verify_exp=False`` skips only the lifetime check, which lets an expired
    access token identify its user during a refresh.

    Returns:
        Token payload dict if valid, None otherwise
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_exp": verify_exp},
        )
    except JWTError:
        return None

    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload


class TokenIssuer:
    """Creates access tokens and persists new refresh tokens."""

    def __init__(
        self,
        store: TokenStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_token_value,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.token_factory = token_factory

    def create_access_token(
        self,
        user_id: str,
        roles: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> tuple[str, datetime]:
        """
        Create a signed JWT access token.

        Returns:
            Tuple of (token, expiration_datetime)
        """
        now = now or self.clock()
        expire = now + timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        to_encode = {
            "sub": str(user_id),
            "exp": expire,
            "iat": now,
            "iss": self.settings.JWT_ISSUER,
            "aud": self.settings.JWT_AUDIENCE,
            "jti": str(uuid4()),
            "type": "access",
        }
        roles = list(roles)
        if roles:
            to_encode["roles"] = roles
        encoded_jwt = jwt.encode(
            to_encode, self.settings.SECRET_KEY, algorithm=self.settings.ALGORITHM
        )
        return encoded_jwt, expire

    async def _unused_token_value(self) -> str:
        for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
            candidate = self.token_factory()
            if await self.store.find_by_value(candidate) is None:
                return candidate
            logger.error(
                f"Generated refresh token collided with a stored token "
                f"(attempt {attempt}/{MAX_GENERATION_ATTEMPTS})"
            )
        raise GenerationCollision(
            f"Could not generate a unique refresh token in {MAX_GENERATION_ATTEMPTS} attempts"
        )

    async def issue(
        self,
        user_id: str,
        device: Optional[DeviceContext] = None,
        roles: Iterable[str] = (),
        parent_id: Optional[int] = None,
    ) -> TokenPair:
        """
        Issue a new access + refresh token pair for a user.

        Stores the refresh token hash with the device metadata; the raw value is
        only ever returned to the caller.

        Raises:
            GenerationCollision: if no unique token value could be produced
        """
        device = device or DeviceContext()
        now = self.clock()

        access_token, access_expires = self.create_access_token(user_id, roles, now=now)
        refresh_token = await self._unused_token_value()
        refresh_expires = now + timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)

        stored_token = RefreshToken(
            token_hash=hash_token_value(refresh_token),
            user_id=str(user_id),
            expires_at=refresh_expires,
            created_at=now,
            parent_id=parent_id,
            device_id=device.device_id[:100] if device.device_id else None,
            device_name=device.device_name[:100] if device.device_name else None,
            ip_address=device.ip_address[:45] if device.ip_address else None,
            user_agent=device.user_agent[:500] if device.user_agent else None,
        )
        try:
            await self.store.add(stored_token)
        except StoreIntegrityError as e:
            # The only unique column is token_hash
            raise GenerationCollision("Refresh token value collided on insert") from e

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_expires,
            refresh_token_expires_at=refresh_expires,
        )
