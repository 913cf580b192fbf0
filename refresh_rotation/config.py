import logging
import warnings
from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "your-secret-key-here-change-in-production"


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./refresh_rotation.db"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # JWT Configuration
    # SECURITY: SECRET_KEY has no secure default - MUST be set via environment variable
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15  # 15 minutes for access tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7  # 7 days for refresh tokens
    JWT_ISSUER: str = "refresh-rotation"
    JWT_AUDIENCE: str = "refresh-rotation-clients"

    # Refresh token behaviour
    # ROTATE_ON_USE=False keeps the presented refresh token and only mints a new access token
    ROTATE_ON_USE: bool = True
    # Oldest active sessions are revoked on login once a user holds this many (0 = unlimited)
    MAX_SESSIONS_PER_USER: int = 5

    # Background sweeper for expired/revoked refresh tokens
    CLEANUP_ENABLED: bool = True
    CLEANUP_INTERVAL_MINUTES: int = 360  # every 6 hours

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env variables
    )

    @property
    def async_database_url(self) -> str:
        """DATABASE_URL rewritten for the async driver."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.DATABASE_URL

    @property
    def cleanup_interval_seconds(self) -> int:
        return self.CLEANUP_INTERVAL_MINUTES * 60


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    Token lifetimes are checked in every mode; secret and debug checks only
    fail hard in production.
    """
    if settings.ACCESS_TOKEN_EXPIRE_MINUTES <= 0:
        raise ValueError("ACCESS_TOKEN_EXPIRE_MINUTES must be greater than 0")
    if settings.REFRESH_TOKEN_EXPIRE_DAYS <= 0:
        raise ValueError("REFRESH_TOKEN_EXPIRE_DAYS must be greater than 0")
    if settings.CLEANUP_INTERVAL_MINUTES <= 0:
        raise ValueError("CLEANUP_INTERVAL_MINUTES must be greater than 0")
    if settings.MAX_SESSIONS_PER_USER < 0:
        raise ValueError("MAX_SESSIONS_PER_USER must not be negative")

    # Access tokens must be materially shorter lived than refresh tokens
    if settings.ACCESS_TOKEN_EXPIRE_MINUTES >= settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60:
        raise ValueError(
            "ACCESS_TOKEN_EXPIRE_MINUTES must be shorter than REFRESH_TOKEN_EXPIRE_DAYS"
        )

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if using default secret key in production
        if settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY:
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        # CRITICAL: Fail fast if DEBUG is enabled in production
        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters). "
                "Consider using a longer, more random key for production.",
                SecurityWarning,
                stacklevel=2,
            )

        if settings.DATABASE_URL.startswith("sqlite"):
            logger.warning(
                "SQLite configured in production. "
                "Rotation is serialised with BEGIN IMMEDIATE, so only one writer runs at a time. "
                "Use PostgreSQL for concurrent refresh traffic."
            )

    return settings


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    This function validates settings on first access and raises errors
    for critical security misconfigurations in production.
    """
    settings = Settings()
    return _validate_settings(settings)
