"""Exceptions raised by the token store and the rotation engine."""

GENERIC_SESSION_ERROR = "Invalid session, please log in again"


class RotationError(Exception):
    """
    A presented refresh token was rejected.

    Callers must surface only ``public_message``; the concrete subclass is for
    logging and tests and must not reach clients.
    """

    public_message = GENERIC_SESSION_ERROR

    def __init__(self, message: str = "", user_id: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.user_id = user_id


class TokenNotFound(RotationError):
    """No stored token matches the presented value (unknown or forged)."""


class TokenExpired(RotationError):
    """The presented token is past its expiry."""


class TokenMismatch(RotationError):
    """The access token does not belong to the refresh token's user."""


class TokenRevoked(RotationError):
    """The presented token has already been revoked."""


class TokenReuseDetected(TokenRevoked):
    """A rotated-away token was presented again; all user sessions were revoked."""

    def __init__(self, message: str = "", user_id: str | None = None, revoked_count: int = 0):
        super().__init__(message, user_id=user_id)
        self.revoked_count = revoked_count


class TokenStoreError(Exception):
    """Infrastructure failure in the token store."""


class StoreUnavailable(TokenStoreError):
    """The store could not be reached or the write did not commit."""


class StoreIntegrityError(TokenStoreError):
    """A write violated a store constraint."""


class GenerationCollision(TokenStoreError):
    """A freshly generated token value collided with a stored one."""
