"""Contract with the external identity provider."""

from dataclasses import dataclass, field
from typing import Optional, Protocol


@dataclass(frozen=True)
class Identity:
    """An authenticated principal: an opaque user id and its roles."""
    user_id: str
    roles: tuple[str, ...] = field(default_factory=tuple)


class IdentityProvider(Protocol):
    """
    Verifies credentials outside this service.

    Password storage and hashing belong to the provider; this service only
    consumes the resulting Identity.
    """

    async def authenticate(self, username: str, password: str) -> Optional[Identity]:
        ...
