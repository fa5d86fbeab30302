"""Identity provider interface.

Sign-in lives outside this package. The client only needs an optional bearer
token and a stable external user id.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

import structlog

logger = structlog.get_logger()


class IdentityProvider(ABC):
    """Source of the bearer credential and external user id."""

    @property
    @abstractmethod
    def user_id(self) -> Optional[str]:
        """Stable external user id, or None when signed out."""
        pass

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """Current bearer token, or None when signed out."""
        pass


class StaticIdentity(IdentityProvider):
    """Fixed credentials; the default is anonymous."""

    def __init__(self, token: Optional[str] = None, user_id: Optional[str] = None) -> None:
        self._token = token
        self._user_id = user_id

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    async def get_token(self) -> Optional[str]:
        return self._token


async def auth_headers(identity: Optional[IdentityProvider]) -> Dict[str, str]:
    """Authorization header for the identity, empty when anonymous."""
    if identity is None:
        return {}
    try:
        token = await identity.get_token()
    except Exception as e:
        # Signed-in users whose token refresh fails are sent as anonymous.
        logger.warning("auth_token_unavailable", error=str(e))
        return {}
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}
