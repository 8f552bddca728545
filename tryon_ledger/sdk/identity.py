"""
Identity providers: resolve a bearer token to an account identity.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..core.errors import Unauthorized

logger = logging.getLogger(__name__)

BEARER_SCHEME = "bearer"


def strip_bearer(token: Optional[str]) -> str:
    """Remove a leading "Bearer " scheme and surrounding whitespace.

    Raises:
        Unauthorized: If nothing is left
    """
    if not token:
        raise Unauthorized("Missing token")
    parts = token.split(None, 1)
    if parts and parts[0].lower() == BEARER_SCHEME:
        parts = parts[1:]
    token = parts[0].strip() if parts else ""
    if not token:
        raise Unauthorized("Missing token")
    return token


class IdentityProvider(ABC):
    """Resolves tokens to identities."""

    @abstractmethod
    async def resolve(self, token: Optional[str]) -> str:
        """Return the identity for a token.

        Raises:
            Unauthorized: If the token is missing, invalid or expired
        """


class StaticIdentityProvider(IdentityProvider):
    """Fixed token-to-identity mapping, for local runs and tests."""

    def __init__(self, tokens: Dict[str, str]):
        self.tokens = dict(tokens)

    async def resolve(self, token: Optional[str]) -> str:
        identity = self.tokens.get(strip_bearer(token))
        if identity is None:
            raise Unauthorized("Unknown token")
        return identity


class SupabaseIdentityProvider(IdentityProvider):
    """Validates session tokens against the hosted auth service."""

    def __init__(self, client):
        self.client = client

    async def resolve(self, token: Optional[str]) -> str:
        jwt = strip_bearer(token)
        try:
            response = await asyncio.to_thread(self.client.auth.get_user, jwt)
        except Exception as e:
            logger.info("Token rejected by auth service: %s", type(e).__name__)
            raise Unauthorized("Invalid session") from e

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise Unauthorized("Invalid session")
        return str(user.id)
