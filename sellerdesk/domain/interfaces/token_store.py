"""Interface for persisting OAuth tokens per credential owner."""

import abc
from typing import Optional

from sellerdesk.domain.models.auth import OAuthTokens
from sellerdesk.domain.models.common import OwnerId


class TokenStore(abc.ABC):
    """Abstract Base Class for token persistence (upsert, lookup, delete)."""

    @abc.abstractmethod
    async def save(self, owner_id: OwnerId, tokens: OAuthTokens) -> None:
        """Inserts or replaces the tokens for ``owner_id``."""

    @abc.abstractmethod
    async def get(self, owner_id: OwnerId) -> Optional[OAuthTokens]:
        """Returns the stored tokens, or None if the owner has none."""

    @abc.abstractmethod
    async def delete(self, owner_id: OwnerId) -> None:
        """Removes the owner's tokens. Deleting an absent owner is a no-op."""
