"""Interface for response cache backends.

Defines the contract for storing, retrieving and invalidating serialized
responses with a TTL. Backend failures never escape a provider: every
operation reports its outcome through CacheOutcome instead.
"""

import abc
from dataclasses import dataclass
from typing import Optional

from sellerdesk.domain.exceptions import CacheError
from sellerdesk.domain.models.common import CacheKey


@dataclass(frozen=True)
class CacheOutcome:
    """Result of a cache operation.

    Attributes:
        value: The stored value for a read hit, otherwise None.
        error: The absorbed backend failure, if any.
    """
    value: Optional[str] = None
    error: Optional[CacheError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def hit(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def miss(cls) -> "CacheOutcome":
        return cls()

    @classmethod
    def failed(cls, message: str) -> "CacheOutcome":
        return cls(error=CacheError(message))


class CacheProvider(abc.ABC):
    """Abstract Base Class for cache backends."""

    @abc.abstractmethod
    async def get(self, key: CacheKey) -> CacheOutcome:
        """Retrieves a value.

        Args:
            key: The cache key to retrieve.

        Returns:
            A hit carrying the value, a miss (absent or expired), or a
            failed outcome if the backend could not be read.
        """

    @abc.abstractmethod
    async def set(self, key: CacheKey, value: str, ttl_seconds: Optional[int] = None) -> CacheOutcome:
        """Stores a value.

        Args:
            key: The cache key to store the value under.
            value: Serialized payload.
            ttl_seconds: Time-to-live in seconds (backend default if None).
        """

    @abc.abstractmethod
    async def delete(self, key: CacheKey) -> CacheOutcome:
        """Deletes a single key."""

    @abc.abstractmethod
    async def clear(self, pattern: Optional[str] = None) -> CacheOutcome:
        """Deletes every key containing ``pattern``, or all keys if None."""

    @abc.abstractmethod
    async def exists(self, key: CacheKey) -> bool:
        """True if ``key`` holds an unexpired value. Backend failures read as False."""
