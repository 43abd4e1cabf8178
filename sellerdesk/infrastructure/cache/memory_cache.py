"""Process-local cache backend.

A plain dict of CacheEntry records with lazy expiry on read and a size cap
that evicts the oldest insertion first. Safe without locks because all
access happens on one asyncio event loop.
"""

import logging
import time
from typing import Callable, Dict, Optional

from sellerdesk.domain.interfaces.cache import CacheOutcome, CacheProvider
from sellerdesk.domain.models.common import CacheEntry, CacheKey

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_ENTRIES = 1000


class MemoryCacheProvider(CacheProvider):
    """In-memory CacheProvider."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the in-memory cache.

        Args:
            default_ttl: TTL in seconds used when ``set`` gets none.
            max_entries: Maximum number of entries kept.
            clock: Wall clock in epoch seconds (injectable for tests).
        """
        if max_entries <= 0:
            raise ValueError("max_entries must be positive.")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        logger.info(f"MemoryCacheProvider initialized (ttl={default_ttl}s, max={max_entries})")

    @property
    def size(self) -> int:
        return len(self._entries)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def purge_expired(self) -> int:
        """Removes expired entries. Returns how many were removed."""
        now = self._now_ms()
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries.")
        return len(expired)

    def _enforce_size(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        self.purge_expired()
        while len(self._entries) > self.max_entries:
            # Oldest by insertion order
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
            logger.debug(f"Cache EVICTED key: {oldest_key}")

    # --- CacheProvider Interface Implementation ---

    async def get(self, key: CacheKey) -> CacheOutcome:
        entry = self._entries.get(key)
        if entry is None:
            return CacheOutcome.miss()
        if entry.is_expired(self._now_ms()):
            del self._entries[key]
            logger.debug(f"Cache EXPIRED key: {key}")
            return CacheOutcome.miss()
        return CacheOutcome(value=entry.value)

    async def set(self, key: CacheKey, value: str, ttl_seconds: Optional[int] = None) -> CacheOutcome:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        # Re-inserting moves the key to the back of the eviction order
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, expires_at_ms=self._now_ms() + int(ttl * 1000))
        self._enforce_size()
        logger.debug(f"Cache PUT key: {key} TTL: {ttl}s")
        return CacheOutcome()

    async def delete(self, key: CacheKey) -> CacheOutcome:
        self._entries.pop(key, None)
        return CacheOutcome()

    async def clear(self, pattern: Optional[str] = None) -> CacheOutcome:
        if pattern is None:
            self._entries.clear()
            logger.info("Cleared in-memory cache.")
            return CacheOutcome()
        matching = [k for k in self._entries if pattern in k]
        for key in matching:
            del self._entries[key]
        logger.debug(f"Cleared {len(matching)} cache entries matching '{pattern}'.")
        return CacheOutcome()

    async def exists(self, key: CacheKey) -> bool:
        return (await self.get(key)).hit
