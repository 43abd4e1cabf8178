"""Redis-backed cache backend shared between processes.

Redis guarantees atomicity of GET/SETEX/DEL; this layer adds no locking.
Every Redis failure is logged and reported as a failed CacheOutcome so a
broken cache never breaks the request that consulted it.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from sellerdesk.domain.interfaces.cache import CacheOutcome, CacheProvider
from sellerdesk.domain.models.common import CacheKey

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "sellerdesk:cache:"
DEFAULT_TTL_SECONDS = 300
DEFAULT_SCAN_COUNT = 100

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escapes Redis MATCH metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class RedisCacheProvider(CacheProvider):
    """CacheProvider over a redis.asyncio client."""

    def __init__(
        self,
        client: "redis.Redis",
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        scan_count: int = DEFAULT_SCAN_COUNT,
    ):
        """Initializes the provider.

        Args:
            client: A redis.asyncio client created with ``decode_responses=True``.
            key_prefix: Namespace prepended to every key (e.g. per user).
            default_ttl: TTL in seconds used when ``set`` gets none.
            scan_count: COUNT hint for SCAN during pattern clears.
        """
        self._redis = client
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisCacheProvider":
        client = redis.from_url(url, decode_responses=True)
        logger.info(f"RedisCacheProvider connecting to {url.split('@')[-1]}")
        return cls(client, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    # --- CacheProvider Interface Implementation ---

    async def get(self, key: CacheKey) -> CacheOutcome:
        try:
            value = await self._redis.get(self._key(key))
            if isinstance(value, bytes):
                value = value.decode("utf-8")
        except (RedisError, OSError) as e:
            logger.error(f"Redis get error for key {key}: {e}")
            return CacheOutcome.failed(f"Redis get failed: {e}")
        except UnicodeDecodeError as e:
            # decode_responses clients raise this from inside get()
            logger.warning(f"Redis value for key {key} is not valid UTF-8: {e}")
            return CacheOutcome.failed(f"Redis value is not valid UTF-8: {e}")
        if value is None:
            return CacheOutcome.miss()
        return CacheOutcome(value=value)

    async def set(self, key: CacheKey, value: str, ttl_seconds: Optional[int] = None) -> CacheOutcome:
        seconds = ttl_seconds if ttl_seconds is not None else self.default_ttl
        try:
            await self._redis.setex(self._key(key), int(seconds), value)
        except (RedisError, OSError) as e:
            logger.error(f"Redis set error for key {key}: {e}")
            return CacheOutcome.failed(f"Redis set failed: {e}")
        return CacheOutcome()

    async def delete(self, key: CacheKey) -> CacheOutcome:
        try:
            await self._redis.delete(self._key(key))
        except (RedisError, OSError) as e:
            logger.error(f"Redis delete error for key {key}: {e}")
            return CacheOutcome.failed(f"Redis delete failed: {e}")
        return CacheOutcome()

    async def clear(self, pattern: Optional[str] = None) -> CacheOutcome:
        prefix = escape_glob(self.key_prefix)
        match = f"{prefix}*{escape_glob(pattern)}*" if pattern else f"{prefix}*"
        try:
            batch: List[str] = []
            removed = 0
            async for found in self._redis.scan_iter(match=match, count=self.scan_count):
                batch.append(found)
                if len(batch) >= self.scan_count:
                    removed += await self._delete_batch(batch)
                    batch = []
            if batch:
                removed += await self._delete_batch(batch)
        except (RedisError, OSError) as e:
            logger.error(f"Redis clear error for pattern {pattern!r}: {e}")
            return CacheOutcome.failed(f"Redis clear failed: {e}")
        logger.debug(f"Cleared {removed} Redis cache entries matching {match!r}.")
        return CacheOutcome()

    async def _delete_batch(self, keys: List[str]) -> int:
        async with self._redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.delete(key)
            await pipe.execute()
        return len(keys)

    async def exists(self, key: CacheKey) -> bool:
        try:
            return await self._redis.exists(self._key(key)) == 1
        except (RedisError, OSError) as e:
            logger.error(f"Redis exists error for key {key}: {e}")
            return False

    # --- Health ---

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def stats(self) -> Dict[str, Any]:
        """Connection status, memory usage (bytes) and key count of the Redis server."""
        try:
            info = await self._redis.info("memory")
            keys = await self._redis.dbsize()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis stats unavailable: {e}")
            return {"connected": False}
        return {
            "connected": True,
            "memory_usage": info.get("used_memory"),
            "keys": keys,
        }

    async def close(self) -> None:
        await self._redis.aclose()
