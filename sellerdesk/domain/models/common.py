"""Defines common Value Objects used across different domain contexts.

These objects represent simple values like endpoints, cache keys and
owner identifiers, plus the small records exchanged between the API client
and its collaborators.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NewType, Optional

# === Core Value Objects ===

Endpoint = NewType("Endpoint", str)      # Path relative to the base URL, e.g. '/application/shops/1'
CacheKey = NewType("CacheKey", str)      # Deterministic key: endpoint + sorted query params
OwnerId = NewType("OwnerId", str)        # Identifier of the user/shop owning a credential

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def build_cache_key(endpoint: str, params: Optional[Mapping[str, Any]] = None) -> CacheKey:
    """Builds the deterministic cache key for an endpoint and its query params.

    Parameters are sorted by name; ``None`` values are skipped because they
    are never sent on the wire either.
    """
    pairs = sorted((k, v) for k, v in (params or {}).items() if v is not None)
    query = "&".join(f"{k}={v}" for k, v in pairs)
    return CacheKey(f"{endpoint}?{query}")


# === Rate Limiting ===

@dataclass(frozen=True)
class RateLimitInfo:
    """Latest quota reported by the platform. Advisory only."""
    limit: int
    remaining: int
    reset_at_ms: int  # Epoch milliseconds


# === Caching ===

@dataclass
class CacheEntry:
    """Internal representation of a cache entry with expiry."""
    value: str
    expires_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at_ms <= now_ms


# === Queue ===

@dataclass(frozen=True)
class QueueStats:
    """Snapshot of the request queue."""
    queued: int
    in_flight: int
    paused: bool


# === Responses ===

@dataclass
class ApiResponse:
    """A successful response from the platform (or the cache)."""
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: int = 200
    from_cache: bool = False


@dataclass
class PaginatedResponse:
    """The platform's ``{count, results, params}`` list envelope."""
    count: int
    results: List[Any]
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "PaginatedResponse":
        if not isinstance(payload, Mapping):
            raise ValueError("Paginated payload must be a mapping.")
        results = payload.get("results") or []
        count = payload.get("count")
        return cls(
            count=int(count) if count is not None else len(results),
            results=list(results),
            params=dict(payload.get("params") or {}),
        )


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
