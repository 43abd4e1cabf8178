"""Configuration records for the API access layer.

Each record is an explicit dataclass with documented defaults. Defaults
are applied once, when the record is constructed; the API client never
merges partial configuration at request time.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from sellerdesk.domain.models.common import RateLimitInfo

# --- Platform Defaults ---
DEFAULT_BASE_URL = "https://openapi.etsy.com/v3"
DEFAULT_AUTHORIZATION_URL = "https://www.etsy.com/oauth/connect"
DEFAULT_TOKEN_URL = f"{DEFAULT_BASE_URL}/public/oauth/token"
DEFAULT_USER_AGENT = "SellerDesk/1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REDIRECT_URI = "http://localhost:42069/auth/callback"

# Platform quota: 5 requests per second
DEFAULT_REQUESTS_PER_SECOND = 5

DEFAULT_SCOPES: Tuple[str, ...] = (
    "email_r",
    "profile_r",
    "shops_r",
    "shops_w",
    "listings_r",
    "listings_w",
    "listings_d",
    "transactions_r",
    "transactions_w",
    "billing_r",
    "favorites_r",
    "feedback_r",
)


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings.

    Attributes:
        enabled: Master switch for read-through caching of GET responses.
        default_ttl: TTL in seconds when no endpoint pattern matches.
        ttl_by_endpoint: Pattern -> TTL seconds; the first pattern contained
            in the endpoint path wins.
        max_entries: Cap for the in-process backend.
    """
    enabled: bool = True
    default_ttl: int = 300
    ttl_by_endpoint: Dict[str, int] = field(default_factory=dict)
    max_entries: int = 1000

    def resolve_ttl(self, endpoint: str) -> int:
        for pattern, ttl in self.ttl_by_endpoint.items():
            if pattern in endpoint:
                return ttl
        return self.default_ttl


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy. Delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})
    retryable_error_codes: FrozenSet[str] = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"})


@dataclass(frozen=True)
class QueueConfig:
    """Request queue limits.

    Attributes:
        concurrency: Maximum tasks in flight at once.
        window: Length of the rolling window in seconds.
        max_per_window: Maximum task starts within any window.
    """
    concurrency: int = DEFAULT_REQUESTS_PER_SECOND
    window: float = 1.0
    max_per_window: int = DEFAULT_REQUESTS_PER_SECOND


@dataclass(frozen=True)
class ApiClientConfig:
    """Everything the API client needs besides its collaborators."""
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    queue: QueueConfig = field(default_factory=QueueConfig)
    on_rate_limit_update: Optional[Callable[[RateLimitInfo], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


@dataclass(frozen=True)
class OAuthConfig:
    """OAuth client registration and provider endpoints."""
    client_id: str
    client_secret: Optional[str] = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    authorization_url: str = DEFAULT_AUTHORIZATION_URL
    token_url: str = DEFAULT_TOKEN_URL
