"""Domain Events related to API calls, caching and credentials.

The API client dispatches these to an optional event handler supplied by
the host application (e.g. to feed a status bar or error tracker).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


EventHandler = Callable[[DomainEvent], None]

# --- Specific API Events ---

@dataclass
class ApiCallSucceeded(DomainEvent):
    """Event triggered when an API call succeeds."""
    method: str
    endpoint: str
    status_code: int
    latency_ms: float
    attempts: int = 1
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallFailed(DomainEvent):
    """Event triggered when an API call fails definitively (after retries)."""
    method: str
    endpoint: str
    error_type: str
    error_message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """Event triggered when a retry is scheduled for a failed API call."""
    method: str
    endpoint: str
    attempt_number: int
    delay_seconds: float
    error_type: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheHit(DomainEvent):
    """Event triggered when a GET is served from the cache."""
    endpoint: str
    key: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheInvalidated(DomainEvent):
    """Event triggered when a mutation clears cached entries for a path."""
    pattern: str
    succeeded: bool
    timestamp: float = field(default_factory=time.time)


@dataclass
class TokenRefreshed(DomainEvent):
    """Event triggered when a token provider refreshed an owner's access token."""
    owner_id: str
    timestamp: float = field(default_factory=time.time)


def dispatch_event(event: DomainEvent, handler: Optional[EventHandler] = None) -> None:
    """Logs an event and hands it to ``handler``; handler failures are logged only."""
    logger.debug(f"EVENT: {event}")
    if handler is None:
        return
    try:
        handler(event)
    except Exception as e:
        logger.error(f"Event handler failed for {type(event).__name__}: {e}", exc_info=True)
