"""Rate-limit header tracking and Retry-After parsing.

Purely observational: the tracker records what the platform reports and
notifies an observer. Enforcement is the request queue's job.
"""

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional

from sellerdesk.domain.models.common import RateLimitInfo

logger = logging.getLogger(__name__)

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"
RESET_HEADER = "X-RateLimit-Reset"
RETRY_AFTER_HEADER = "Retry-After"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # httpx.Headers is case-insensitive already; plain dicts are not
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        logger.debug(f"Ignoring non-integer rate-limit header value: {value!r}")
        return None


def parse_retry_after(headers: Mapping[str, str], now: Optional[float] = None) -> Optional[float]:
    """Parses Retry-After as delta-seconds or an HTTP-date.

    Args:
        headers: Response headers.
        now: Current epoch seconds (defaults to time.time()).

    Returns:
        Seconds to wait (never negative), or None if absent or unparseable.
    """
    raw = _header(headers, RETRY_AFTER_HEADER)
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header: {raw!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now if now is not None else time.time()
    return max(0.0, when.timestamp() - current)


class RateLimitTracker:
    """Keeps the latest quota reported by the platform."""

    def __init__(self, on_update: Optional[Callable[[RateLimitInfo], None]] = None):
        self._on_update = on_update
        self._info: Optional[RateLimitInfo] = None

    @property
    def info(self) -> Optional[RateLimitInfo]:
        return self._info

    def update(self, headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
        """Updates from response headers and notifies the observer.

        Headers that are missing keep their previous value; if none of the
        three are present nothing changes and the observer is not called.
        """
        limit = _parse_int(_header(headers, LIMIT_HEADER))
        remaining = _parse_int(_header(headers, REMAINING_HEADER))
        reset = _parse_int(_header(headers, RESET_HEADER))
        if limit is None and remaining is None and reset is None:
            return self._info

        previous = self._info
        self._info = RateLimitInfo(
            limit=limit if limit is not None else (previous.limit if previous else 0),
            remaining=remaining if remaining is not None else (previous.remaining if previous else 0),
            reset_at_ms=reset * 1000 if reset is not None else (previous.reset_at_ms if previous else 0),
        )
        logger.debug(f"Rate limit updated: {self._info}")

        if self._on_update is not None:
            try:
                self._on_update(self._info)
            except Exception as e:
                logger.error(f"Rate limit observer failed: {e}", exc_info=True)
        return self._info
