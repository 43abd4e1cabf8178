"""Exponential backoff engine for retrying API calls.

Executes an async operation and retries it while a caller-supplied
predicate classifies the failure as retryable. The delay before retry
``k`` (0-based) is ``min(initial_delay * multiplier**k, max_delay)`` unless
the error carries a server-supplied ``retry_after``, which is used verbatim
for that attempt.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sellerdesk.domain.exceptions import ApiError, NetworkError
from sellerdesk.domain.models.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[Exception], bool]
RetryCallback = Callable[[Exception, int, float], None]


def default_retry_predicate(policy: RetryPolicy) -> RetryPredicate:
    """Builds the API client's classifier: retryable statuses and transport codes."""

    def should_retry(error: Exception) -> bool:
        if isinstance(error, ApiError):
            return error.http_status in policy.retryable_status_codes
        if isinstance(error, NetworkError):
            return error.code in policy.retryable_error_codes
        return False

    return should_retry


class BackoffEngine:
    """Runs an operation under a RetryPolicy."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[RetryCallback] = None,
    ):
        """Initializes the BackoffEngine.

        Args:
            policy: Attempts and delays; defaults to RetryPolicy().
            sleep: Awaitable sleep used between attempts (injectable for tests).
            on_retry: Called with (error, attempt_number, delay) before each wait.
        """
        self.policy = policy or RetryPolicy()
        if self.policy.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._sleep = sleep
        self._on_retry = on_retry

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds after the failed attempt with 0-based index ``attempt``."""
        delay = self.policy.initial_delay * (self.policy.multiplier ** attempt)
        return min(delay, self.policy.max_delay)

    def delay_for(self, error: Exception, attempt: int) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return max(0.0, float(retry_after))
        return self.compute_delay(attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: RetryPredicate,
    ) -> T:
        """Executes ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine function performing one attempt.
            should_retry: Classifier evaluated after every failed attempt.

        Returns:
            The result of the first successful attempt.

        Raises:
            Exception: The most recent error, unchanged, once the predicate
                declines or ``max_attempts`` is exhausted.
        """
        max_attempts = self.policy.max_attempts
        for attempt in range(max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not should_retry(e):
                    logger.debug(f"Non-retryable error on attempt {attempt + 1}: {type(e).__name__}")
                    raise
                if attempt + 1 >= max_attempts:
                    logger.error(f"Max attempts ({max_attempts}) reached. Last error: {e}")
                    raise

                delay = self.delay_for(e, attempt)
                logger.warning(
                    f"Retryable error on attempt {attempt + 1}/{max_attempts}: {type(e).__name__}. "
                    f"Waiting {delay:.2f}s..."
                )
                if self._on_retry is not None:
                    try:
                        self._on_retry(e, attempt + 1, delay)
                    except Exception as cb_error:
                        logger.error(f"on_retry callback failed: {cb_error}", exc_info=True)
                await self._sleep(delay)

        # range(max_attempts) always returns or raises
        raise RuntimeError("unreachable")
