"""Bounded-concurrency, rate-windowed request queue.

Controls how many requests are in flight and how many may start within a
rolling time window, independently of how fast callers submit work.
Dispatch order is FIFO by submission; completion order is not guaranteed.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Set, TypeVar

from sellerdesk.domain.exceptions import QueueConfigurationError
from sellerdesk.domain.models.common import QueueStats
from sellerdesk.domain.models.config import QueueConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _QueuedTask:
    __slots__ = ("factory", "future", "started")

    def __init__(self, factory: Callable[[], Awaitable[Any]], future: "asyncio.Future[Any]"):
        self.factory = factory
        self.future = future
        self.started = False


class RequestQueue:
    """FIFO scheduler enforcing a concurrency cap and a sliding start window."""

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the queue.

        Args:
            config: Limits; defaults to QueueConfig().
            clock: Monotonic clock in seconds (injectable for tests).

        Raises:
            QueueConfigurationError: If any limit is not positive.
        """
        self.config = config or QueueConfig()
        if self.config.concurrency <= 0 or self.config.max_per_window <= 0 or self.config.window <= 0:
            raise QueueConfigurationError("Queue concurrency, window and max_per_window must be positive.")

        self._clock = clock
        self._pending: Deque[_QueuedTask] = deque()
        self._starts: Deque[float] = deque()
        self._running: Set["asyncio.Task[None]"] = set()
        self._in_flight = 0
        self._paused = False
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._idle_waiters: Set["asyncio.Future[None]"] = set()
        logger.info(
            f"RequestQueue initialized: concurrency={self.config.concurrency}, "
            f"{self.config.max_per_window} starts / {self.config.window}s"
        )

    # --- Public API ---

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Submits a task and waits for its result.

        Args:
            task: Zero-argument coroutine function. It is not called until a
                slot is available.

        Returns:
            Whatever the task returns.

        Raises:
            QueueConfigurationError: If ``task`` is not callable.
            Exception: Whatever the task raises.
        """
        if not callable(task):
            raise QueueConfigurationError("enqueue() expects a zero-argument coroutine function.")

        loop = asyncio.get_running_loop()
        entry = _QueuedTask(task, loop.create_future())
        self._pending.append(entry)
        self._drain()
        try:
            return await entry.future
        except asyncio.CancelledError:
            if not entry.started:
                # Still queued: withdraw it so it never runs.
                try:
                    self._pending.remove(entry)
                except ValueError:
                    pass
                self._notify_idle()
            raise

    def stats(self) -> QueueStats:
        return QueueStats(
            queued=sum(1 for e in self._pending if not e.future.done()),
            in_flight=self._in_flight,
            paused=self._paused,
        )

    def pause(self) -> None:
        """Stops dispatching; in-flight tasks keep running."""
        self._paused = True
        logger.info("RequestQueue paused.")

    def resume(self) -> None:
        self._paused = False
        logger.info("RequestQueue resumed.")
        self._drain()

    def clear(self) -> int:
        """Cancels every queued, not yet dispatched task. Returns how many were cancelled."""
        cancelled = 0
        while self._pending:
            entry = self._pending.popleft()
            if not entry.future.done():
                entry.future.cancel()
                cancelled += 1
        logger.info(f"RequestQueue cleared {cancelled} queued task(s).")
        self._notify_idle()
        return cancelled

    async def wait_idle(self) -> None:
        """Waits until nothing is queued or in flight."""
        if self._is_idle():
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.add(waiter)
        try:
            await waiter
        finally:
            self._idle_waiters.discard(waiter)

    # --- Scheduling ---

    def _prune_starts(self, now: float) -> None:
        """Removes start timestamps older than the window."""
        while self._starts and now - self._starts[0] >= self.config.window:
            self._starts.popleft()

    def _drain(self) -> None:
        """Starts as many queued tasks as the limits allow."""
        if self._paused:
            return
        while self._pending and self._in_flight < self.config.concurrency:
            now = self._clock()
            self._prune_starts(now)
            if len(self._starts) >= self.config.max_per_window:
                wait_time = self._starts[0] + self.config.window - now
                self._schedule_wakeup(max(0.0, wait_time))
                return

            entry = self._pending.popleft()
            if entry.future.done():
                # Abandoned by its caller while queued.
                continue

            entry.started = True
            self._starts.append(now)
            self._in_flight += 1
            runner = asyncio.get_running_loop().create_task(self._run(entry))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)
        self._notify_idle()

    def _schedule_wakeup(self, delay: float) -> None:
        if self._wakeup is not None:
            return
        logger.debug(f"Start window full. Next dispatch in {delay:.3f}s.")
        self._wakeup = asyncio.get_running_loop().call_later(delay, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._drain()

    async def _run(self, entry: _QueuedTask) -> None:
        try:
            result = await entry.factory()
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            self._in_flight -= 1
            self._drain()

    def _is_idle(self) -> bool:
        return self._in_flight == 0 and not any(not e.future.done() for e in self._pending)

    def _notify_idle(self) -> None:
        if not self._idle_waiters or not self._is_idle():
            return
        for waiter in list(self._idle_waiters):
            if not waiter.done():
                waiter.set_result(None)
