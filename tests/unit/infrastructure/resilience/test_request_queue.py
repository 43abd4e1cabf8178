import asyncio

import pytest

from sellerdesk.domain.exceptions import QueueConfigurationError
from sellerdesk.domain.models.config import QueueConfig
from sellerdesk.infrastructure.resilience.request_queue import RequestQueue


class ConcurrencyMeter:
    """Task factory that records the peak number of tasks running at once."""

    def __init__(self, hold: float = 0.01):
        self.hold = hold
        self.running = 0
        self.peak = 0
        self.started = []

    def task(self, label):
        async def run():
            self.running += 1
            self.peak = max(self.peak, self.running)
            self.started.append(label)
            await asyncio.sleep(self.hold)
            self.running -= 1
            return label
        return run


@pytest.mark.parametrize("config", [
    QueueConfig(concurrency=0),
    QueueConfig(max_per_window=0),
    QueueConfig(window=0),
])
def test_rejects_non_positive_limits(config):
    with pytest.raises(QueueConfigurationError):
        RequestQueue(config)


async def test_enqueue_rejects_non_callable():
    queue = RequestQueue()
    with pytest.raises(QueueConfigurationError):
        await queue.enqueue("not a task")


async def test_never_exceeds_concurrency():
    """N > concurrency simultaneous submissions never run more than concurrency at once."""
    queue = RequestQueue(QueueConfig(concurrency=3, window=1.0, max_per_window=1000))
    meter = ConcurrencyMeter()

    results = await asyncio.gather(*(queue.enqueue(meter.task(i)) for i in range(20)))

    assert results == list(range(20))
    assert meter.peak == 3


async def test_dispatch_order_is_fifo():
    queue = RequestQueue(QueueConfig(concurrency=1, window=1.0, max_per_window=1000))
    meter = ConcurrencyMeter(hold=0)

    await asyncio.gather(*(queue.enqueue(meter.task(i)) for i in range(10)))

    assert meter.started == list(range(10))


async def test_window_limits_starts():
    """With 2 starts per 0.2s window, the fifth task cannot start before 0.4s."""
    queue = RequestQueue(QueueConfig(concurrency=10, window=0.2, max_per_window=2))
    loop = asyncio.get_running_loop()
    start = loop.time()
    start_times = []

    def task():
        async def run():
            start_times.append(loop.time() - start)
        return run

    await asyncio.gather(*(queue.enqueue(task()) for _ in range(5)))

    assert len(start_times) == 5
    assert start_times[4] >= 0.39


async def test_task_error_propagates_without_affecting_others():
    queue = RequestQueue(QueueConfig(concurrency=2))

    async def boom():
        raise RuntimeError("task failed")

    async def fine():
        return "fine"

    results = await asyncio.gather(queue.enqueue(boom), queue.enqueue(fine), return_exceptions=True)

    assert isinstance(results[0], RuntimeError)
    assert results[1] == "fine"
    assert queue.stats().in_flight == 0


async def test_cancelled_queued_task_never_runs():
    queue = RequestQueue(QueueConfig(concurrency=1))
    release = asyncio.Event()
    ran = []

    async def blocker():
        await release.wait()
        return "blocker"

    async def victim():
        ran.append("victim")

    first = asyncio.ensure_future(queue.enqueue(blocker))
    second = asyncio.ensure_future(queue.enqueue(victim))
    await asyncio.sleep(0)
    assert queue.stats().queued == 1

    second.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second
    release.set()
    assert await first == "blocker"
    await queue.wait_idle()

    assert ran == []


async def test_abandoned_dispatched_task_still_completes():
    queue = RequestQueue(QueueConfig(concurrency=1))
    finished = asyncio.Event()

    async def slow():
        await asyncio.sleep(0.01)
        finished.set()

    waiter = asyncio.ensure_future(queue.enqueue(slow))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    await asyncio.wait_for(finished.wait(), timeout=1)


async def test_pause_resume_and_stats():
    queue = RequestQueue(QueueConfig(concurrency=2))
    queue.pause()

    async def work():
        return 1

    pending = asyncio.ensure_future(queue.enqueue(work))
    await asyncio.sleep(0.01)
    stats = queue.stats()
    assert stats.paused is True
    assert stats.queued == 1
    assert stats.in_flight == 0

    queue.resume()
    assert await pending == 1
    assert queue.stats().queued == 0


async def test_clear_cancels_queued_tasks():
    queue = RequestQueue(QueueConfig(concurrency=1))
    queue.pause()

    async def work():
        return 1

    pending = [asyncio.ensure_future(queue.enqueue(work)) for _ in range(3)]
    await asyncio.sleep(0)

    assert queue.clear() == 3
    for future in pending:
        with pytest.raises(asyncio.CancelledError):
            await future
    await asyncio.wait_for(queue.wait_idle(), timeout=1)
