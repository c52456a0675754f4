"""Worker pool that keeps classification off the caller's thread.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ClassificationPipeline

The pipeline stays synchronous. ``submit()`` hands a call to a worker thread
and reports completion through a callback; ``run()`` is the awaitable form
used by the API, which additionally bounds how long a request may queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from asclepius.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


@dataclass
class PoolStats:
    """Snapshot of the pool's classification counters."""

    active: int = 0
    queued: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0


class InferencePool:
    """Runs classification calls on worker threads and tracks their outcome."""

    def __init__(self, settings: Settings, timeout: float = SEMAPHORE_TIMEOUT_SECONDS) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="classifier",
        )
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._timeout = timeout
        self._stats = PoolStats()
        self._stats_lock = threading.Lock()

    def submit(
        self,
        func: Callable[..., T],
        *args: object,
        callback: Callable[[Future[T]], None] | None = None,
    ) -> Future[T]:
        """Run ``func(*args)`` on a worker thread.

        ``callback`` is invoked with the finished future, on the worker thread.
        """
        future = self._executor.submit(self._tracked, func, *args)
        if callback is not None:
            future.add_done_callback(callback)
        return future

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Await ``func(*args)`` on a worker thread, queueing for a free slot.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        self._update(queued=1)
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            self._update(rejected=1)
            raise
        finally:
            self._update(queued=-1)

        try:
            return await asyncio.wrap_future(self.submit(func, *args))
        finally:
            self._semaphore.release()

    @property
    def stats(self) -> PoolStats:
        with self._stats_lock:
            return PoolStats(**vars(self._stats))

    @property
    def active_count(self) -> int:
        """Number of classification calls currently on a worker thread."""
        return self.stats.active

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a free slot."""
        return self.stats.queued

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        self._executor.shutdown(wait=True)
        logger.info("Inference pool stopped (%s)", self.stats)

    # -- Internal -----------------------------------------------------------

    def _tracked(self, func: Callable[..., T], *args: object) -> T:
        self._update(active=1)
        try:
            result = func(*args)
        except Exception:
            self._update(failed=1)
            raise
        else:
            self._update(completed=1)
            return result
        finally:
            self._update(active=-1)

    def _update(self, **deltas: int) -> None:
        with self._stats_lock:
            for name, delta in deltas.items():
                setattr(self._stats, name, getattr(self._stats, name) + delta)
