"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> InferenceService

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.
Each admitted call is also bounded by the configured request timeout.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from boxinspector.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="box-inference",
        )
        self._request_timeout = settings.request_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor under the request timeout. The slot is released when the
        worker finishes, so a timed-out call keeps counting as active until
        its thread returns.

        Raises:
            TimeoutError: If the semaphore cannot be acquired in time, or the
                function does not finish within the request timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, func, *args)
        except BaseException:
            self._release_slot()
            raise
        future.add_done_callback(self._on_worker_done)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._request_timeout)
        except TimeoutError:
            logger.warning("Inference exceeded %.1fs request timeout", self._request_timeout)
            raise

    def _on_worker_done(self, future: asyncio.Future[object]) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Worker finished with %r", future.exception())
        self._release_slot()

    def _release_slot(self) -> None:
        self._semaphore.release()
        with self._counter_lock:
            self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
