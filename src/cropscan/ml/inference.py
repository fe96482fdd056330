"""Execution layer for blocking model work.

Architecture:
    async caller -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX / Pillow

Model loading, image decoding, and the forward pass all block; they run in
the executor so the event loop stays responsive. With the default N=1 at most
one of them is in flight at a time. Callers waiting longer than the queue
timeout get a ``TimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable
    from concurrent.futures import Future

    from cropscan.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Serializes blocking model work onto a small thread pool."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="cropscan-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(
        self,
        func: Callable[..., T],
        *args: object,
        timeout: float | None = None,
        cleanup: Callable[[], object] | None = None,
        discard: Callable[[T], object] | None = None,
    ) -> T:
        """Run a synchronous function in the pool and await its result.

        The slot is held until ``func`` actually finishes, even when the
        awaiting caller is cancelled first.

        Args:
            func: The blocking callable.
            *args: Positional arguments for ``func``.
            timeout: Seconds to wait for a free slot; defaults to the
                configured queue timeout. ``0`` waits forever.
            cleanup: Called once ``func`` has finished, failed, or will never
                run (timeout or cancellation while waiting for a slot).
            discard: Receives the result of ``func`` when the caller was
                cancelled before it could collect it.

        Raises:
            TimeoutError: If no slot frees up within the timeout.
        """
        wait = self._timeout if timeout is None else timeout
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=wait or None)
        except TimeoutError:
            logger.warning("Timed out after %.1fs waiting for an inference slot", wait)
            if cleanup is not None:
                cleanup()
            raise
        except asyncio.CancelledError:
            if cleanup is not None:
                cleanup()
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        loop = asyncio.get_running_loop()
        with self._counter_lock:
            self._active_count += 1
        try:
            future = self._executor.submit(func, *args)
        except RuntimeError:
            self._finish(loop, None)
            if cleanup is not None:
                cleanup()
            raise

        # Callbacks run in the worker thread before the result reaches the loop.
        future.add_done_callback(partial(self._finish, loop))
        if cleanup is not None:
            future.add_done_callback(lambda _: cleanup())
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            if discard is not None:
                future.add_done_callback(partial(_discard_result, discard))
            logger.info("Caller cancelled, %s keeps its slot until it finishes", getattr(func, "__name__", func))
            raise

    def _finish(self, loop: asyncio.AbstractEventLoop, _future: Future[object] | None) -> None:
        with self._counter_lock:
            self._active_count -= 1
        if loop.is_closed():
            logger.debug("Event loop closed, inference slot not returned")
            return
        loop.call_soon_threadsafe(self._semaphore.release)

    @property
    def active_count(self) -> int:
        """Number of currently running tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of tasks waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)


def _discard_result(discard: Callable[[T], object], future: Future[T]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    discard(future.result())
