"""Background asyncio event loop used for non-blocking producer I/O."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncRuntime:
    """Owns an event loop running on a dedicated daemon thread.

    Coroutines are handed over with :meth:`submit` from any thread and the
    caller gets a :class:`concurrent.futures.Future` back immediately.
    """

    def __init__(self, name: str = "io-runtime") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=name, daemon=True)
        self._started = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def start(self) -> "AsyncRuntime":
        if not self._thread.is_alive():
            self._thread.start()
            self._started.wait()
        return self

    def submit(self, coro: Coroutine[Any, Any, T]) -> Future[T]:
        if not self._started.is_set():
            coro.close()
            raise RuntimeError("AsyncRuntime has not been started.")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Submit ``coro`` and block until it completes."""
        return self.submit(coro).result(timeout)

    def drain(self, timeout: float = 5.0) -> None:
        """Wait up to ``timeout`` seconds for in-flight calls to settle."""
        if not self._thread.is_alive():
            return

        async def _drain() -> None:
            pending = [
                task
                for task in asyncio.all_tasks()
                if task is not asyncio.current_task()
            ]
            if pending:
                logger.info("Waiting for in-flight calls", extra={"count": len(pending)})
                await asyncio.wait(pending, timeout=timeout)

        try:
            self.run(_drain(), timeout=timeout + 1.0)
        except FutureTimeoutError:
            logger.warning("In-flight calls did not settle before shutdown")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Drain pending calls, then stop and close the loop."""
        if self._thread.is_alive():
            self.drain(timeout)
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
        if not self._loop.is_running() and not self._loop.is_closed():
            self._loop.close()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        self._loop.run_forever()
