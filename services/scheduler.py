"""Lightweight timer scheduling for reconnects, stats and batch flushes."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Set

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a single-shot or periodic callback running on its own daemon thread."""

    def __init__(
        self,
        callback: Callable[[], None],
        delay: float,
        repeat: bool,
        name: str,
        on_finish: Optional[Callable[["ScheduledTask"], None]] = None,
    ) -> None:
        self._callback = callback
        self._delay = delay
        self._repeat = repeat
        self._on_finish = on_finish
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def join(self, timeout: Optional[float] = None) -> None:
        if threading.current_thread() is not self._thread and self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        try:
            while not self._stopped.wait(self._delay):
                try:
                    self._callback()
                except Exception:
                    logger.exception("Scheduled callback %s failed", self._thread.name)
                if not self._repeat:
                    break
        finally:
            if self._on_finish is not None:
                self._on_finish(self)


class Scheduler:
    """Creates cancellable timers and tracks them so shutdown can stop all of them."""

    def __init__(self, name: str = "scheduler") -> None:
        self._name = name
        self._tasks: Set[ScheduledTask] = set()
        self._lock = threading.Lock()
        self._counter = 0
        self._closed = False

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        """Run ``callback`` once after ``delay`` seconds unless cancelled first."""
        return self._start(callback, delay, repeat=False)

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        return self._start(callback, interval, repeat=True)

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._lock:
            self._closed = True
            tasks = list(self._tasks)
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            task.join(timeout)

    def _start(self, callback: Callable[[], None], delay: float, repeat: bool) -> ScheduledTask:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Scheduler {self._name!r} is shut down.")
            self._counter += 1
            task = ScheduledTask(
                callback,
                delay,
                repeat,
                name=f"{self._name}-{self._counter}",
                on_finish=self._forget,
            )
            self._tasks.add(task)
        task.start()
        return task

    def _forget(self, task: ScheduledTask) -> None:
        with self._lock:
            self._tasks.discard(task)
