from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable


class ControllerStopped(RuntimeError):
    """Raised by futures submitted after the controller was stopped."""


class ThreadPoolController:
    """Runs browser batches on a bounded thread pool.

    submit() waits while the number of active batches is at the limit.
    """

    def __init__(self, max_workers: int, initial_limit: int) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="leadscrape-batch")

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)

        self._limit = max(1, initial_limit)
        self._active = 0
        self._running = False

    def start(self) -> None:
        self._running = True

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait, cancel_futures=False)

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Submit work, blocking while the concurrency limit is reached."""
        with self._cv:
            while self._running and self._active >= self._limit:
                self._cv.wait(timeout=0.5)

            if not self._running:
                stopped: Future = Future()
                stopped.set_exception(ControllerStopped("controller is stopped"))
                return stopped

            self._active += 1

        return self._executor.submit(self._wrap, fn, *args)

    def _wrap(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        finally:
            with self._cv:
                self._active = max(0, self._active - 1)
                self._cv.notify_all()

