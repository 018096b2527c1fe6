from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Optional, Sequence

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from .backoff import BackoffStrategy
from .config import NavigationConfig
from .errors import NavigationError
from .logging_utils import log_event
from .models import NavigationResult, NavigationStats

logger = logging.getLogger(__name__)

WAIT_STRATEGIES: tuple[str, ...] = ("networkidle2", "networkidle0", "domcontentloaded", "load")

# Playwright has a single network-idle state; both idle rungs use it.
PLAYWRIGHT_WAIT_UNTIL = {
    "networkidle2": "networkidle",
    "networkidle0": "networkidle",
    "domcontentloaded": "domcontentloaded",
    "load": "load",
}


class NavigationManager:
    """Navigates a page with retries, a wait-strategy ladder and an adaptive timeout.

    Each wait strategy gets up to ``max_retries`` attempts. After a failed
    attempt n (counted from zero) the manager sleeps base_delay * 2^n before
    the next attempt of the same strategy; moving to the next strategy does
    not sleep. The timeout for attempt n is the adaptive timeout plus
    n * timeout_step, clamped to [min_timeout, max_timeout].
    """

    def __init__(
        self,
        config: Optional[NavigationConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or NavigationConfig()
        self._sleep = sleep
        self._clock = clock
        self._backoff = BackoffStrategy(base_seconds=self._config.base_delay_secs, max_seconds=float("inf"))
        self._lock = threading.Lock()
        self._history: Deque[int] = deque(maxlen=self._config.history_size)
        self._current_timeout = self._config.initial_timeout_ms

    def navigate_with_retry(
        self,
        page: Any,
        url: str,
        strategies: Optional[Sequence[str]] = None,
    ) -> NavigationResult:
        """Navigate ``page`` to ``url`` or raise NavigationError once every strategy is spent."""
        ladder = tuple(strategies) if strategies else WAIT_STRATEGIES
        unknown = [s for s in ladder if s not in PLAYWRIGHT_WAIT_UNTIL]
        if unknown:
            raise ValueError(f"unknown wait strategies: {unknown}")

        cfg = self._config
        last_error: Optional[BaseException] = None
        total_attempts = 0

        for strategy in ladder:
            for attempt in range(cfg.max_retries):
                total_attempts += 1
                timeout_ms = self._clamp(self.adaptive_timeout() + attempt * cfg.timeout_step_ms)
                started = self._clock()
                try:
                    response = page.goto(url, wait_until=PLAYWRIGHT_WAIT_UNTIL[strategy], timeout=timeout_ms)
                except Exception as exc:  # noqa: BLE001
                    last_error = exc
                    timed_out = isinstance(exc, (PlaywrightTimeoutError, TimeoutError))
                    if timed_out:
                        self._record(timeout_ms)
                    log_event(
                        logger,
                        logging.WARNING,
                        "navigation_attempt",
                        url=url,
                        strategy=strategy,
                        attempt=attempt + 1,
                        timeout_ms=timeout_ms,
                        outcome="timeout" if timed_out else "error",
                        error=f"{type(exc).__name__}: {exc}",
                    )
                    if attempt < cfg.max_retries - 1:
                        self._sleep(self._backoff.get_sleep(attempt))
                    continue

                duration_ms = int(round((self._clock() - started) * 1000))
                self._record(duration_ms)
                status = getattr(response, "status", None) if response is not None else None
                log_event(
                    logger,
                    logging.INFO,
                    "navigation_attempt",
                    url=url,
                    strategy=strategy,
                    attempt=attempt + 1,
                    timeout_ms=timeout_ms,
                    outcome="ok",
                    duration_ms=duration_ms,
                    status=status,
                )
                return NavigationResult(
                    url=url,
                    strategy=strategy,
                    attempt=attempt + 1,
                    timeout_ms=timeout_ms,
                    duration_ms=duration_ms,
                    status=status,
                )

            log_event(logger, logging.WARNING, "navigation_strategy_exhausted", url=url, strategy=strategy)

        raise NavigationError(url, total_attempts, last_error)

    def adaptive_timeout(self) -> int:
        with self._lock:
            if len(self._history) < 3:
                return self._current_timeout
            avg = sum(self._history) / len(self._history)
            return self._clamp(int(math.ceil(avg * 2)))

    def statistics(self) -> NavigationStats:
        with self._lock:
            recent = tuple(self._history)
            current = self._current_timeout
        avg = (sum(recent) / len(recent)) if recent else 0.0
        return NavigationStats(
            current_timeout_ms=current,
            average_navigation_ms=avg,
            navigation_count=len(recent),
            recent_times_ms=recent,
        )

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._current_timeout = self._config.initial_timeout_ms

    def _record(self, duration_ms: int) -> None:
        with self._lock:
            self._history.append(duration_ms)
            current = self._current_timeout
            if duration_ms > current * 0.8:
                current = min(self._config.max_timeout_ms, current + 15_000)
            elif duration_ms < current * 0.5:
                current = max(self._config.min_timeout_ms, current - 10_000)
            self._current_timeout = current

    def _clamp(self, timeout_ms: int) -> int:
        return max(self._config.min_timeout_ms, min(self._config.max_timeout_ms, int(timeout_ms)))
