from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .browser import BrowserLauncher
from .config import BatchConfig
from .controller import ThreadPoolController
from .errors import BrowserLifecycleError, CaptchaDetectedError
from .logging_utils import log_event
from .models import BatchItemResult

logger = logging.getLogger(__name__)

ItemFn = Callable[[Any, Any], Any]

# Errors that poison the current browser: the rest of its batch is not attempted.
BATCH_FATAL_ERRORS = (BrowserLifecycleError, CaptchaDetectedError)


def _chunk(items: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _is_connected(browser: Any) -> bool:
    check = getattr(browser, "is_connected", None)
    if check is None:
        return True
    return bool(check())


class BrowserBatchManager:
    """Processes items in batches, one freshly launched browser per batch.

    No browser ever serves more than ``max_items_per_browser`` items and
    every launched browser is closed before the call returns, whatever
    happened to the items it processed. Results come back in submission
    order, one per item.
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        config: Optional[BatchConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._launcher = launcher
        self._config = config or BatchConfig()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._browsers_launched = 0
        self._launch_failures = 0
        self._items_per_browser: List[int] = []

    @property
    def config(self) -> BatchConfig:
        return self._config

    def with_browser(
        self,
        items: Sequence[Any],
        per_item_fn: ItemFn,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> List[BatchItemResult]:
        """Run ``per_item_fn(browser, item)`` for every item and return one result per item."""
        items = list(items)
        if not items:
            return []
        batches = _chunk(items, self._config.max_items_per_browser)
        stop = should_stop or (lambda: False)

        if self._config.concurrency <= 1 or len(batches) == 1:
            results: List[BatchItemResult] = []
            for index, batch in enumerate(batches):
                results.extend(self._run_batch(index, batch, per_item_fn, stop))
            return results

        controller = ThreadPoolController(max_workers=self._config.concurrency, initial_limit=self._config.concurrency)
        controller.start()
        try:
            futures = [controller.submit(self._run_batch, index, batch, per_item_fn, stop) for index, batch in enumerate(batches)]
            results = []
            for fut in futures:
                results.extend(fut.result())
            return results
        finally:
            controller.stop(wait=True)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "browsers_launched": self._browsers_launched,
                "launch_failures": self._launch_failures,
                "items_per_browser": list(self._items_per_browser),
                "max_items_per_browser": self._config.max_items_per_browser,
            }

    @property
    def browsers_launched(self) -> int:
        with self._lock:
            return self._browsers_launched

    def _run_batch(
        self,
        index: int,
        batch: List[Any],
        per_item_fn: ItemFn,
        should_stop: Callable[[], bool],
    ) -> List[BatchItemResult]:
        if should_stop():
            log_event(logger, logging.INFO, "batch_skipped", batch=index, items=len(batch))
            return [BatchItemResult(item=item, success=False, skipped=True) for item in batch]

        launched = False
        results: List[BatchItemResult] = []
        try:
            with self._launcher.launch() as browser:
                launched = True
                with self._lock:
                    self._browsers_launched += 1
                    browser_index = self._browsers_launched
                log_event(logger, logging.INFO, "batch_started", batch=index, browser=browser_index, items=len(batch))
                results = self._run_items(browser, browser_index, batch, per_item_fn)
        except Exception as exc:  # noqa: BLE001
            if launched:
                log_event(logger, logging.WARNING, "browser_teardown_failed", batch=index, error=repr(exc))
            else:
                error = exc if isinstance(exc, BrowserLifecycleError) else BrowserLifecycleError(
                    f"browser launch failed: {exc}", during_launch=True
                )
                with self._lock:
                    self._launch_failures += 1
                log_event(logger, logging.ERROR, "browser_launch_failed", batch=index, error=str(error))
                return [BatchItemResult(item=item, success=False, error=error) for item in batch]

        ok = sum(1 for r in results if r.success)
        log_event(logger, logging.INFO, "batch_finished", batch=index, succeeded=ok, failed=len(results) - ok)
        return results

    def _run_items(self, browser: Any, browser_index: int, batch: List[Any], per_item_fn: ItemFn) -> List[BatchItemResult]:
        results: List[BatchItemResult] = []
        handed = 0
        try:
            for pos, item in enumerate(batch):
                if pos > 0 and self._config.inter_item_delay_secs > 0:
                    self._sleep(self._config.inter_item_delay_secs)
                handed += 1
                try:
                    value = per_item_fn(browser, item)
                except BATCH_FATAL_ERRORS as exc:
                    log_event(logger, logging.WARNING, "batch_aborted", browser=browser_index, error=repr(exc))
                    results.append(BatchItemResult(item=item, success=False, error=exc, browser_index=browser_index))
                    results.extend(self._abort_rest(batch[pos + 1 :], exc, browser_index))
                    break
                except Exception as exc:  # noqa: BLE001
                    log_event(logger, logging.WARNING, "batch_item_failed", browser=browser_index, error=repr(exc))
                    results.append(BatchItemResult(item=item, success=False, error=exc, browser_index=browser_index))
                    if not _is_connected(browser):
                        lost = BrowserLifecycleError("browser disconnected mid-batch")
                        results.extend(self._abort_rest(batch[pos + 1 :], lost, browser_index))
                        break
                    continue
                results.append(BatchItemResult(item=item, success=True, value=value, browser_index=browser_index))
        finally:
            with self._lock:
                self._items_per_browser.append(handed)
        return results

    @staticmethod
    def _abort_rest(rest: List[Any], error: BaseException, browser_index: int) -> List[BatchItemResult]:
        return [BatchItemResult(item=item, success=False, error=error, browser_index=browser_index) for item in rest]
