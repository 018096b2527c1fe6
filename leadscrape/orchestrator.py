"""
Job coordinator for multi-town, multi-industry scraping runs.

A run has three phases. Every work unit is scraped through the batch
manager and failures go to the retry queue. The queue is then drained
until each unit has succeeded or been abandoned. When provider lookup is
enabled, distinct phone numbers are resolved from the cache or live and
the records are annotated.

Consumers observe the run only through events: progress, log, error,
complete and lookup-progress. pause(), resume() and stop() take effect at
the next batch boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .batch import BrowserBatchManager
from .captcha import CaptchaDetector, failed_rate_exceeded
from .config import ScraperConfig
from .errors import BrowserLifecycleError
from .events import COMPLETE, ERROR, LOG, LOOKUP_PROGRESS, PROGRESS, EventEmitter
from .industry_scraper import IndustryScraper
from .logging_utils import log_event
from .metrics import MetricsCollector
from .models import (
    ITEM_TYPE_LOOKUP,
    ITEM_TYPE_SCRAPE,
    UNKNOWN_PROVIDER,
    BatchItemResult,
    BusinessRecord,
    JobReport,
    NavigationStats,
    ProviderCacheEntry,
    RetryItem,
    ScrapeJob,
    UnitOutcome,
    WorkUnit,
)
from .navigation import NavigationManager
from .phones import normalize_phone
from .provider_cache import ProviderLookupCache
from .retry_queue import RetryQueue
from .storage import RecordStorage

logger = logging.getLogger(__name__)

ItemFn = Callable[[Any, Any], Any]


def _describe(error: Optional[BaseException]) -> str:
    if error is None:
        return "unknown error"
    return f"{type(error).__name__}: {error}"


class ScrapingOrchestrator:
    def __init__(
        self,
        job: ScrapeJob,
        scrape_batches: BrowserBatchManager,
        retry_queue: RetryQueue,
        navigator: Optional[NavigationManager] = None,
        lookup_navigator: Optional[NavigationManager] = None,
        cache: Optional[ProviderLookupCache] = None,
        lookup_batches: Optional[BrowserBatchManager] = None,
        lookup_fn: Optional[ItemFn] = None,
        events: Optional[EventEmitter] = None,
        scraper_config: Optional[ScraperConfig] = None,
        captcha_detector: Optional[CaptchaDetector] = None,
        metrics: Optional[MetricsCollector] = None,
        storage: Optional[RecordStorage] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if job.do_provider_lookup and (cache is None or lookup_fn is None):
            raise ValueError("provider lookup needs a cache and a lookup function")
        self.job = job
        self.events = events or EventEmitter()
        self._scrape_batches = scrape_batches
        self._lookup_batches = lookup_batches or scrape_batches
        self._queue = retry_queue
        self._navigator = navigator or NavigationManager()
        self._lookup_navigator = lookup_navigator
        self._cache = cache
        self._lookup_fn = lookup_fn
        self._scraper_config = scraper_config or ScraperConfig()
        self._captcha = captcha_detector or CaptchaDetector()
        self._metrics = metrics or MetricsCollector()
        self._storage = storage
        self._sleep = sleep
        self._clock = clock

        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._lock = threading.Lock()
        self._records: List[BusinessRecord] = []
        self._units = job.work_units()
        self._attempted: Set[str] = set()
        self._succeeded: Set[str] = set()
        self._abandoned_units: Set[str] = set()
        self._report = JobReport(session_id=job.session_id, units_total=len(self._units))
        self._started_at: Optional[float] = None

    # public surface

    @property
    def session_id(self) -> str:
        return self.job.session_id

    @property
    def status(self) -> str:
        return self.job.status

    def stop(self) -> None:
        """Request cancellation; the batch in flight finishes first."""
        if not self._stop_event.is_set():
            self._stop_event.set()
            self._resume_event.set()
            self._log("Stop requested; finishing the current batch")

    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def pause(self) -> None:
        """Hold the run at the next batch boundary until resume() or stop()."""
        with self._lock:
            if self.job.status != "running":
                return
            self.job.status = "paused"
            self._resume_event.clear()
        self._log("Pause requested; finishing the current batch")

    def resume(self) -> None:
        with self._lock:
            if self.job.status != "paused":
                return
            self.job.status = "running"
            self._resume_event.set()
        self._log("Resuming")

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    def results(self) -> List[BusinessRecord]:
        with self._lock:
            return list(self._records)

    def report(self) -> JobReport:
        return self._report

    def navigation_stats(self) -> NavigationStats:
        return self._navigator.statistics()

    def lookup_navigation_stats(self) -> Optional[NavigationStats]:
        """Rolling navigation window of the carrier lookups, when they navigate pages."""
        if self._lookup_navigator is None:
            return None
        return self._lookup_navigator.statistics()

    def run(self, resume: bool = False) -> JobReport:
        """Run the job to a terminal status and return its report.

        With ``resume`` the fresh work units are skipped and only the
        persisted retry items of this session are processed.
        """
        if self.job.status != "pending":
            raise RuntimeError(f"job {self.session_id} already {self.job.status}")
        self.job.status = "running"
        self._started_at = self._clock()
        self._navigator.reset()
        if self._lookup_navigator is not None:
            self._lookup_navigator.reset()
        self._log(
            f"Starting job with {len(self.job.towns)} towns x {len(self.job.industries)} industries",
            towns=len(self.job.towns),
            industries=len(self.job.industries),
            resume=resume,
        )

        try:
            if not resume:
                if self._scrape_phase():
                    return self._finish("failed")
            self._drain(ITEM_TYPE_SCRAPE, self._scrape_unit, self._on_unit_retry_result)

            if self.job.do_provider_lookup and not self.stop_requested():
                self._lookup_phase()
        except Exception as exc:
            log_event(logger, logging.ERROR, "job_crashed", session_id=self.session_id, error=_describe(exc))
            self.events.emit(ERROR, {"session_id": self.session_id, "error": _describe(exc), "fatal": True})
            self._finish("failed")
            raise

        return self._finish("stopped" if self.stop_requested() else "completed")

    # phase 1: fresh work units

    def _scrape_phase(self) -> bool:
        """Scrape every unit once. Returns True when no browser could be launched at all."""
        launch_failures = 0
        handled = 0
        for results in self._dispatch(self._scrape_batches, self._units, self._scrape_unit):
            for result in results:
                if result.skipped:
                    continue
                handled += 1
                unit: WorkUnit = result.item
                self._attempted.add(unit.key)
                if result.success:
                    self._accept(unit, result.value)
                    continue
                if isinstance(result.error, BrowserLifecycleError) and result.error.during_launch:
                    launch_failures += 1
                queued = self._requeue(ITEM_TYPE_SCRAPE, unit.key, unit.to_data(), result.error)
                self._emit_unit_error(unit, result.error, retrying=queued)

        if handled and launch_failures == handled and self._scrape_batches.browsers_launched == 0:
            self.events.emit(
                ERROR,
                {"session_id": self.session_id, "error": "no browser could be launched", "fatal": True},
            )
            self._log("No browser could be launched; job failed", level=logging.ERROR)
            return True
        return False

    def _scrape_unit(self, browser: Any, unit: WorkUnit) -> List[BusinessRecord]:
        started = self._clock()
        page = browser.new_page()
        try:
            scraper = IndustryScraper(page, self._navigator, self._scraper_config, self._captcha, sleep=self._sleep)
            records = scraper.scrape(unit.town, unit.industry)
        except Exception as exc:
            self._record_outcome("scrape", unit.key, started, exc)
            raise
        finally:
            page.close()
        self._record_outcome("scrape", unit.key, started, None)
        return records

    def _on_unit_retry_result(self, item: RetryItem, result: BatchItemResult) -> None:
        unit = WorkUnit.from_data(item.item_data)
        self._attempted.add(unit.key)
        if result.success:
            self._accept(unit, result.value)
        else:
            self._emit_unit_error(unit, result.error, retrying=True)

    def _accept(self, unit: WorkUnit, records: Sequence[BusinessRecord]) -> None:
        with self._lock:
            self._records.extend(records)
            self._succeeded.add(unit.key)
            total_found = len(self._records)
        self._log(f"Scraped {len(records)} businesses for {unit.industry or 'all'} in {unit.town}", town=unit.town, industry=unit.industry)
        self._emit_progress(new_records=list(records), businesses_found=total_found)

    # retries

    def _drain(
        self,
        item_type: str,
        per_item_fn: ItemFn,
        on_result: Callable[[RetryItem, BatchItemResult], None],
        batches: Optional[BrowserBatchManager] = None,
    ) -> None:
        """Process due retry items until none are left or a stop is requested."""
        batches = batches or self._scrape_batches
        decode = WorkUnit.from_data if item_type == ITEM_TYPE_SCRAPE else (lambda data: data["phone"])

        while not self._checkpoint():
            ready = self._queue.dequeue_ready(self.session_id, item_type)
            if not ready:
                next_time = self._queue.next_retry_time(self.session_id, item_type)
                if next_time is None:
                    return
                wait = (next_time - self._queue.now()).total_seconds()
                if wait > 0:
                    self._stop_event.wait(wait)
                continue

            self._log(f"Retrying {len(ready)} {item_type} item(s)", item_type=item_type, count=len(ready))

            def run_item(browser: Any, item: RetryItem) -> Any:
                return per_item_fn(browser, decode(item.item_data))

            for results in self._dispatch(batches, ready, run_item):
                for result in results:
                    if result.skipped:
                        continue
                    item: RetryItem = result.item
                    if result.success:
                        self._queue.ack(item)
                    elif self._queue.reschedule(item, _describe(result.error)) is None:
                        self._on_abandoned(item.item_type, item.item_key, item.attempts + 1, result.error)
                    on_result(item, result)

    def _requeue(self, item_type: str, item_key: str, item_data: Dict[str, Any], error: Optional[BaseException]) -> bool:
        """Queue a failed item for retry. Returns False when it was abandoned instead."""
        if self._queue.enqueue(self.session_id, item_type, item_key, item_data, _describe(error)) is not None:
            return True
        self._on_abandoned(item_type, item_key, self._queue.config.max_attempts, error)
        return False

    def _on_abandoned(self, item_type: str, item_key: str, attempts: int, error: Optional[BaseException]) -> None:
        entry = {
            "item_type": item_type,
            "item_key": item_key,
            "attempts": attempts,
            "error": _describe(error),
        }
        self._report.abandoned_items.append(entry)
        if item_type == ITEM_TYPE_SCRAPE:
            self._abandoned_units.add(item_key)
            self._emit_progress(new_records=[], businesses_found=len(self.results()))
        self.events.emit(ERROR, {"session_id": self.session_id, **entry, "abandoned": True, "fatal": False})
        self._log(f"Giving up on {item_type} {item_key} after {attempts} attempts", level=logging.WARNING)

    # phase 3: provider lookups

    def _lookup_phase(self) -> None:
        """Resolve providers for every distinct phone, then retry failed lookups.

        Lookup retries persisted by an earlier run of the session are drained
        even when this run found no phone numbers.
        """
        phones: List[str] = []
        seen: Set[str] = set()
        for record in self.results():
            key = normalize_phone(record.phone)
            if key and key not in seen:
                seen.add(key)
                phones.append(key)

        providers: Dict[str, str] = {}
        misses: List[str] = []
        if phones:
            cached = self._cache.get_many(phones)
            providers.update((phone, entry.provider) for phone, entry in cached.items())
            self._report.lookups_from_cache = len(cached)
            misses = [p for p in phones if p not in cached]
            self._log(f"Provider lookup: {len(cached)} cached, {len(misses)} to look up", cached=len(cached), misses=len(misses))
            self._emit_lookup_progress(len(providers), len(phones), None)

        for results in self._dispatch(self._lookup_batches, misses, self._lookup_phone):
            fresh: List[ProviderCacheEntry] = []
            for result in results:
                if result.skipped:
                    continue
                phone = result.item
                self._report.lookups_live += 1
                if result.success:
                    entry: ProviderCacheEntry = result.value
                    providers[phone] = entry.provider
                    self._report.lookups_succeeded += 1
                    if entry.provider != UNKNOWN_PROVIDER:
                        fresh.append(entry)
                    self._emit_lookup_progress(len(providers), len(phones), phone, entry.provider)
                elif self._requeue(ITEM_TYPE_LOOKUP, phone, {"phone": phone}, result.error):
                    self.events.emit(
                        ERROR,
                        {"session_id": self.session_id, "phone": phone, "error": _describe(result.error), "fatal": False},
                    )
            self._cache.put_many(fresh)
            attempted = [r for r in results if not r.skipped]
            if failed_rate_exceeded(sum(1 for r in attempted if r.success), len(attempted)):
                self._log(
                    f"Most lookups in this round failed ({len(attempted)} attempted), the lookup site may be rate limiting",
                    level=logging.WARNING,
                )

        def on_lookup_retry(item: RetryItem, result: BatchItemResult) -> None:
            if not result.success:
                return
            phone = item.item_data["phone"]
            if phone not in seen:
                # persisted by an earlier run of this session
                seen.add(phone)
                phones.append(phone)
            entry: ProviderCacheEntry = result.value
            providers[phone] = entry.provider
            self._report.lookups_succeeded += 1
            if entry.provider != UNKNOWN_PROVIDER:
                self._cache.put_many([entry])
            self._emit_lookup_progress(len(providers), len(phones), phone, entry.provider)

        self._drain(ITEM_TYPE_LOOKUP, self._lookup_phone, on_lookup_retry, batches=self._lookup_batches)

        self._report.phones_total = len(phones)
        self._report.lookups_abandoned = sum(1 for a in self._report.abandoned_items if a["item_type"] == ITEM_TYPE_LOOKUP)
        self._report.lookups_not_attempted = len(misses) - self._report.lookups_live
        with self._lock:
            self._records = [r.with_provider(providers.get(normalize_phone(r.phone))) for r in self._records]

    def _lookup_phone(self, browser: Any, phone: str) -> ProviderCacheEntry:
        started = self._clock()
        try:
            entry = self._lookup_fn(browser, phone)
        except Exception as exc:
            self._record_outcome("lookup", phone, started, exc)
            raise
        self._record_outcome("lookup", phone, started, None)
        return entry

    # plumbing

    def _dispatch(self, batches: BrowserBatchManager, items: Sequence[Any], fn: ItemFn) -> Iterator[List[BatchItemResult]]:
        """Hand items to the batch manager one round of batches at a time."""
        cfg = batches.config
        round_size = cfg.max_items_per_browser * max(1, cfg.concurrency)
        items = list(items)
        for start in range(0, len(items), round_size):
            yield batches.with_browser(items[start : start + round_size], fn, self._checkpoint)

    def _checkpoint(self) -> bool:
        """Block while paused, then report whether a stop was requested."""
        while not self._resume_event.wait(0.5):
            pass
        return self.stop_requested()

    def _record_outcome(self, kind: str, key: str, started: float, error: Optional[BaseException]) -> None:
        latency_ms = int((self._clock() - started) * 1000)
        self._metrics.record(
            UnitOutcome(
                kind=kind,
                key=key,
                success=error is None,
                latency_ms=latency_ms,
                error_type=type(error).__name__ if error is not None else None,
            )
        )

    def _emit_unit_error(self, unit: WorkUnit, error: Optional[BaseException], retrying: bool) -> None:
        payload = {
            "session_id": self.session_id,
            "town": unit.town,
            "industry": unit.industry,
            "error": _describe(error),
            "error_type": type(error).__name__ if error is not None else None,
            "retrying": retrying,
            "fatal": False,
        }
        self.events.emit(ERROR, payload)
        self._log(f"Failed {unit.industry or 'all'} in {unit.town}: {_describe(error)}", level=logging.WARNING)

    def _towns_completed(self) -> int:
        resolved = self._succeeded | self._abandoned_units
        per_town: Dict[str, int] = defaultdict(int)
        for unit in self._units:
            if unit.key in resolved:
                per_town[unit.town] += 1
        return sum(1 for town in self.job.towns if per_town[town] == len(self.job.industries))

    def _emit_progress(self, new_records: List[BusinessRecord], businesses_found: int) -> None:
        total = len(self._units)
        resolved = len(self._succeeded | self._abandoned_units)
        elapsed = self._clock() - (self._started_at or self._clock())
        eta = (elapsed / resolved) * (total - resolved) if resolved else None
        towns_done = self._towns_completed()
        payload = {
            "session_id": self.session_id,
            "units_completed": resolved,
            "units_total": total,
            "towns_completed": towns_done,
            "towns_total": len(self.job.towns),
            "towns_remaining": len(self.job.towns) - towns_done,
            "businesses_found": businesses_found,
            "percentage": round(100.0 * resolved / total, 1) if total else 100.0,
            "eta_secs": eta,
            "new_records": new_records,
        }
        self.events.emit(PROGRESS, payload)

    def _emit_lookup_progress(self, completed: int, total: int, phone: Optional[str], provider: Optional[str] = None) -> None:
        self.events.emit(
            LOOKUP_PROGRESS,
            {"session_id": self.session_id, "completed": completed, "total": total, "phone": phone, "provider": provider},
        )

    def _log(self, message: str, level: int = logging.INFO, **fields: Any) -> None:
        log_event(logger, level, "orchestrator", session_id=self.session_id, message=message, **fields)
        self.events.emit(LOG, {"session_id": self.session_id, "level": logging.getLevelName(level), "message": message, "timestamp": time.time()})

    def _finish(self, status: str) -> JobReport:
        self.job.status = status
        report = self._report
        report.status = status
        report.units_attempted = len(self._attempted)
        report.units_succeeded = len(self._succeeded)
        report.units_abandoned = len(self._abandoned_units)
        report.units_not_attempted = report.units_total - report.units_attempted
        records = self.results()
        report.businesses_found = len(records)
        report.browsers_launched = self._scrape_batches.browsers_launched
        if self._lookup_batches is not self._scrape_batches:
            report.browsers_launched += self._lookup_batches.browsers_launched
        report.duration_secs = self._clock() - (self._started_at or self._clock())
        report.metrics = self._metrics.snapshot(window_secs=max(1, int(report.duration_secs) + 1))

        if self._storage is not None:
            for record in records:
                self._storage.write(self.session_id, record)

        self._log(
            f"Job {status}: {report.units_succeeded}/{report.units_total} units succeeded, "
            f"{report.units_abandoned} abandoned, {report.businesses_found} businesses",
            status=status,
        )
        self.events.emit(COMPLETE, {"session_id": self.session_id, "status": status, "businesses": records, "report": report})
        return report
