"""
Job submission interface.

ScrapeService owns the process-wide collaborators (database, launchers,
provider cache, retry queue) and runs each submitted job on its own daemon
thread. Navigation managers are built per job so their rolling timeout
windows start fresh with every session. Callers keep only the session id
from the returned handle and use it to subscribe to events, read results,
pause or stop the job.

Finished sessions are dropped from the registry after a short grace
period, unfinished ones after a day.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from .batch import BrowserBatchManager
from .browser import BrowserConfig, BrowserLauncher, CurlSessionLauncher, PlaywrightLauncher
from .captcha import CaptchaDetector
from .config import Settings
from .db import create_db_engine, create_session_factory, init_db
from .events import COMPLETE, EventEmitter
from .industry_scraper import BusinessLookupScraper
from .logging_utils import log_event
from .models import BusinessRecord, JobReport, ScrapeJob
from .navigation import NavigationManager
from .orchestrator import ScrapingOrchestrator
from .provider_cache import ProviderLookupCache
from .provider_lookup import BrowserProviderLookup, HttpProviderLookup
from .retry_queue import RetryQueue
from .storage import RecordStorage

logger = logging.getLogger(__name__)

COMPLETED_SESSION_TTL_SECS = 5 * 60
STALE_SESSION_TTL_SECS = 24 * 60 * 60

LookupFn = Callable[[Any, str], Any]


@dataclass(frozen=True)
class JobHandle:
    session_id: str
    thread: threading.Thread


@dataclass
class _Session:
    orchestrator: ScrapingOrchestrator
    created_at: float
    completed_at: Optional[float] = None
    thread: Optional[threading.Thread] = None


class ScrapeService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
        launcher: Optional[BrowserLauncher] = None,
        lookup_launcher: Optional[BrowserLauncher] = None,
        lookup_fn: Optional[LookupFn] = None,
        storage: Optional[RecordStorage] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or Settings.from_env()
        if session_factory is None:
            engine = create_db_engine(self._settings.database_url)
            init_db(engine)
            session_factory = create_session_factory(engine)
        self._session_factory = session_factory
        self._retry_queue = RetryQueue(session_factory, self._settings.retry)
        self._cache = ProviderLookupCache(session_factory)
        self._captcha = CaptchaDetector()

        browser_config = BrowserConfig(headless=self._settings.headless, executable_path=self._settings.chromium_path)
        self._launcher = launcher or PlaywrightLauncher(browser_config)
        self._lookup_fn = lookup_fn
        if lookup_launcher is None and lookup_fn is None and self._settings.lookup.backend == "http":
            lookup_launcher = CurlSessionLauncher()
        self._lookup_launcher = lookup_launcher or self._launcher
        self._storage = storage
        self._clock = clock

        self._lock = threading.Lock()
        self._sessions: Dict[str, _Session] = {}

    @property
    def cache(self) -> ProviderLookupCache:
        return self._cache

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry_queue

    def _lookup_for_job(self) -> Tuple[LookupFn, Optional[NavigationManager]]:
        """The carrier lookup function of one job, plus its navigator when it drives pages."""
        if self._lookup_fn is not None:
            return self._lookup_fn, None
        if self._settings.lookup.backend == "http":
            return HttpProviderLookup(self._settings.lookup, self._captcha), None
        navigator = NavigationManager(self._settings.navigation)
        return BrowserProviderLookup(navigator, self._settings.lookup, self._captcha), navigator

    def create_job(
        self,
        towns: Iterable[str],
        industries: Iterable[str],
        do_provider_lookup: bool = False,
        concurrency: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> ScrapingOrchestrator:
        """Build an orchestrator for a job and register it without starting it."""
        job = ScrapeJob.create(
            towns,
            industries,
            do_provider_lookup=do_provider_lookup,
            concurrency=concurrency or self._settings.batch.concurrency,
            session_id=session_id,
        )
        batch_config = replace(self._settings.batch, concurrency=job.concurrency)
        lookup_fn, lookup_navigator = self._lookup_for_job()
        orchestrator = ScrapingOrchestrator(
            job,
            scrape_batches=BrowserBatchManager(self._launcher, batch_config),
            retry_queue=self._retry_queue,
            navigator=NavigationManager(self._settings.navigation),
            lookup_navigator=lookup_navigator,
            cache=self._cache,
            lookup_batches=BrowserBatchManager(self._lookup_launcher, batch_config),
            lookup_fn=lookup_fn,
            events=EventEmitter(),
            scraper_config=self._settings.scraper,
            captcha_detector=self._captcha,
            storage=self._storage,
        )
        with self._lock:
            if job.session_id in self._sessions:
                raise ValueError(f"session {job.session_id} already exists")
            self._sessions[job.session_id] = _Session(orchestrator, created_at=self._clock())
        orchestrator.events.on(COMPLETE, lambda payload: self._mark_complete(job.session_id))
        return orchestrator

    def submit(
        self,
        towns: Iterable[str],
        industries: Iterable[str],
        do_provider_lookup: bool = False,
        concurrency: Optional[int] = None,
        session_id: Optional[str] = None,
        resume: bool = False,
        listeners: Optional[Dict[str, List[Callable[[Any], None]]]] = None,
    ) -> JobHandle:
        """Start a job on a background thread and return its handle."""
        self.cleanup_old_sessions()
        orchestrator = self.create_job(towns, industries, do_provider_lookup, concurrency, session_id)
        for event, callbacks in (listeners or {}).items():
            for callback in callbacks:
                orchestrator.events.on(event, callback)
        thread = threading.Thread(
            target=self._run,
            args=(orchestrator, resume),
            name=f"leadscrape-{orchestrator.session_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._sessions[orchestrator.session_id].thread = thread
        thread.start()
        log_event(logger, logging.INFO, "job_submitted", session_id=orchestrator.session_id, resume=resume)
        return JobHandle(session_id=orchestrator.session_id, thread=thread)

    def _run(self, orchestrator: ScrapingOrchestrator, resume: bool) -> None:
        try:
            orchestrator.run(resume=resume)
        except Exception:
            logger.exception("job %s crashed", orchestrator.session_id)

    def _mark_complete(self, session_id: str) -> None:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is not None:
                entry.completed_at = self._clock()

    def subscribe(self, session_id: str, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        return self._get(session_id).events.on(event, callback)

    def results(self, session_id: str) -> List[BusinessRecord]:
        return self._get(session_id).results()

    def report(self, session_id: str) -> JobReport:
        return self._get(session_id).report()

    def status(self, session_id: str) -> str:
        return self._get(session_id).status

    def stop(self, session_id: str) -> None:
        self._get(session_id).stop()

    def pause(self, session_id: str) -> None:
        self._get(session_id).pause()

    def resume(self, session_id: str) -> None:
        self._get(session_id).resume()

    def wait(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job thread ends; False on timeout."""
        with self._lock:
            entry = self._sessions.get(session_id)
            thread = entry.thread if entry is not None else None
        if thread is None:
            return self._get(session_id).job.is_terminal
        thread.join(timeout)
        return not thread.is_alive()

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def delete_session(self, session_id: str) -> bool:
        """Forget a session. Returns False when it is unknown.

        A running or paused job has to be stopped first.
        """
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return False
            if entry.orchestrator.status in ("running", "paused"):
                raise RuntimeError(f"session {session_id} is still {entry.orchestrator.status}")
            del self._sessions[session_id]
        log_event(logger, logging.INFO, "session_deleted", session_id=session_id)
        return True

    def cleanup_old_sessions(
        self,
        completed_ttl_secs: float = COMPLETED_SESSION_TTL_SECS,
        stale_ttl_secs: float = STALE_SESSION_TTL_SECS,
    ) -> int:
        """Drop sessions finished more than ``completed_ttl_secs`` ago and
        unfinished ones created more than ``stale_ttl_secs`` ago."""
        now = self._clock()
        expired: List[_Session] = []
        with self._lock:
            for session_id, entry in list(self._sessions.items()):
                if entry.completed_at is not None:
                    if now - entry.completed_at > completed_ttl_secs:
                        expired.append(self._sessions.pop(session_id))
                elif now - entry.created_at > stale_ttl_secs:
                    expired.append(self._sessions.pop(session_id))
        for entry in expired:
            if not entry.orchestrator.job.is_terminal:
                entry.orchestrator.stop()
        if expired:
            log_event(logger, logging.INFO, "sessions_cleaned", count=len(expired))
        return len(expired)

    def lookup_business(self, query: str) -> List[BusinessRecord]:
        """Search the map listings for one free-text business query on a fresh browser."""
        navigator = NavigationManager(self._settings.navigation)
        with self._launcher.launch() as browser:
            page = browser.new_page()
            try:
                scraper = BusinessLookupScraper(page, navigator, self._settings.scraper, self._captcha)
                return scraper.lookup(query)
            finally:
                page.close()

    def cleanup_cache(self) -> int:
        return self._cache.cleanup(self._settings.lookup.cache_max_age_days)

    def _get(self, session_id: str) -> ScrapingOrchestrator:
        with self._lock:
            try:
                return self._sessions[session_id].orchestrator
            except KeyError:
                raise KeyError(f"unknown session {session_id}") from None
