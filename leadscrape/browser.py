from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple

from curl_cffi import requests as curl_requests
from playwright.sync_api import Browser, sync_playwright

from .errors import BrowserLifecycleError
from .logging_utils import log_event

logger = logging.getLogger(__name__)

CHROMIUM_ARGS: Tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-extensions",
    "--disable-default-apps",
    "--disable-sync",
    "--window-size=1920,1080",
)


@dataclass(frozen=True)
class BrowserConfig:
    headless: bool = True
    executable_path: Optional[str] = None
    args: Tuple[str, ...] = CHROMIUM_ARGS
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1920, "height": 1080})
    launch_timeout_ms: int = 60_000

    @classmethod
    def from_env(cls) -> "BrowserConfig":
        headless = os.getenv("LEADSCRAPE_HEADLESS", "true").strip().lower() not in ("0", "false", "no", "off")
        return cls(headless=headless, executable_path=os.getenv("CHROMIUM_PATH") or None)


class BrowserLauncher(ABC):
    """Starts one browser-like instance per batch and guarantees it is closed."""

    @abstractmethod
    def launch(self) -> Any:
        """Return a context manager yielding a fresh instance."""


class PlaywrightLauncher(BrowserLauncher):
    """Launches headless Chromium through the Playwright sync API."""

    def __init__(self, config: Optional[BrowserConfig] = None) -> None:
        self._config = config or BrowserConfig()

    @property
    def config(self) -> BrowserConfig:
        return self._config

    @contextmanager
    def launch(self) -> Iterator[Browser]:
        playwright = None
        browser = None
        try:
            playwright = sync_playwright().start()
            browser = playwright.chromium.launch(
                headless=self._config.headless,
                executable_path=self._config.executable_path,
                args=list(self._config.args),
                timeout=self._config.launch_timeout_ms,
            )
        except Exception as exc:  # noqa: BLE001
            if playwright is not None:
                playwright.stop()
            raise BrowserLifecycleError(f"browser launch failed: {exc}", during_launch=True) from exc

        log_event(logger, logging.DEBUG, "browser_launched", headless=self._config.headless)
        try:
            yield browser
        finally:
            try:
                browser.close()
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "browser_close_failed", error=repr(exc))
            playwright.stop()
            log_event(logger, logging.DEBUG, "browser_closed")


class CurlSessionLauncher(BrowserLauncher):
    """Opens a curl_cffi session impersonating Chrome, used by the HTTP lookup backend."""

    def __init__(self, impersonate: str = "chrome120", timeout: int = 20) -> None:
        self._impersonate = impersonate
        self._timeout = timeout

    @contextmanager
    def launch(self) -> Iterator[curl_requests.Session]:
        try:
            session = curl_requests.Session(impersonate=self._impersonate, timeout=self._timeout)
        except Exception as exc:  # noqa: BLE001
            raise BrowserLifecycleError(f"session setup failed: {exc}", during_launch=True) from exc
        try:
            yield session
        finally:
            session.close()
