from __future__ import annotations

import logging
import re
from typing import Any, Optional

from bs4 import BeautifulSoup
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from .captcha import CaptchaDetector
from .config import LookupConfig
from .db import utcnow
from .errors import CaptchaDetectedError, NavigationError, ProviderLookupError
from .logging_utils import log_event
from .models import UNKNOWN_PROVIDER, ProviderCacheEntry
from .navigation import NavigationManager
from .phones import normalize_phone

logger = logging.getLogger(__name__)

PROVIDER_MARKER = "serviced by "
LOOKUP_STRATEGIES = ("networkidle0", "load")

_TRAILING_PUNCT = re.compile(r"[.,;:!?]+$")


def parse_provider(text: Optional[str]) -> str:
    """Return the first word after "serviced by " (any case), or Unknown."""
    cleaned = (text or "").strip()
    if not cleaned:
        return UNKNOWN_PROVIDER
    index = cleaned.lower().find(PROVIDER_MARKER)
    if index < 0:
        return UNKNOWN_PROVIDER
    rest = cleaned[index + len(PROVIDER_MARKER) :].strip()
    if not rest:
        return UNKNOWN_PROVIDER
    provider = _TRAILING_PUNCT.sub("", rest.split()[0])
    return provider or UNKNOWN_PROVIDER


def _entry(phone: str, provider: str) -> ProviderCacheEntry:
    return ProviderCacheEntry(
        phone_number=phone,
        provider=provider,
        confidence=0.0 if provider == UNKNOWN_PROVIDER else 1.0,
        last_checked=utcnow(),
    )


class BrowserProviderLookup:
    """Per-item lookup function for BrowserBatchManager: ``lookup(browser, phone)``."""

    def __init__(
        self,
        navigator: NavigationManager,
        config: Optional[LookupConfig] = None,
        captcha_detector: Optional[CaptchaDetector] = None,
    ) -> None:
        self._navigator = navigator
        self._config = config or LookupConfig()
        self._captcha = captcha_detector or CaptchaDetector()

    def lookup_url(self, phone: str) -> str:
        return f"{self._config.base_url}?msisdn={normalize_phone(phone)}"

    def __call__(self, browser: Any, phone: str) -> ProviderCacheEntry:
        digits = normalize_phone(phone)
        if not digits:
            raise ProviderLookupError(phone, "no digits to look up")
        url = self.lookup_url(digits)
        page = browser.new_page()
        try:
            try:
                nav = self._navigator.navigate_with_retry(page, url, strategies=LOOKUP_STRATEGIES)
            except NavigationError as exc:
                raise ProviderLookupError(digits, str(exc)) from exc
            self._captcha.detect(page, nav.status).raise_if_detected(url)

            try:
                page.wait_for_selector(self._config.result_selector, timeout=self._config.result_timeout_ms)
            except PlaywrightTimeoutError:
                log_event(logger, logging.INFO, "provider_result_missing", phone=digits)
                return _entry(digits, UNKNOWN_PROVIDER)

            text = page.text_content(self._config.result_selector)
            provider = parse_provider(text)
            log_event(logger, logging.INFO, "provider_lookup", phone=digits, provider=provider, backend="browser")
            return _entry(digits, provider)
        finally:
            page.close()


class HttpProviderLookup:
    """Same lookup over a curl_cffi session; pair it with CurlSessionLauncher."""

    def __init__(self, config: Optional[LookupConfig] = None, captcha_detector: Optional[CaptchaDetector] = None) -> None:
        self._config = config or LookupConfig()
        self._captcha = captcha_detector or CaptchaDetector()

    def __call__(self, session: Any, phone: str) -> ProviderCacheEntry:
        digits = normalize_phone(phone)
        if not digits:
            raise ProviderLookupError(phone, "no digits to look up")
        try:
            response = session.get(self._config.base_url, params={"msisdn": digits})
        except Exception as exc:  # noqa: BLE001
            raise ProviderLookupError(digits, f"{type(exc).__name__}: {exc}") from exc

        status = getattr(response, "status_code", None)
        detection = self._captcha.detect_html(response.text, status)
        if detection.detected:
            raise CaptchaDetectedError(f"lookup blocked for {digits}", detection.indicators)
        if status is None or not 200 <= int(status) < 300:
            raise ProviderLookupError(digits, f"HTTP_{status}")

        soup = BeautifulSoup(response.text, "html.parser")
        node = soup.select_one(self._config.result_selector)
        provider = parse_provider(node.get_text(" ", strip=True) if node is not None else None)
        log_event(logger, logging.INFO, "provider_lookup", phone=digits, provider=provider, backend="http")
        return _entry(digits, provider)
