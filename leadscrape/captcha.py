from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .errors import CaptchaDetectedError
from .logging_utils import log_event

logger = logging.getLogger(__name__)

CAPTCHA_KEYWORDS = (
    "recaptcha",
    "g-recaptcha",
    "grecaptcha",
    "hcaptcha",
    "h-captcha",
    "verify you are human",
    "unusual traffic",
    "automated requests",
)

CAPTCHA_SELECTORS = (
    'iframe[src*="recaptcha"]',
    'iframe[src*="captcha"]',
    'div[class*="recaptcha"]',
    'div[class*="captcha"]',
    'div[id*="recaptcha"]',
    'div[id*="captcha"]',
    ".g-recaptcha",
    "#g-recaptcha",
)

BLOCKING_STATUSES = (403, 429)


@dataclass(frozen=True)
class CaptchaDetection:
    detected: bool
    indicators: List[str] = field(default_factory=list)

    def raise_if_detected(self, url: str = "") -> None:
        if self.detected:
            raise CaptchaDetectedError(f"captcha or block page at {url or 'page'}", self.indicators)


class CaptchaDetector:
    """Looks for captcha challenges and blocking responses on a loaded page."""

    def __init__(self, keywords=CAPTCHA_KEYWORDS, selectors=CAPTCHA_SELECTORS) -> None:
        self._keywords = tuple(k.lower() for k in keywords)
        self._selectors = tuple(selectors)

    def detect(self, page: Any, status: Optional[int] = None) -> CaptchaDetection:
        indicators: List[str] = []
        if status in BLOCKING_STATUSES:
            indicators.append(f"http_{status}")

        html = (page.content() or "").lower()
        indicators.extend(f"keyword:{k}" for k in self._keywords if k in html)

        for selector in self._selectors:
            if page.query_selector(selector) is not None:
                indicators.append(f"selector:{selector}")

        detection = CaptchaDetection(detected=bool(indicators), indicators=indicators)
        if detection.detected:
            log_event(logger, logging.WARNING, "captcha_detected", url=getattr(page, "url", None), indicators=indicators)
        return detection

    def detect_html(self, html: str, status: Optional[int] = None) -> CaptchaDetection:
        """Same checks for a raw HTML response, used by the HTTP lookup backend."""
        indicators: List[str] = []
        if status in BLOCKING_STATUSES:
            indicators.append(f"http_{status}")
        lowered = (html or "").lower()
        indicators.extend(f"keyword:{k}" for k in self._keywords if k in lowered)
        return CaptchaDetection(detected=bool(indicators), indicators=indicators)


def failed_rate_exceeded(successes: int, total: int, threshold: float = 0.5) -> bool:
    """True when more than ``threshold`` of a batch of lookups failed."""
    if total <= 0:
        return False
    return (total - successes) / total > threshold
