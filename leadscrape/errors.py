from __future__ import annotations

from typing import Optional


class ScraperError(Exception):
    """Base class for all scraping failures."""


class NavigationError(ScraperError):
    """Raised when every wait strategy and retry has been exhausted."""

    def __init__(self, url: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        detail = f"{type(last_error).__name__}: {last_error}" if last_error is not None else "unknown error"
        super().__init__(f"Navigation to {url} failed after {attempts} attempts. Last error: {detail}")


class ExtractionError(ScraperError):
    """A listing card or page is missing a required field."""


class BrowserLifecycleError(ScraperError):
    def __init__(self, message: str, during_launch: bool = False) -> None:
        super().__init__(message)
        self.during_launch = during_launch


class CaptchaDetectedError(ScraperError):
    def __init__(self, message: str, indicators: Optional[list] = None) -> None:
        super().__init__(message)
        self.indicators = list(indicators or [])


class ProviderLookupError(ScraperError):
    def __init__(self, phone: str, message: str) -> None:
        super().__init__(f"{phone}: {message}")
        self.phone = phone
