"""
Runtime configuration for leadscrape.

Values come from the environment (optionally a .env file) with the
defaults below; the CLI overrides individual fields.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///leadscrape.db"


@dataclass(frozen=True)
class NavigationConfig:
    max_retries: int = 5
    base_delay_secs: float = 3.0
    min_timeout_ms: int = 15_000
    max_timeout_ms: int = 120_000
    initial_timeout_ms: int = 60_000
    timeout_step_ms: int = 30_000
    history_size: int = 10

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if not self.min_timeout_ms <= self.initial_timeout_ms <= self.max_timeout_ms:
            raise ValueError("initial_timeout_ms must lie within [min_timeout_ms, max_timeout_ms]")


@dataclass(frozen=True)
class BatchConfig:
    max_items_per_browser: int = 5
    inter_item_delay_secs: float = 0.5
    concurrency: int = 1

    def __post_init__(self) -> None:
        if self.max_items_per_browser < 1:
            raise ValueError("max_items_per_browser must be at least 1")


@dataclass(frozen=True)
class RetryConfig:
    base_delay_secs: float = 1.0
    max_delay_secs: float = 300.0
    max_attempts: int = 5


@dataclass(frozen=True)
class ScraperConfig:
    country: str = "South Africa"
    max_scroll_rounds: int = 40
    stale_scroll_rounds: int = 3
    scroll_pause_secs: float = 1.5
    settle_secs: float = 2.0


@dataclass(frozen=True)
class LookupConfig:
    backend: str = "browser"
    base_url: str = "https://www.porting.co.za/PublicWebsite/crdb"
    result_selector: str = "span.p1"
    result_timeout_ms: int = 10_000
    cache_max_age_days: int = 30


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    headless: bool = True
    chromium_path: Optional[str] = None
    log_level: str = "INFO"
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    lookup: LookupConfig = field(default_factory=LookupConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """Load settings from LEADSCRAPE_* environment variables."""
        load_dotenv(dotenv_path)
        return cls(
            database_url=os.getenv("LEADSCRAPE_DATABASE_URL", DEFAULT_DATABASE_URL),
            headless=_env_bool("LEADSCRAPE_HEADLESS", True),
            chromium_path=os.getenv("CHROMIUM_PATH") or None,
            log_level=os.getenv("LEADSCRAPE_LOG_LEVEL", "INFO"),
            batch=BatchConfig(
                max_items_per_browser=int(os.getenv("LEADSCRAPE_MAX_ITEMS_PER_BROWSER", "5")),
                inter_item_delay_secs=float(os.getenv("LEADSCRAPE_INTER_ITEM_DELAY", "0.5")),
                concurrency=int(os.getenv("LEADSCRAPE_CONCURRENCY", "1")),
            ),
            retry=RetryConfig(
                base_delay_secs=float(os.getenv("LEADSCRAPE_RETRY_BASE_DELAY", "1.0")),
                max_delay_secs=float(os.getenv("LEADSCRAPE_RETRY_MAX_DELAY", "300")),
                max_attempts=int(os.getenv("LEADSCRAPE_RETRY_MAX_ATTEMPTS", "5")),
            ),
            lookup=LookupConfig(
                backend=os.getenv("LEADSCRAPE_LOOKUP_BACKEND", "browser"),
                cache_max_age_days=int(os.getenv("LEADSCRAPE_CACHE_MAX_AGE_DAYS", "30")),
            ),
        )
