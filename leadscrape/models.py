from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

JOB_STATUSES = ("pending", "running", "paused", "completed", "stopped", "failed")
TERMINAL_STATUSES = ("completed", "stopped", "failed")

ITEM_TYPE_SCRAPE = "scrape"
ITEM_TYPE_LOOKUP = "lookup"

UNKNOWN_PROVIDER = "Unknown"


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for value in values:
        value = (value or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


@dataclass
class ScrapeJob:
    session_id: str
    towns: List[str]
    industries: List[str]
    do_provider_lookup: bool = False
    concurrency: int = 1
    status: str = "pending"
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        towns: Iterable[str],
        industries: Iterable[str],
        do_provider_lookup: bool = False,
        concurrency: int = 1,
        session_id: Optional[str] = None,
    ) -> "ScrapeJob":
        """Build a job with ordered, de-duplicated towns and industries."""
        towns = _dedupe(towns)
        industries = _dedupe(industries)
        if not towns:
            raise ValueError("at least one town is required")
        if not industries:
            raise ValueError("at least one industry is required")
        return cls(
            session_id=session_id or str(uuid.uuid4()),
            towns=towns,
            industries=industries,
            do_provider_lookup=do_provider_lookup,
            concurrency=max(1, int(concurrency)),
        )

    def work_units(self) -> List["WorkUnit"]:
        return [WorkUnit(town=t, industry=i) for t in self.towns for i in self.industries]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class WorkUnit:
    town: str
    industry: str

    @property
    def key(self) -> str:
        return f"{self.town}|{self.industry}"

    def to_data(self) -> Dict[str, str]:
        return {"town": self.town, "industry": self.industry}

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "WorkUnit":
        return cls(town=data["town"], industry=data["industry"])


@dataclass(frozen=True)
class BusinessRecord:
    name: str
    town: str
    industry: str
    phone: Optional[str] = None
    address: Optional[str] = None
    map_link: Optional[str] = None
    provider: Optional[str] = None

    def with_provider(self, provider: Optional[str]) -> "BusinessRecord":
        return replace(self, provider=provider)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetryItem:
    id: int
    session_id: str
    item_type: str
    item_key: str
    item_data: Dict[str, Any]
    attempts: int
    next_retry_time: datetime
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None


@dataclass(frozen=True)
class ProviderCacheEntry:
    phone_number: str
    provider: str
    confidence: float
    last_checked: datetime


@dataclass(frozen=True)
class NavigationResult:
    url: str
    strategy: str
    attempt: int
    timeout_ms: int
    duration_ms: int
    status: Optional[int]


@dataclass(frozen=True)
class NavigationStats:
    current_timeout_ms: int
    average_navigation_ms: float
    navigation_count: int
    recent_times_ms: Tuple[int, ...]


@dataclass(frozen=True)
class BatchItemResult:
    item: Any
    success: bool
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False
    browser_index: Optional[int] = None

    @property
    def error_type(self) -> Optional[str]:
        if self.skipped:
            return "Skipped"
        return type(self.error).__name__ if self.error is not None else None


@dataclass(frozen=True)
class UnitOutcome:
    kind: str
    key: str
    success: bool
    latency_ms: int
    error_type: Optional[str]


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total: int
    success_count: int
    timeout_count: int
    captcha_count: int
    browser_error_count: int
    avg_latency_ms: float
    timestamp: float


@dataclass
class JobReport:
    session_id: str
    status: str = "pending"
    units_total: int = 0
    units_attempted: int = 0
    units_succeeded: int = 0
    units_abandoned: int = 0
    units_not_attempted: int = 0
    businesses_found: int = 0
    phones_total: int = 0
    lookups_from_cache: int = 0
    lookups_live: int = 0
    lookups_succeeded: int = 0
    lookups_abandoned: int = 0
    lookups_not_attempted: int = 0
    browsers_launched: int = 0
    duration_secs: float = 0.0
    abandoned_items: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Optional[MetricsSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
