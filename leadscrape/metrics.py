from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict
from threading import Lock
from typing import Deque, Dict, List, Optional

from .models import MetricsSnapshot, UnitOutcome


class MetricsCollector:
    """Thread-safe collector for scrape and lookup outcomes.

    Records UnitOutcome events and produces aggregated MetricsSnapshot
    objects over configurable sliding time windows."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: Deque[tuple[float, UnitOutcome]] = deque(maxlen=10000)

    def record(self, outcome: UnitOutcome) -> None:
        """Record an outcome with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), outcome))

    def snapshot(self, window_secs: int, kind: Optional[str] = None) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        with self._lock:
            events: List[UnitOutcome] = [
                e for ts, e in self._events if ts >= cutoff and (kind is None or e.kind == kind)
            ]
        total = len(events)
        success_count = sum(1 for e in events if e.success)
        timeout_count = sum(1 for e in events if e.error_type in ("NavigationError", "TimeoutError"))
        captcha_count = sum(1 for e in events if e.error_type == "CaptchaDetectedError")
        browser_error_count = sum(1 for e in events if e.error_type == "BrowserLifecycleError")
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total=total,
            success_count=success_count,
            timeout_count=timeout_count,
            captcha_count=captcha_count,
            browser_error_count=browser_error_count,
            avg_latency_ms=avg_latency_ms,
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **asdict(e)} for ts, e in self._events]
