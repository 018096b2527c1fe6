from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from .logging_utils import log_event

logger = logging.getLogger(__name__)

PROGRESS = "progress"
LOG = "log"
ERROR = "error"
COMPLETE = "complete"
LOOKUP_PROGRESS = "lookup-progress"

Listener = Callable[[Any], None]


class EventEmitter:
    """Synchronous observer registry.

    Each emit() reaches the listeners registered at that moment, in
    registration order. A listener that raises is logged and skipped so
    the others still receive the event.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners.get(event, []):
                self._listeners[event].remove(listener)

    def emit(self, event: str, payload: Any = None) -> int:
        # the lock serialises emissions so listeners see events in order
        with self._lock:
            listeners = list(self._listeners.get(event, []))
            for listener in listeners:
                try:
                    listener(payload)
                except Exception as exc:  # noqa: BLE001
                    log_event(logger, logging.ERROR, "listener_failed", listener_event=event, error=repr(exc))
        return len(listeners)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))
