from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from .models import BusinessRecord


class RecordStorage(ABC):
    """Abstract sink for scraped business records.

    Subclasses must implement write() and close().
    """

    @abstractmethod
    def write(self, session_id: str, record: BusinessRecord) -> None:
        """Persist a single record."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


class JsonlRecordStorage(RecordStorage):
    """Stores business records as JSON Lines (.jsonl) using a background writer thread."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._queue: queue.Queue[Optional[tuple[str, BusinessRecord]]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, daemon=True)
        self._thread.start()

    def write(self, session_id: str, record: BusinessRecord) -> None:
        """Enqueue a record for background writing."""
        self._queue.put((session_id, record))

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                session_id, record = item
                line = {"timestamp": time.time(), "session_id": session_id, **record.to_dict()}
                f.write(json.dumps(line, ensure_ascii=False) + "\n")
                f.flush()
