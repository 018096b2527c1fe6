"""
Durable retry queue backed by SQLAlchemy.

Every transition commits before returning. Items stay in storage from
enqueue until ack or abandon, so an item dequeued by a process that dies
before acknowledging it is delivered again after restart.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .backoff import BackoffStrategy
from .config import RetryConfig
from .db import RetryQueueRow, utcnow
from .logging_utils import log_event
from .models import RetryItem

logger = logging.getLogger(__name__)


def _to_item(row: RetryQueueRow) -> RetryItem:
    return RetryItem(
        id=row.id,
        session_id=row.session_id,
        item_type=row.item_type,
        item_key=row.item_key,
        item_data=dict(row.item_data or {}),
        attempts=row.attempts,
        next_retry_time=row.next_retry_time,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_error=row.last_error,
    )


class RetryQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or RetryConfig()
        self._backoff = BackoffStrategy(self._config.base_delay_secs, self._config.max_delay_secs)
        self._clock = clock

    @property
    def config(self) -> RetryConfig:
        return self._config

    def now(self) -> datetime:
        """Current time on the clock used for scheduling."""
        return self._clock()

    def backoff_delay(self, attempts: int) -> float:
        return self._backoff.get_sleep(attempts)

    def enqueue(
        self,
        session_id: str,
        item_type: str,
        item_key: str,
        item_data: Dict[str, Any],
        error: Optional[str] = None,
    ) -> Optional[RetryItem]:
        """Add a failed item; an existing item with the same key is rescheduled instead.

        Returns None when that reschedule reached the attempt ceiling and the
        item was abandoned.
        """
        with self._session_factory() as session:
            existing = session.execute(
                select(RetryQueueRow).where(
                    RetryQueueRow.session_id == session_id,
                    RetryQueueRow.item_type == item_type,
                    RetryQueueRow.item_key == item_key,
                )
            ).scalar_one_or_none()
        if existing is not None:
            return self.reschedule(_to_item(existing), error)

        now = self._clock()
        row = RetryQueueRow(
            session_id=session_id,
            item_type=item_type,
            item_key=item_key,
            item_data=dict(item_data),
            attempts=0,
            next_retry_time=now + timedelta(seconds=self.backoff_delay(0)),
            last_error=error,
            created_at=now,
            updated_at=now,
        )
        self._commit(lambda s: s.add(row), row=row)
        log_event(logger, logging.INFO, "retry_enqueued", session_id=session_id, item_type=item_type, item_key=item_key, error=error)
        return _to_item(row)

    def dequeue_ready(
        self,
        session_id: str,
        item_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RetryItem]:
        """Return items due now, oldest schedule first. Items are not removed."""
        stmt = select(RetryQueueRow).where(
            RetryQueueRow.session_id == session_id,
            RetryQueueRow.next_retry_time <= self._clock(),
        )
        if item_type is not None:
            stmt = stmt.where(RetryQueueRow.item_type == item_type)
        stmt = stmt.order_by(RetryQueueRow.next_retry_time, RetryQueueRow.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [_to_item(row) for row in session.execute(stmt).scalars()]

    def reschedule(self, item: RetryItem, error: Optional[str] = None) -> Optional[RetryItem]:
        """Record another failed attempt; returns None once the item has been abandoned."""
        attempts = item.attempts + 1
        if attempts >= self._config.max_attempts:
            self.abandon(item, error)
            return None

        now = self._clock()
        next_time = now + timedelta(seconds=self.backoff_delay(attempts))

        def _update(session: Session) -> RetryQueueRow:
            row = session.get(RetryQueueRow, item.id)
            if row is None:
                raise LookupError(f"retry item {item.id} no longer exists")
            row.attempts = attempts
            row.next_retry_time = next_time
            row.last_error = error
            row.updated_at = now
            return row

        row = self._commit(_update)
        log_event(
            logger,
            logging.INFO,
            "retry_rescheduled",
            session_id=item.session_id,
            item_type=item.item_type,
            item_key=item.item_key,
            attempts=attempts,
            next_retry_time=next_time,
        )
        return _to_item(row)

    def ack(self, item: RetryItem) -> None:
        """Remove an item after it finally succeeded."""
        self._commit(lambda s: s.execute(delete(RetryQueueRow).where(RetryQueueRow.id == item.id)))
        log_event(logger, logging.INFO, "retry_acked", session_id=item.session_id, item_type=item.item_type, item_key=item.item_key)

    def abandon(self, item: RetryItem, error: Optional[str] = None) -> None:
        self._commit(lambda s: s.execute(delete(RetryQueueRow).where(RetryQueueRow.id == item.id)))
        log_event(
            logger,
            logging.WARNING,
            "retry_abandoned",
            session_id=item.session_id,
            item_type=item.item_type,
            item_key=item.item_key,
            attempts=item.attempts + 1,
            error=error or item.last_error,
        )

    def next_retry_time(self, session_id: str, item_type: Optional[str] = None) -> Optional[datetime]:
        stmt = select(func.min(RetryQueueRow.next_retry_time)).where(RetryQueueRow.session_id == session_id)
        if item_type is not None:
            stmt = stmt.where(RetryQueueRow.item_type == item_type)
        with self._session_factory() as session:
            return session.execute(stmt).scalar()

    def pending_count(self, session_id: str, item_type: Optional[str] = None) -> int:
        stmt = select(func.count(RetryQueueRow.id)).where(RetryQueueRow.session_id == session_id)
        if item_type is not None:
            stmt = stmt.where(RetryQueueRow.item_type == item_type)
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar() or 0)

    def items(self, session_id: str, item_type: Optional[str] = None) -> List[RetryItem]:
        stmt = select(RetryQueueRow).where(RetryQueueRow.session_id == session_id)
        if item_type is not None:
            stmt = stmt.where(RetryQueueRow.item_type == item_type)
        with self._session_factory() as session:
            return [_to_item(row) for row in session.execute(stmt.order_by(RetryQueueRow.id)).scalars()]

    def stats(self, session_id: str) -> Dict[str, Any]:
        """Pending counts per item type and per attempt number."""
        items = self.items(session_id)
        return {
            "total": len(items),
            "by_type": dict(Counter(i.item_type for i in items)),
            "by_attempts": dict(Counter(i.attempts for i in items)),
        }

    def clear(self, session_id: str) -> int:
        result = self._commit(lambda s: s.execute(delete(RetryQueueRow).where(RetryQueueRow.session_id == session_id)))
        return int(result.rowcount or 0)

    def _commit(self, work: Callable[[Session], Any], row: Optional[RetryQueueRow] = None) -> Any:
        with self._session_factory() as session:
            try:
                out = work(session)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            if row is not None:
                session.refresh(row)
                return row
            return out
