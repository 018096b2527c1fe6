from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import ProviderCacheRow, utcnow
from .logging_utils import log_event
from .models import ProviderCacheEntry
from .phones import normalize_phone

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


def _to_entry(row: ProviderCacheRow) -> ProviderCacheEntry:
    return ProviderCacheEntry(
        phone_number=row.phone_number,
        provider=row.provider,
        confidence=row.confidence,
        last_checked=row.last_checked,
    )


class ProviderLookupCache:
    """Persistent phone -> provider mapping.

    Reads return entries regardless of age; only cleanup() evicts.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def get(self, phone: str) -> Optional[ProviderCacheEntry]:
        key = normalize_phone(phone)
        if not key:
            return None
        with self._session_factory() as session:
            row = session.get(ProviderCacheRow, key)
            return _to_entry(row) if row is not None else None

    def get_many(self, phones: Iterable[str]) -> Dict[str, ProviderCacheEntry]:
        """Return cached entries keyed by normalised phone; misses are absent."""
        keys = sorted({k for k in (normalize_phone(p) for p in phones) if k})
        if not keys:
            return {}
        found: Dict[str, ProviderCacheEntry] = {}
        with self._session_factory() as session:
            # chunked to stay under SQLite's bound-parameter limit
            for start in range(0, len(keys), 500):
                chunk = keys[start : start + 500]
                rows = session.execute(select(ProviderCacheRow).where(ProviderCacheRow.phone_number.in_(chunk))).scalars()
                for row in rows:
                    found[row.phone_number] = _to_entry(row)
        return found

    def put(self, phone: str, provider: str, confidence: float = 1.0) -> ProviderCacheEntry:
        entry = ProviderCacheEntry(
            phone_number=normalize_phone(phone),
            provider=provider,
            confidence=confidence,
            last_checked=self._clock(),
        )
        self.put_many([entry])
        return entry

    def put_many(self, entries: Iterable[ProviderCacheEntry]) -> int:
        """Upsert entries in a single transaction; the last write for a phone wins."""
        merged: Dict[str, ProviderCacheEntry] = {}
        for entry in entries:
            key = normalize_phone(entry.phone_number)
            if key:
                merged[key] = entry
        if not merged:
            return 0

        values: List[dict] = [
            {
                "phone_number": key,
                "provider": e.provider,
                "confidence": e.confidence,
                "last_checked": e.last_checked or self._clock(),
            }
            for key, e in merged.items()
        ]
        with self._session_factory() as session:
            try:
                self._upsert(session, values)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        log_event(logger, logging.INFO, "provider_cache_stored", count=len(values))
        return len(values)

    def cleanup(self, max_age_days: int = 30) -> int:
        """Delete entries older than max_age_days and return how many went."""
        cutoff = self._clock() - timedelta(days=max_age_days)
        with self._session_factory() as session:
            try:
                result = session.execute(delete(ProviderCacheRow).where(ProviderCacheRow.last_checked < cutoff))
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        deleted = int(result.rowcount or 0)
        log_event(logger, logging.INFO, "provider_cache_cleanup", deleted=deleted, max_age_days=max_age_days)
        return deleted

    def stats(self) -> Dict[str, object]:
        with self._session_factory() as session:
            total = session.execute(select(func.count(ProviderCacheRow.phone_number))).scalar() or 0
            oldest, newest = session.execute(
                select(func.min(ProviderCacheRow.last_checked), func.max(ProviderCacheRow.last_checked))
            ).one()
            by_provider = dict(
                session.execute(
                    select(ProviderCacheRow.provider, func.count(ProviderCacheRow.phone_number)).group_by(ProviderCacheRow.provider)
                ).all()
            )
        return {"total": int(total), "oldest": oldest, "newest": newest, "by_provider": by_provider}

    @staticmethod
    def _upsert(session: Session, values: List[dict]) -> None:
        insert_fn = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
        if insert_fn is None:
            for value in values:
                session.merge(ProviderCacheRow(**value))
            return
        stmt = insert_fn(ProviderCacheRow).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProviderCacheRow.phone_number],
            set_={
                "provider": stmt.excluded.provider,
                "confidence": stmt.excluded.confidence,
                "last_checked": stmt.excluded.last_checked,
            },
        )
        session.execute(stmt)
