"""Tests for ProviderLookupCache."""

import unittest
from datetime import timedelta

from sqlalchemy import func, select

from leadscrape.db import ProviderCacheRow, create_db_engine, create_session_factory, init_db
from leadscrape.models import ProviderCacheEntry
from leadscrape.provider_cache import ProviderLookupCache
from tests.fakes import FakeUtcClock


class TestProviderLookupCache(unittest.TestCase):
    """Reads, last-write-wins upserts and cleanup."""

    def setUp(self):
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.session_factory = create_session_factory(self.engine)
        self.clock = FakeUtcClock()
        self.cache = ProviderLookupCache(self.session_factory, clock=self.clock)

    def tearDown(self):
        self.engine.dispose()

    def _entry(self, phone, provider, age_days=0):
        return ProviderCacheEntry(
            phone_number=phone,
            provider=provider,
            confidence=1.0,
            last_checked=self.clock.now - timedelta(days=age_days),
        )

    def _row_count(self):
        with self.session_factory() as session:
            return session.execute(select(func.count(ProviderCacheRow.phone_number))).scalar()

    def test_miss_returns_none(self):
        """An unknown phone is a cache miss."""
        self.assertIsNone(self.cache.get("0821234567"))

    def test_get_after_put_many(self):
        """Entries written with put_many() are readable."""
        self.cache.put_many([self._entry("0821234567", "Vodacom")])
        entry = self.cache.get("0821234567")
        self.assertEqual(entry.provider, "Vodacom")
        self.assertEqual(entry.confidence, 1.0)

    def test_key_is_normalised(self):
        """Phones are keyed by their normalised national form."""
        self.cache.put_many([self._entry("+27 82 123 4567", "MTN")])
        self.assertEqual(self.cache.get("082-123-4567").provider, "MTN")
        self.assertEqual(self.cache.get("27821234567").phone_number, "0821234567")

    def test_last_write_wins_without_duplicates(self):
        """Rewriting a phone replaces its row."""
        self.cache.put_many([self._entry("0821234567", "Vodacom")])
        self.cache.put_many([self._entry("0821234567", "Telkom")])
        self.assertEqual(self.cache.get("0821234567").provider, "Telkom")
        self.assertEqual(self._row_count(), 1)

    def test_duplicates_within_one_call(self):
        """The last duplicate in one batch wins."""
        written = self.cache.put_many([self._entry("0821234567", "A"), self._entry("082 123 4567", "B")])
        self.assertEqual(written, 1)
        self.assertEqual(self.cache.get("0821234567").provider, "B")

    def test_stale_entries_still_returned(self):
        """get() does not filter by age."""
        self.cache.put_many([self._entry("0821234567", "Cell C", age_days=400)])
        self.assertEqual(self.cache.get("0821234567").provider, "Cell C")

    def test_get_many_reports_hits_only(self):
        """get_many() returns only the phones it found."""
        self.cache.put_many([self._entry("0821111111", "MTN"), self._entry("0832222222", "Vodacom")])
        hits = self.cache.get_many(["082 111 1111", "0843333333", ""])
        self.assertEqual(set(hits), {"0821111111"})

    def test_cleanup_deletes_only_old_rows(self):
        """cleanup() removes rows older than the cut-off."""
        self.cache.put_many(
            [
                self._entry("0821111111", "MTN", age_days=31),
                self._entry("0832222222", "Vodacom", age_days=29),
                self._entry("0843333333", "Telkom", age_days=90),
            ]
        )
        self.assertEqual(self.cache.cleanup(max_age_days=30), 2)
        self.assertIsNone(self.cache.get("0821111111"))
        self.assertIsNotNone(self.cache.get("0832222222"))
        self.assertEqual(self.cache.cleanup(max_age_days=30), 0)

    def test_stats(self):
        """stats() counts rows per provider."""
        self.cache.put_many([self._entry("0821111111", "MTN"), self._entry("0832222222", "MTN", age_days=3)])
        stats = self.cache.stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["by_provider"], {"MTN": 2})
        self.assertEqual(stats["newest"], self.clock.now)

    def test_put_single(self):
        """put() stamps the entry with the cache clock."""
        entry = self.cache.put("0821234567", "Rain", confidence=0.9)
        self.assertEqual(entry.last_checked, self.clock.now)
        self.assertEqual(self.cache.get("0821234567").confidence, 0.9)


if __name__ == "__main__":
    unittest.main()
