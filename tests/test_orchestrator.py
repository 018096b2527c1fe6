"""End-to-end tests for ScrapingOrchestrator with fake browsers."""

import threading
import unittest

from leadscrape.batch import BrowserBatchManager
from leadscrape.config import BatchConfig, NavigationConfig, RetryConfig, ScraperConfig
from leadscrape.db import create_db_engine, create_session_factory, init_db
from leadscrape.events import COMPLETE, ERROR, LOG, LOOKUP_PROGRESS, PROGRESS, EventEmitter
from leadscrape.models import ITEM_TYPE_LOOKUP, ITEM_TYPE_SCRAPE, ScrapeJob, WorkUnit
from leadscrape.navigation import NavigationManager
from leadscrape.orchestrator import ScrapingOrchestrator
from leadscrape.provider_cache import ProviderLookupCache
from leadscrape.retry_queue import RetryQueue
from tests.fakes import FakeLauncher, FakeLookup, FakePage, FakeSite, FakeUtcClock, card

no_sleep = lambda s: None  # noqa: E731


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.session_factory = create_session_factory(self.engine)
        self.queue = RetryQueue(self.session_factory, RetryConfig(base_delay_secs=0.0, max_attempts=3))
        self.cache = ProviderLookupCache(self.session_factory)
        self.site = FakeSite()
        self.launcher = FakeLauncher(page_factory=self.site.page)
        self.events = []

    def tearDown(self):
        self.engine.dispose()

    def build(self, towns, industries, lookup=None, launcher=None, session_id=None, queue=None, lookup_navigator=None):
        job = ScrapeJob.create(towns, industries, do_provider_lookup=lookup is not None, session_id=session_id)
        batches = BrowserBatchManager(launcher or self.launcher, BatchConfig(), sleep=no_sleep)
        emitter = EventEmitter()
        for name in (PROGRESS, LOG, ERROR, COMPLETE, LOOKUP_PROGRESS):
            emitter.on(name, lambda payload, name=name: self.events.append((name, payload)))
        return ScrapingOrchestrator(
            job,
            scrape_batches=batches,
            retry_queue=queue or self.queue,
            navigator=NavigationManager(NavigationConfig(max_retries=1), sleep=no_sleep),
            lookup_navigator=lookup_navigator,
            cache=self.cache,
            lookup_fn=lookup,
            events=emitter,
            scraper_config=ScraperConfig(scroll_pause_secs=0, settle_secs=0),
            sleep=no_sleep,
        )

    def payloads(self, name):
        return [payload for event, payload in self.events if event == name]

    def messages(self):
        return [payload["message"] for payload in self.payloads(LOG)]


class TestEndToEnd(OrchestratorTestCase):
    """Alpha / Pharmacy with three cards, two of them with phones."""

    def setUp(self):
        super().setUp()
        self.site.add(
            "Alpha",
            "Pharmacy",
            [
                card("Alpha Pharmacy", phone="082 111 1111", hrefs=["https://www.google.com/maps/place/a"]),
                card("Beta Chemist", phone="083 222 2222"),
                card("Gamma Meds", texts=["12 Main Road"]),
            ],
        )

    def test_complete_event_carries_three_records(self):
        """A clean run should complete with every record in the complete event."""
        orchestrator = self.build(["Alpha"], ["Pharmacy"])
        report = orchestrator.run()

        complete = self.payloads(COMPLETE)
        self.assertEqual(len(complete), 1)
        records = complete[0]["businesses"]
        self.assertEqual(len(records), 3)
        self.assertEqual(sum(1 for r in records if r.phone), 2)
        self.assertEqual(sum(1 for r in records if r.phone is None), 1)
        self.assertEqual(complete[0]["status"], "completed")
        self.assertEqual(orchestrator.status, "completed")
        self.assertEqual(report.units_attempted, 1)
        self.assertEqual(report.units_succeeded, 1)
        self.assertEqual(report.units_abandoned, 0)
        self.assertEqual(report.businesses_found, 3)
        self.assertEqual(orchestrator.results(), records)

    def test_progress_event_reports_new_records(self):
        """Progress should carry the new records and the town totals."""
        self.build(["Alpha"], ["Pharmacy"]).run()
        progress = self.payloads(PROGRESS)
        self.assertEqual(len(progress), 1)
        self.assertEqual(progress[0]["businesses_found"], 3)
        self.assertEqual(progress[0]["towns_completed"], 1)
        self.assertEqual(progress[0]["percentage"], 100.0)
        self.assertEqual(len(progress[0]["new_records"]), 3)
        self.assertTrue(self.payloads(LOG))

    def test_cached_phone_skips_live_lookup(self):
        """Phones already in the cache should not be looked up again."""
        self.cache.put("0821111111", "Vodacom")
        lookup = FakeLookup({"0832222222": "MTN"})
        report = self.build(["Alpha"], ["Pharmacy"], lookup=lookup).run()

        self.assertEqual(lookup.calls, ["0832222222"])
        self.assertEqual(report.lookups_from_cache, 1)
        self.assertEqual(report.lookups_live, 1)
        providers = {r.name: r.provider for r in self.payloads(COMPLETE)[0]["businesses"]}
        self.assertEqual(providers, {"Alpha Pharmacy": "Vodacom", "Beta Chemist": "MTN", "Gamma Meds": None})
        self.assertEqual(self.cache.get("083 222 2222").provider, "MTN")
        self.assertTrue(self.payloads(LOOKUP_PROGRESS))

    def test_failed_lookup_is_retried(self):
        """A lookup that fails once should succeed from the retry queue."""
        lookup = FakeLookup({"0821111111": "Vodacom", "0832222222": "MTN"}, failures={"0832222222": 1})
        report = self.build(["Alpha"], ["Pharmacy"], lookup=lookup).run()
        self.assertEqual(lookup.calls.count("0832222222"), 2)
        self.assertEqual(report.lookups_succeeded, 2)
        self.assertEqual(self.queue.pending_count(report.session_id), 0)

    def test_navigation_stats_exposed(self):
        """The scrape navigator window should count this run's navigations."""
        orchestrator = self.build(["Alpha"], ["Pharmacy"])
        orchestrator.run()
        self.assertEqual(orchestrator.navigation_stats().navigation_count, 1)

    def test_lookup_navigation_stats_absent_without_navigator(self):
        """Without a lookup navigator there are no lookup navigation stats."""
        orchestrator = self.build(["Alpha"], ["Pharmacy"])
        self.assertIsNone(orchestrator.lookup_navigation_stats())

    def test_lookup_navigator_starts_fresh_each_run(self):
        """A lookup navigator carrying history from elsewhere should be reset by run()."""
        navigator = NavigationManager(NavigationConfig(), sleep=no_sleep)
        navigator.navigate_with_retry(FakePage(), "https://www.porting.co.za/PublicWebsite/crdb?msisdn=0820000000")
        self.assertEqual(navigator.statistics().navigation_count, 1)

        lookup = FakeLookup({"0821111111": "Vodacom", "0832222222": "MTN"})
        orchestrator = self.build(["Alpha"], ["Pharmacy"], lookup=lookup, lookup_navigator=navigator)
        orchestrator.run()

        self.assertEqual(orchestrator.lookup_navigation_stats().navigation_count, 0)


class TestRetries(OrchestratorTestCase):
    """Failed units go through the retry queue."""

    def test_transient_failure_recovers(self):
        """A unit that fails once should be scraped again from the queue."""
        # max_retries=1 with four strategies: four failed gotos exhaust one navigation
        self.site.add("Alpha", "Pharmacy", [card("A")], failures=4)
        self.site.add("Beta", "Pharmacy", [card("B")])
        report = self.build(["Alpha", "Beta"], ["Pharmacy"]).run()

        self.assertEqual(report.status, "completed")
        self.assertEqual(report.units_succeeded, 2)
        self.assertEqual(sorted(r.name for r in self.payloads(COMPLETE)[0]["businesses"]), ["A", "B"])
        errors = self.payloads(ERROR)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["town"], "Alpha")
        self.assertFalse(errors[0]["fatal"])
        self.assertEqual(self.queue.pending_count(report.session_id), 0)

    def test_permanent_failure_is_abandoned_and_reported(self):
        """A unit that never succeeds should be abandoned after max_attempts."""
        self.site.add("Alpha", "Pharmacy", [card("A")], failures=1000)
        self.site.add("Beta", "Pharmacy", [card("B")])
        report = self.build(["Alpha", "Beta"], ["Pharmacy"]).run()

        self.assertEqual(report.status, "completed")
        self.assertEqual(report.units_attempted, 2)
        self.assertEqual(report.units_succeeded, 1)
        self.assertEqual(report.units_abandoned, 1)
        self.assertEqual(len(report.abandoned_items), 1)
        self.assertEqual(report.abandoned_items[0]["item_key"], "Alpha|Pharmacy")
        self.assertEqual(report.abandoned_items[0]["attempts"], 3)
        self.assertTrue(any(p.get("abandoned") for p in self.payloads(ERROR)))
        self.assertEqual(self.queue.pending_count(report.session_id), 0)

    def test_resume_processes_persisted_items(self):
        """resume=True should skip fresh units and only drain persisted ones."""
        self.site.add("Alpha", "Pharmacy", [card("A")])
        self.site.add("Beta", "Pharmacy", [card("B")])
        unit = WorkUnit("Beta", "Pharmacy")
        self.queue.enqueue("resumed", ITEM_TYPE_SCRAPE, unit.key, unit.to_data(), "crashed")

        orchestrator = self.build(["Alpha", "Beta"], ["Pharmacy"], session_id="resumed")
        report = orchestrator.run(resume=True)

        self.assertEqual([r.name for r in orchestrator.results()], ["B"])
        self.assertEqual(report.units_attempted, 1)
        self.assertEqual(report.units_not_attempted, 1)
        self.assertEqual(self.queue.pending_count("resumed"), 0)

    def test_reused_session_abandons_unit_at_ceiling(self):
        """A fresh run on a session whose queued unit is on its last attempt should abandon it, not crash."""
        unit = WorkUnit("Alpha", "Pharmacy")
        for _ in range(3):
            self.queue.enqueue("reused", ITEM_TYPE_SCRAPE, unit.key, unit.to_data(), "earlier run")
        self.assertEqual(self.queue.items("reused")[0].attempts, 2)
        self.site.add("Alpha", "Pharmacy", [card("A")], failures=1000)
        self.site.add("Beta", "Pharmacy", [card("B")])

        report = self.build(["Alpha", "Beta"], ["Pharmacy"], session_id="reused").run()

        self.assertEqual(report.status, "completed")
        self.assertEqual(report.units_succeeded, 1)
        self.assertEqual(report.units_abandoned, 1)
        self.assertEqual(report.abandoned_items[0]["item_key"], "Alpha|Pharmacy")
        self.assertEqual(report.abandoned_items[0]["attempts"], 3)
        unit_errors = [p for p in self.payloads(ERROR) if p.get("town") == "Alpha"]
        self.assertFalse(unit_errors[0]["retrying"])
        self.assertTrue(any(p.get("abandoned") for p in self.payloads(ERROR)))
        self.assertEqual(self.queue.pending_count("reused"), 0)

    def test_resume_drains_persisted_lookups_without_phones(self):
        """Persisted lookup retries should be drained even when the run found no phones."""
        self.queue.enqueue("res", ITEM_TYPE_LOOKUP, "0821111111", {"phone": "0821111111"}, "crashed")
        self.site.add("Alpha", "Pharmacy", [])
        lookup = FakeLookup({"0821111111": "Vodacom"})

        report = self.build(["Alpha"], ["Pharmacy"], lookup=lookup, session_id="res").run(resume=True)

        self.assertEqual(report.status, "completed")
        self.assertEqual(lookup.calls, ["0821111111"])
        self.assertEqual(report.lookups_succeeded, 1)
        self.assertEqual(report.phones_total, 1)
        self.assertEqual(self.cache.get("0821111111").provider, "Vodacom")
        self.assertEqual(self.queue.pending_count("res"), 0)

    def test_backoff_wait_uses_queue_clock(self):
        """Waiting for a future retry should sleep on the queue clock instead of spinning."""
        clock = FakeUtcClock()
        calls = []

        class CountingQueue(RetryQueue):
            def dequeue_ready(self, session_id, item_type=None, limit=None):
                calls.append(item_type)
                return super().dequeue_ready(session_id, item_type, limit)

        queue = CountingQueue(self.session_factory, RetryConfig(base_delay_secs=1.0, max_attempts=3), clock=clock)
        unit = WorkUnit("Alpha", "Pharmacy")
        queue.enqueue("lag", ITEM_TYPE_SCRAPE, unit.key, unit.to_data(), "timeout")
        orchestrator = self.build(["Alpha"], ["Pharmacy"], session_id="lag", queue=queue)

        timer = threading.Timer(0.3, orchestrator.stop)
        timer.start()
        try:
            report = orchestrator.run(resume=True)
        finally:
            timer.cancel()

        self.assertEqual(report.status, "stopped")
        self.assertLessEqual(len(calls), 2)
        self.assertEqual(queue.pending_count("lag"), 1)


class TestStopAndFailure(OrchestratorTestCase):
    def test_stop_honoured_at_batch_boundary(self):
        """stop() should let the batch in flight finish and skip the rest."""
        towns = [f"Town{i}" for i in range(12)]
        for town in towns:
            self.site.add(town, "Pharmacy", [card(f"{town} Pharmacy")])
        orchestrator = self.build(towns, ["Pharmacy"])
        orchestrator.events.on(PROGRESS, lambda payload: orchestrator.stop())

        report = orchestrator.run()

        self.assertEqual(report.status, "stopped")
        self.assertEqual(self.payloads(COMPLETE)[0]["status"], "stopped")
        # the batch in flight finishes, later batches never start
        self.assertEqual(report.units_attempted, 5)
        self.assertEqual(report.units_not_attempted, 7)
        self.assertEqual(len(self.launcher.browsers), 1)

    def test_no_browser_means_failed(self):
        """A run where no browser ever launches should fail and keep its units queued."""
        launcher = FakeLauncher(always_fail=True)
        report = self.build(["Alpha", "Beta"], ["Pharmacy"], launcher=launcher).run()

        self.assertEqual(report.status, "failed")
        fatal = [p for p in self.payloads(ERROR) if p.get("fatal")]
        self.assertEqual(len(fatal), 1)
        self.assertEqual(self.payloads(COMPLETE)[0]["status"], "failed")
        # the units stay queued so the session can be resumed later
        self.assertEqual(self.queue.pending_count(report.session_id), 2)

    def test_cannot_run_twice(self):
        """A finished orchestrator should refuse a second run."""
        self.site.add("Alpha", "Pharmacy", [])
        orchestrator = self.build(["Alpha"], ["Pharmacy"])
        orchestrator.run()
        with self.assertRaises(RuntimeError):
            orchestrator.run()

    def test_lookup_requires_cache_and_function(self):
        """Provider lookup without a cache or lookup function is rejected."""
        job = ScrapeJob.create(["Alpha"], ["Pharmacy"], do_provider_lookup=True)
        with self.assertRaises(ValueError):
            ScrapingOrchestrator(job, BrowserBatchManager(self.launcher), self.queue)


class TestPauseAndResume(OrchestratorTestCase):
    """pause() holds the run at the next batch boundary."""

    def setUp(self):
        super().setUp()
        self.towns = [f"Town{i}" for i in range(12)]
        for town in self.towns:
            self.site.add(town, "Pharmacy", [card(f"{town} Pharmacy")])

    def _pause_once(self, orchestrator, then):
        observed = []

        def on_progress(payload):
            if observed:
                return
            orchestrator.pause()
            observed.append((orchestrator.status, orchestrator.is_paused))
            threading.Timer(0.2, then).start()

        orchestrator.events.on(PROGRESS, on_progress)
        return observed

    def test_paused_run_continues_after_resume(self):
        """A paused run should wait and then finish every unit once resumed."""
        orchestrator = self.build(self.towns, ["Pharmacy"])
        observed = self._pause_once(orchestrator, orchestrator.resume)

        report = orchestrator.run()

        self.assertEqual(observed, [("paused", True)])
        self.assertEqual(report.status, "completed")
        self.assertEqual(report.units_attempted, 12)
        self.assertFalse(orchestrator.is_paused)
        messages = self.messages()
        self.assertIn("Pause requested; finishing the current batch", messages)
        self.assertIn("Resuming", messages)

    def test_stop_wakes_paused_run(self):
        """stop() on a paused run should end it without waiting for resume()."""
        orchestrator = self.build(self.towns, ["Pharmacy"])
        self._pause_once(orchestrator, orchestrator.stop)

        report = orchestrator.run()

        self.assertEqual(report.status, "stopped")
        self.assertEqual(report.units_attempted, 5)

    def test_pause_before_run_is_ignored(self):
        """pause() on a job that has not started should change nothing."""
        orchestrator = self.build(["Town0"], ["Pharmacy"])
        orchestrator.pause()
        self.assertEqual(orchestrator.status, "pending")
        self.assertFalse(orchestrator.is_paused)
        self.assertEqual(orchestrator.run().status, "completed")

    def test_resume_without_pause_is_ignored(self):
        """resume() on a job that is not paused should change nothing."""
        orchestrator = self.build(["Town0"], ["Pharmacy"])
        orchestrator.resume()
        self.assertEqual(orchestrator.status, "pending")


class TestEventEmitter(unittest.TestCase):
    def test_delivers_in_order_to_current_subscribers(self):
        """Events should reach subscribers in order until they unsubscribe."""
        emitter = EventEmitter()
        seen = []
        unsubscribe = emitter.on("progress", lambda p: seen.append(("a", p)))
        emitter.on("progress", lambda p: seen.append(("b", p)))
        emitter.emit("progress", 1)
        unsubscribe()
        emitter.emit("progress", 2)
        self.assertEqual(seen, [("a", 1), ("b", 1), ("b", 2)])

    def test_failing_listener_does_not_block_others(self):
        """A listener that raises should not stop delivery to the rest."""
        emitter = EventEmitter()
        seen = []

        def broken(payload):
            raise RuntimeError("listener bug")

        emitter.on("log", broken)
        emitter.on("log", seen.append)
        self.assertEqual(emitter.emit("log", "hello"), 2)
        self.assertEqual(seen, ["hello"])

    def test_off_and_listener_count(self):
        """off() should remove a listener and listener_count() should reflect it."""
        emitter = EventEmitter()
        seen = []
        emitter.on("complete", seen.append)
        self.assertEqual(emitter.listener_count("complete"), 1)
        emitter.off("complete", seen.append)
        self.assertEqual(emitter.listener_count("complete"), 0)
        self.assertEqual(emitter.emit("complete", {}), 0)
        self.assertEqual(seen, [])

    def test_concurrent_emitters_deliver_every_event(self):
        """Concurrent emits should deliver every event in per-thread order."""
        emitter = EventEmitter()
        seen = []
        emitter.on("log", seen.append)
        threads = [threading.Thread(target=lambda i=i: [emitter.emit("log", (i, n)) for n in range(50)]) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(seen), 200)
        for i in range(4):
            self.assertEqual([n for j, n in seen if j == i], list(range(50)))


if __name__ == "__main__":
    unittest.main()
