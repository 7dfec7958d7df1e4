"""Tests for the store-backed, polling certificate source."""

import threading
import time
import unittest
from datetime import datetime, timedelta, timezone

from certmgmt.engine import update_bundle, validate
from certmgmt.errors import StoreError
from certmgmt.policy import IssuancePolicy
from certmgmt.store import MemoryCertificateAccess
from certs.access import AccessSource, Backoff, MAX_INTERVAL, REFRESH_JOB_ID
from certs.source import WatcherState


def make_policy(validity=timedelta(days=30), rest=timedelta(hours=1)):
    return IssuancePolicy(
        common_name="webhook.test",
        dns_names=["webhook.test"],
        validity=validity,
        rest=rest,
    )


class FlakyStore(MemoryCertificateAccess):
    """Memory store whose ``get`` fails a configurable number of times."""

    def __init__(self, bundle=None):
        super().__init__(bundle, name="flaky")
        self.failures = 0
        self.get_times = []

    def get(self):
        self.get_times.append(time.monotonic())
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("store unavailable")
        return super().get()


class TestBackoff(unittest.TestCase):

    def test_grows_by_factor(self):
        backoff = Backoff(base=1.0, factor=1.5)
        self.assertEqual([backoff.next() for _ in range(4)], [1.0, 1.5, 2.25, 3.375])

    def test_reset(self):
        backoff = Backoff(base=1.0, factor=1.5)
        backoff.next()
        backoff.next()
        backoff.reset()
        self.assertEqual(backoff.next(), 1.0)

    def test_cap(self):
        backoff = Backoff(base=1.0, factor=2.0, cap=5.0)
        self.assertEqual([backoff.next() for _ in range(5)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_cap_below_base(self):
        backoff = Backoff(base=1.0, factor=1.5, cap=0.5)
        self.assertEqual(backoff.next(), 0.5)


class TestAccessSource(unittest.TestCase):

    def setUp(self):
        self.watchers = []

    def tearDown(self):
        for watcher in self.watchers:
            watcher.stop(timeout=2)

    def _watch(self, store, policy=None, **kwargs):
        watcher = AccessSource(store, policy or make_policy(), **kwargs)
        self.watchers.append(watcher)
        return watcher

    def test_empty_store_is_provisioned(self):
        store = MemoryCertificateAccess()
        watcher = self._watch(store)
        self.assertEqual(store.set_calls, 1)
        bundle = store.get()
        for value in (bundle.cert, bundle.key, bundle.ca_cert, bundle.ca_key):
            self.assertTrue(value)
        loaded = watcher.get_certificate()
        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.cert_pem, bundle.cert)
        self.assertEqual(watcher.state, WatcherState.ACTIVE)

    def test_valid_store_is_loaded_and_written_once(self):
        bundle, _ = update_bundle(None, make_policy())
        store = MemoryCertificateAccess(bundle)
        watcher = self._watch(store)
        self.assertEqual(store.set_calls, 1)
        self.assertIs(store.get(), bundle)
        self.assertEqual(watcher.get_certificate().cert_pem, bundle.cert)

    def test_unchanged_refresh_is_a_no_op(self):
        store = MemoryCertificateAccess()
        watcher = self._watch(store)
        loaded = watcher.get_certificate()
        self.assertFalse(watcher.read_certificate())
        self.assertEqual(store.set_calls, 1)
        self.assertIs(watcher.get_certificate(), loaded)

    def test_due_certificate_is_renewed_with_same_ca(self):
        policy = make_policy(validity=timedelta(minutes=30), rest=timedelta(hours=1))
        store = MemoryCertificateAccess()
        watcher = self._watch(store, policy)
        first = store.get()
        loaded = watcher.get_certificate()

        self.assertTrue(watcher.read_certificate())
        second = store.get()
        self.assertEqual(store.set_calls, 2)
        self.assertEqual(second.ca_cert, first.ca_cert)
        self.assertNotEqual(second.cert, first.cert)
        self.assertIsNot(watcher.get_certificate(), loaded)
        self.assertEqual(watcher.get_certificate().cert_pem, second.cert)

    def test_construction_fails_when_store_fails(self):
        store = FlakyStore()
        store.failures = 1
        with self.assertRaises(StoreError):
            AccessSource(store, make_policy())
        self.assertEqual(store.set_calls, 0)

    def test_interval_is_bounded(self):
        watcher = self._watch(MemoryCertificateAccess(), make_policy(rest=timedelta(days=7)))
        self.assertEqual(watcher.interval, MAX_INTERVAL.total_seconds())
        short = self._watch(MemoryCertificateAccess(), make_policy(rest=timedelta(minutes=2)))
        self.assertEqual(short.interval, 120.0)

    def test_failed_refreshes_back_off(self):
        store = FlakyStore()
        watcher = self._watch(store)
        store.failures = 3
        delays = [watcher._refresh() for _ in range(4)]
        self.assertEqual(delays, [1.0, 1.5, 2.25, watcher.interval])
        self.assertEqual(watcher.next_delay, 600.0)

        # A success resets the back-off.
        store.failures = 1
        self.assertEqual(watcher._refresh(), 1.0)

    def test_failed_refresh_keeps_certificate(self):
        store = FlakyStore()
        watcher = self._watch(store)
        loaded = watcher.get_certificate()
        store.failures = 1
        watcher._refresh()
        self.assertIs(watcher.get_certificate(), loaded)

    def test_background_loop_retries_with_back_off(self):
        store = FlakyStore()
        policy = make_policy(rest=timedelta(seconds=0.3))
        watcher = self._watch(store, policy, backoff_base=0.05, backoff_factor=1.5)
        store.failures = 3

        deadline = time.monotonic() + 5
        while len(store.get_times) < 6 and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertGreaterEqual(len(store.get_times), 6)

        gaps = [later - earlier for earlier, later in zip(store.get_times[1:], store.get_times[2:])]
        # Calls 2-4 fail; the waits after them grow, then the interval resumes.
        expected = [0.05, 0.075, 0.1125, 0.3]
        for gap, wait in zip(gaps, expected):
            self.assertGreaterEqual(gap, wait - 0.01)
        self.assertIsNotNone(watcher.get_certificate())

    def test_refresh_job_is_scheduled(self):
        watcher = self._watch(MemoryCertificateAccess())
        job = watcher._scheduler.get_job(REFRESH_JOB_ID)
        self.assertIsNotNone(job)
        remaining = (job.next_run_time - datetime.now(timezone.utc)).total_seconds()
        self.assertGreater(remaining, 0)
        self.assertLessEqual(remaining, watcher.interval)

    def test_failed_job_run_moves_next_run(self):
        store = FlakyStore()
        watcher = self._watch(store)
        store.failures = 1
        before = datetime.now(timezone.utc)
        watcher._run_refresh()
        job = watcher._scheduler.get_job(REFRESH_JOB_ID)
        self.assertEqual(watcher.next_delay, 1.0)
        self.assertGreaterEqual(job.next_run_time, before + timedelta(seconds=1.0))
        self.assertLess(job.next_run_time, before + timedelta(seconds=60))

        watcher._run_refresh()
        job = watcher._scheduler.get_job(REFRESH_JOB_ID)
        self.assertEqual(watcher.next_delay, watcher.interval)
        self.assertGreater(job.next_run_time, before + timedelta(seconds=watcher.interval - 60))

    def test_stop_event_cancels_loop(self):
        stop = threading.Event()
        watcher = self._watch(MemoryCertificateAccess(), stop_event=stop)
        stop.set()
        watcher._thread.join(timeout=2)
        self.assertEqual(watcher.state, WatcherState.STOPPED)
        self.assertFalse(watcher._scheduler.running)
        # The last certificate keeps being served after cancellation.
        self.assertIsNotNone(watcher.get_certificate())

    def test_stop(self):
        watcher = self._watch(MemoryCertificateAccess())
        watcher.stop(timeout=2)
        self.assertEqual(watcher.state, WatcherState.STOPPED)

    def test_served_certificate_validates(self):
        store = MemoryCertificateAccess()
        self._watch(store)
        self.assertTrue(validate(store.get(), "webhook.test", timedelta(hours=1)))


if __name__ == "__main__":
    unittest.main()
