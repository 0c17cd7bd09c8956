#!/usr/bin/env python3
"""
Unit tests for the bounded-concurrency fetch stage.
"""

import os
import sys
import time
import threading
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from userinfo_sync.fetch import FetchStage, FailureKind, LookupResult, classify_failure
from userinfo_sync.retry import RetryableLookupError, NonRetryableLookupError


class FakeDirectoryClient:
    """Directory client returning canned payloads or raising canned errors."""

    def __init__(self, responses=None, delay=0.0):
        self.responses = responses or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def fetch(self, subject_id, max_attempts, base_backoff_ms):
        with self._lock:
            self.calls.append((subject_id, max_attempts, base_backoff_ms))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            response = self.responses.get(subject_id, '{}')
            if isinstance(response, BaseException):
                raise response
            return response
        finally:
            with self._lock:
                self.active -= 1


class BlockingDirectoryClient:
    """Directory client that blocks on an event for selected subjects."""

    def __init__(self, blocked):
        self.blocked = set(blocked)
        self.release = threading.Event()

    def fetch(self, subject_id, max_attempts, base_backoff_ms):
        if subject_id in self.blocked:
            self.release.wait(10)
        return '{"subject": "%s"}' % subject_id


class TestClassifyFailure(unittest.TestCase):

    def test_classification(self):
        self.assertEqual(classify_failure(NonRetryableLookupError('x')), FailureKind.NON_RETRYABLE)
        self.assertEqual(classify_failure(RetryableLookupError('x')), FailureKind.RETRYABLE)
        self.assertEqual(classify_failure(TimeoutError()), FailureKind.TIMEOUT)
        self.assertEqual(classify_failure(RuntimeError('x')), FailureKind.ERROR)


class TestFetchStage(unittest.TestCase):
    """Test cases for FetchStage."""

    def _stage(self, client, max_concurrency=4, per_subject_timeout_ms=5000):
        return FetchStage(client, max_concurrency=max_concurrency,
                          per_subject_timeout_ms=per_subject_timeout_ms,
                          retry_max_attempts=3, retry_base_backoff_ms=100)

    def test_fetch_requires_start(self):
        stage = self._stage(FakeDirectoryClient())
        with self.assertRaises(RuntimeError):
            stage.fetch_all(['alice'])

    def test_successful_lookups_parsed(self):
        client = FakeDirectoryClient({'alice': '{"dept": "D1"}', 'bob': '{"dept": "D2"}'})

        with self._stage(client) as stage:
            results = stage.fetch_all(['alice', 'bob'])

        self.assertEqual(list(results), ['alice', 'bob'])
        self.assertTrue(results['alice'].success)
        self.assertEqual(results['alice'].document, {'dept': 'D1'})
        self.assertEqual(results['bob'].raw_payload, '{"dept": "D2"}')
        self.assertIn(('alice', 3, 100), client.calls)

    def test_one_entry_per_subject_in_order(self):
        usernames = [f'user{i:02d}' for i in range(25)]
        client = FakeDirectoryClient(delay=0.01)

        with self._stage(client, max_concurrency=5) as stage:
            results = stage.fetch_all(usernames)

        self.assertEqual(list(results), usernames)
        self.assertTrue(all(result.success for result in results.values()))

    def test_failures_become_results(self):
        client = FakeDirectoryClient({
            'gone': NonRetryableLookupError('non-retry status=404', status_code=404),
            'busy': RetryableLookupError('retryable status=503', status_code=503),
            'broken': RuntimeError('unexpected'),
            'garbled': '{not json',
            'latin1': UnicodeDecodeError('utf-8', b'\xe9', 0, 1, 'invalid continuation byte'),
            'alice': '{"ok": true}',
        })

        with self._stage(client) as stage:
            results = stage.fetch_all(['gone', 'busy', 'broken', 'garbled', 'latin1', 'alice'])

        self.assertEqual(results['gone'].failure_kind, FailureKind.NON_RETRYABLE)
        self.assertEqual(results['busy'].failure_kind, FailureKind.RETRYABLE)
        self.assertEqual(results['broken'].failure_kind, FailureKind.ERROR)
        self.assertEqual(results['garbled'].failure_kind, FailureKind.PARSE)
        self.assertEqual(results['latin1'].failure_kind, FailureKind.PARSE)
        self.assertIsInstance(results['broken'].error, RuntimeError)
        self.assertTrue(results['alice'].success)

    def test_concurrency_bounded(self):
        client = FakeDirectoryClient(delay=0.05)

        with self._stage(client, max_concurrency=2) as stage:
            stage.fetch_all([f'user{i}' for i in range(8)])

        self.assertLessEqual(client.peak, 2)
        self.assertEqual(len(client.calls), 8)

    def test_pool_reused_across_pages(self):
        client = FakeDirectoryClient()
        stage = self._stage(client).start()
        try:
            pool = stage._pool
            stage.fetch_all(['a', 'b'])
            stage.fetch_all(['c'])
            self.assertIs(stage._pool, pool)
        finally:
            stage.shutdown()
        self.assertIsNone(stage._pool)

    def test_per_subject_timeout(self):
        client = BlockingDirectoryClient(blocked={'slow'})
        stage = self._stage(client, per_subject_timeout_ms=1000).start()
        try:
            started = time.monotonic()
            results = stage.fetch_all(['fast', 'slow'])
            elapsed = time.monotonic() - started
        finally:
            client.release.set()
            stage.shutdown()

        self.assertTrue(results['fast'].success)
        self.assertFalse(results['slow'].success)
        self.assertEqual(results['slow'].failure_kind, FailureKind.TIMEOUT)
        self.assertLess(elapsed, 5)

    def test_timeout_floor(self):
        stage = self._stage(FakeDirectoryClient(), per_subject_timeout_ms=10)
        self.assertEqual(stage.per_subject_timeout_ms, 1000)

    def test_shutdown_warns_about_stragglers(self):
        client = BlockingDirectoryClient(blocked={'stuck'})
        stage = self._stage(client, max_concurrency=1, per_subject_timeout_ms=1000).start()
        try:
            stage.fetch_all(['stuck'])
            with self.assertLogs('userinfo_sync.fetch', level='WARNING'):
                stage.shutdown(grace_seconds=0.1, force_seconds=0.1)
        finally:
            client.release.set()

    def test_shutdown_idempotent(self):
        stage = self._stage(FakeDirectoryClient()).start()
        stage.shutdown()
        stage.shutdown()


class TestLookupResult(unittest.TestCase):

    def test_factories(self):
        ok = LookupResult.ok('alice', '{}', {})
        failed = LookupResult.fail('bob', FailureKind.TIMEOUT)

        self.assertTrue(ok.success)
        self.assertIsNone(ok.failure_kind)
        self.assertFalse(failed.success)
        self.assertIsNone(failed.document)


if __name__ == '__main__':
    unittest.main()
