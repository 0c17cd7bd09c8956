#!/usr/bin/env python3
"""
Unit tests for per-tenant sync configuration.

Covers attribute parsing, clamping, fallbacks, the run window test and
task key construction.
"""

import os
import sys
import unittest
from datetime import datetime, timezone, timedelta
from zoneinfo import ZoneInfo

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from userinfo_sync.tenant_config import TenantSyncConfig, DEFAULT_MAPPING


class TestFromAttributes(unittest.TestCase):
    """Test cases for TenantSyncConfig.from_attributes."""

    def test_defaults(self):
        config = TenantSyncConfig.from_attributes({})

        self.assertFalse(config.enabled)
        self.assertEqual(config.run_at, '03:00')
        self.assertEqual(config.window_minutes, 3)
        self.assertEqual(config.batch_size, 500)
        self.assertEqual(config.max_concurrency, 15)
        self.assertEqual(config.http_timeout_ms, 5000)
        self.assertEqual(config.per_subject_timeout_ms, 8000)
        self.assertEqual(config.retry_max_attempts, 3)
        self.assertEqual(config.retry_base_backoff_ms, 250)
        self.assertEqual(config.mapping, DEFAULT_MAPPING)
        self.assertEqual(config.invalidate_on_keys, frozenset({'deptId'}))
        self.assertEqual(config.task_key_prefix, 'userinfosync')
        self.assertEqual(config.result_type, 'basic')
        self.assertTrue(config.invalidate_logout)

    def test_none_attributes(self):
        config = TenantSyncConfig.from_attributes(None, 'acme')
        self.assertFalse(config.enabled)

    def test_full_attributes(self):
        config = TenantSyncConfig.from_attributes({
            'userinfosync.enabled': 'TRUE',
            'userinfosync.runAt': '4:05',
            'userinfosync.windowMinutes': '10',
            'userinfosync.batchSize': '100',
            'userinfosync.maxConcurrency': '4',
            'userinfosync.httpTimeoutMs': '2000',
            'userinfosync.perSubjectTimeoutMs': '3000',
            'userinfosync.retry.maxAttempts': '5',
            'userinfosync.retry.baseBackoffMs': '100',
            'userinfosync.taskKeyPrefix': 'nightly',
            'userinfosync.timezone': 'Asia/Tokyo',
            'userinfosync.mappingJson': '{"deptId": "a.b", "title": "a.c"}',
            'userinfosync.invalidateOnKeys': ' deptId , title ,,',
            'userinfosync.resultType': 'optional',
            'userinfosync.invalidate.logout': 'false',
        }, 'acme')

        self.assertTrue(config.enabled)
        self.assertEqual(config.run_at, '04:05')
        self.assertEqual(config.window_minutes, 10)
        self.assertEqual(config.batch_size, 100)
        self.assertEqual(config.max_concurrency, 4)
        self.assertEqual(config.http_timeout_ms, 2000)
        self.assertEqual(config.per_subject_timeout_ms, 3000)
        self.assertEqual(config.retry_max_attempts, 5)
        self.assertEqual(config.retry_base_backoff_ms, 100)
        self.assertEqual(config.task_key_prefix, 'nightly')
        self.assertEqual(str(config.timezone), 'Asia/Tokyo')
        self.assertEqual(list(config.mapping.items()), [('deptId', 'a.b'), ('title', 'a.c')])
        self.assertEqual(config.invalidate_on_keys, frozenset({'deptId', 'title'}))
        self.assertEqual(config.result_type, 'optional')
        self.assertFalse(config.invalidate_logout)

    def test_enabled_only_when_true(self):
        for value in ('yes', '1', 'on', 'enabled'):
            config = TenantSyncConfig.from_attributes({'userinfosync.enabled': value})
            self.assertFalse(config.enabled, value)

    def test_values_clamped(self):
        config = TenantSyncConfig.from_attributes({
            'userinfosync.windowMinutes': '500',
            'userinfosync.batchSize': '0',
            'userinfosync.maxConcurrency': '1000',
            'userinfosync.httpTimeoutMs': '1',
            'userinfosync.perSubjectTimeoutMs': '10',
            'userinfosync.retry.maxAttempts': '-3',
            'userinfosync.retry.baseBackoffMs': '99999',
        })

        self.assertEqual(config.window_minutes, 120)
        self.assertEqual(config.batch_size, 1)
        self.assertEqual(config.max_concurrency, 200)
        self.assertEqual(config.http_timeout_ms, 500)
        self.assertEqual(config.per_subject_timeout_ms, 1000)
        self.assertEqual(config.retry_max_attempts, 0)
        self.assertEqual(config.retry_base_backoff_ms, 10000)

    def test_invalid_integers_fall_back(self):
        with self.assertLogs('userinfo_sync.tenant_config', level='WARNING'):
            config = TenantSyncConfig.from_attributes({
                'userinfosync.batchSize': 'lots',
                'userinfosync.maxConcurrency': '2.5',
            }, 'acme')

        self.assertEqual(config.batch_size, 500)
        self.assertEqual(config.max_concurrency, 15)

    def test_invalid_run_at_falls_back(self):
        for value in ('25:00', '3pm', '03:60', ''):
            config = TenantSyncConfig.from_attributes({'userinfosync.runAt': value})
            self.assertEqual(config.run_at, '03:00', value)

    def test_invalid_mapping_falls_back(self):
        for value in ('not json', '[1, 2]', '{"deptId": 5}'):
            with self.assertLogs('userinfo_sync.tenant_config', level='WARNING'):
                config = TenantSyncConfig.from_attributes({'userinfosync.mappingJson': value})
            self.assertEqual(config.mapping, DEFAULT_MAPPING)

    def test_invalid_timezone_falls_back(self):
        with self.assertLogs('userinfo_sync.tenant_config', level='WARNING'):
            config = TenantSyncConfig.from_attributes({'userinfosync.timezone': 'Mars/Olympus'})
        self.assertIsNotNone(config.timezone)

    def test_unknown_result_type(self):
        config = TenantSyncConfig.from_attributes({'userinfosync.resultType': 'everything'})
        self.assertEqual(config.result_type, 'basic')

    def test_blank_invalidate_keys(self):
        config = TenantSyncConfig.from_attributes({'userinfosync.invalidateOnKeys': ''})
        self.assertEqual(config.invalidate_on_keys, frozenset())


class TestRunWindow(unittest.TestCase):
    """Test cases for is_now_in_window."""

    def _config(self, run_at, window, tz=timezone.utc):
        return TenantSyncConfig(run_at=run_at, window_minutes=window, timezone=tz)

    def test_exact_run_at(self):
        config = self._config('03:00', 3)
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)))

    def test_within_and_outside(self):
        config = self._config('03:00', 3)
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 3, 3, tzinfo=timezone.utc)))
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 2, 57, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2024, 5, 1, 3, 4, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc)))

    def test_window_across_midnight_before(self):
        config = self._config('00:02', 5)
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 23, 59, tzinfo=timezone.utc)))

    def test_window_across_midnight_after(self):
        config = self._config('23:58', 5)
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 2, 0, 1, tzinfo=timezone.utc)))

    def test_zero_window(self):
        config = self._config('03:00', 0)
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 3, 0, 30, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2024, 5, 1, 3, 1, tzinfo=timezone.utc)))

    def test_tenant_timezone_applied(self):
        plus_nine = timezone(timedelta(hours=9))
        config = self._config('03:00', 3, tz=plus_nine)
        # 18:00 UTC is 03:00 at UTC+9
        self.assertTrue(config.is_now_in_window(datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)))

    def test_run_at_inside_spring_forward_gap(self):
        # 2026-03-08 02:00-03:00 does not exist in New York; 02:30 resolves to 03:30 EDT
        config = self._config('02:30', 3, tz=ZoneInfo('America/New_York'))
        self.assertTrue(config.is_now_in_window(datetime(2026, 3, 8, 7, 31, tzinfo=timezone.utc)))

        start = datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc)
        matches = [minute for minute in range(23 * 60)
                   if config.is_now_in_window(start + timedelta(minutes=minute))]
        self.assertEqual(len(matches), 7)

    def test_distance_is_elapsed_time_across_spring_forward(self):
        config = self._config('03:00', 5, tz=ZoneInfo('America/New_York'))
        # 01:58 EST is two real minutes before 03:00 EDT
        self.assertTrue(config.is_now_in_window(datetime(2026, 3, 8, 6, 58, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2026, 3, 8, 6, 54, tzinfo=timezone.utc)))

    def test_ambiguous_run_at_uses_first_occurrence(self):
        config = self._config('01:30', 5, tz=ZoneInfo('America/New_York'))
        # 01:31 EDT matches, 01:31 EST an hour later does not
        self.assertTrue(config.is_now_in_window(datetime(2026, 11, 1, 5, 31, tzinfo=timezone.utc)))
        self.assertFalse(config.is_now_in_window(datetime(2026, 11, 1, 6, 31, tzinfo=timezone.utc)))


class TestTaskKey(unittest.TestCase):
    """Test cases for day and task key construction."""

    def test_day_key_in_tenant_timezone(self):
        config = TenantSyncConfig(timezone=timezone(timedelta(hours=9)))
        now = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)
        self.assertEqual(config.day_key(now), '20240502')

    def test_task_key(self):
        config = TenantSyncConfig(task_key_prefix='userinfosync')
        self.assertEqual(config.build_task_key('acme', '20240501'), 'userinfosync:acme:20240501')

    def test_task_key_custom_prefix(self):
        config = TenantSyncConfig.from_attributes({'userinfosync.taskKeyPrefix': '  nightly '})
        self.assertEqual(config.build_task_key('acme', '20240501'), 'nightly:acme:20240501')


if __name__ == '__main__':
    unittest.main()
