#!/usr/bin/env python3
"""
Unit tests for retry classification, backoff and the retry policy.
"""

import os
import sys
import socket
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guest_sync.clients.base import ApiError, ApiAuthenticationError
from guest_sync.config import SyncSettings
from guest_sync.retry import (
    ErrorKind, RetryableError, MaxRetriesExceeded, RetryPolicy,
    compute_backoff, is_retryable_error, is_retryable_status, kind_for_status
)


class TestClassification(unittest.TestCase):
    """Which failures are worth retrying."""

    def test_retryable_statuses(self):
        for status in (429, 500, 502, 503, 504, 599):
            self.assertTrue(is_retryable_status(status), status)
        for status in (400, 401, 403, 404, 409):
            self.assertFalse(is_retryable_status(status), status)

    def test_kind_for_status(self):
        self.assertEqual(kind_for_status(429), ErrorKind.RATE_LIMITED)
        self.assertEqual(kind_for_status(503), ErrorKind.SERVER_ERROR)
        self.assertEqual(kind_for_status(404), ErrorKind.CLIENT_ERROR)

    def test_timeouts_are_retryable(self):
        self.assertTrue(is_retryable_error(TimeoutError("slow")))
        self.assertTrue(is_retryable_error(socket.timeout("slow")))
        self.assertTrue(is_retryable_error(RetryableError("slow", kind=ErrorKind.TIMEOUT)))

    def test_status_free_io_errors_are_retryable(self):
        self.assertTrue(is_retryable_error(ConnectionResetError("reset")))
        self.assertTrue(is_retryable_error(ApiError("connection refused", kind=ErrorKind.IO)))

    def test_client_errors_are_fatal(self):
        self.assertFalse(is_retryable_error(ApiError.from_status(400, "bad request")))
        self.assertFalse(is_retryable_error(ApiAuthenticationError("denied", status_code=403)))
        self.assertFalse(is_retryable_error(ApiError("bad json", kind=ErrorKind.CLIENT_ERROR)))
        self.assertFalse(is_retryable_error(ValueError("bad input")))

    def test_status_attribute_on_foreign_errors(self):
        error = Exception("throttled")
        error.status_code = 429
        self.assertTrue(is_retryable_error(error))
        error.status_code = 422
        self.assertFalse(is_retryable_error(error))


class TestBackoff(unittest.TestCase):
    """Backoff formula."""

    def test_exponential_without_jitter(self):
        delays = [compute_backoff(a, 0.5, 30.0, 0.0) for a in range(1, 8)]
        self.assertEqual(delays, [0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0])

    def test_exponent_is_capped_at_six(self):
        self.assertEqual(compute_backoff(20, 0.1, 1000.0, 0.0), 0.1 * 64)

    def test_jitter_is_bounded(self):
        for _ in range(50):
            delay = compute_backoff(1, 0.5, 30.0, 0.35)
            self.assertGreaterEqual(delay, 0.5)
            self.assertLessEqual(delay, 0.85)

    def test_cap_applies(self):
        self.assertEqual(compute_backoff(7, 1.0, 5.0, 0.35), 5.0)

    def test_retry_after_wins_when_larger(self):
        self.assertEqual(compute_backoff(1, 0.5, 30.0, 0.0, retry_after=12.0), 12.0)
        self.assertEqual(compute_backoff(4, 0.5, 30.0, 0.0, retry_after=1.0), 4.0)


class TestRetryPolicy(unittest.TestCase):
    """with_retry behaviour with an injected sleep."""

    def setUp(self):
        self.sleeps = []
        self.policy = RetryPolicy(max_attempts=7, base_delay=0.5, max_delay=30.0,
                                  jitter=0.0, sleep=self.sleeps.append)

    def test_success_first_time(self):
        func = Mock(return_value='ok')
        self.assertEqual(self.policy.with_retry('op', 'key', func), 'ok')
        func.assert_called_once()
        self.assertEqual(self.sleeps, [])

    def test_429_six_times_then_success(self):
        func = Mock(side_effect=[ApiError.from_status(429, "throttled")] * 6 + ['done'])

        result = self.policy.with_retry('ensureMembership', 'u1', func)

        self.assertEqual(result, 'done')
        self.assertEqual(func.call_count, 7)
        self.assertEqual(self.sleeps, [0.5, 1.0, 2.0, 4.0, 8.0, 16.0])

    def test_exhaustion_raises_max_retries(self):
        last = ApiError.from_status(503, "unavailable")
        func = Mock(side_effect=last)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            self.policy.with_retry('ensureGuest', 'a@example.com', func)

        self.assertEqual(func.call_count, 7)
        self.assertEqual(ctx.exception.attempts, 7)
        self.assertIs(ctx.exception.last_exception, last)
        self.assertEqual(ctx.exception.key, 'a@example.com')
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(len(self.sleeps), 6)

    def test_fatal_error_surfaces_immediately(self):
        error = ApiError.from_status(400, "bad request")
        func = Mock(side_effect=error)

        with self.assertRaises(ApiError) as ctx:
            self.policy.with_retry('op', 'key', func)

        self.assertIs(ctx.exception, error)
        func.assert_called_once()
        self.assertEqual(self.sleeps, [])

    def test_retry_after_hint_is_honoured(self):
        func = Mock(side_effect=[ApiError.from_status(429, "throttled", retry_after=9.0), 'ok'])
        self.policy.with_retry('op', 'key', func)
        self.assertEqual(self.sleeps, [9.0])

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryPolicy(base_delay=-1)

    def test_from_settings(self):
        settings = SyncSettings(max_attempts=3, retry_base_delay=1.0, retry_max_delay=10.0, retry_jitter=0.1)
        policy = RetryPolicy.from_settings(settings)
        self.assertEqual((policy.max_attempts, policy.base_delay, policy.max_delay, policy.jitter),
                         (3, 1.0, 10.0, 0.1))


if __name__ == '__main__':
    unittest.main()
