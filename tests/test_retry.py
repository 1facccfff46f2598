"""Tests for retry utilities."""

import unittest
from unittest.mock import MagicMock, patch

import requests

from randrpc import AllowanceExceeded, ServiceError
from randrpc._retry import MaxRetriesExceededError, RetryableError, RetryAttempt, Retrying


def http_error(status_code: int, headers: dict | None = None) -> requests.HTTPError:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.headers = headers or {}
    return requests.HTTPError(f"HTTP {status_code}", response=response)


class TestRetryAttempt(unittest.TestCase):
    """Tests for RetryAttempt dataclass."""

    def test_is_last_attempt_false_when_not_last(self):
        self.assertFalse(RetryAttempt(attempt_number=0, max_retries=3).is_last_attempt)
        self.assertFalse(RetryAttempt(attempt_number=2, max_retries=3).is_last_attempt)

    def test_is_last_attempt_true_when_last(self):
        self.assertTrue(RetryAttempt(attempt_number=3, max_retries=3).is_last_attempt)

    def test_is_frozen(self):
        attempt = RetryAttempt(attempt_number=0, max_retries=3)
        with self.assertRaises(AttributeError):
            attempt.attempt_number = 2  # type: ignore

    def test_context_yields_attempt_metadata(self):
        seen = []
        for attempt in Retrying(max_retries=2):
            with attempt as info:
                seen.append(info)
                break

        self.assertEqual(seen, [RetryAttempt(attempt_number=0, max_retries=2)])


class TestMaxRetriesExceededError(unittest.TestCase):
    """Tests for MaxRetriesExceededError exception."""

    def test_message_is_set(self):
        error = MaxRetriesExceededError("Test message")
        self.assertEqual(str(error), "Test message")

    def test_last_exception_is_set(self):
        original = requests.Timeout("slow")
        error = MaxRetriesExceededError("Test message", last_exception=original)
        self.assertIs(error.last_exception, original)

    def test_last_exception_is_none_by_default(self):
        self.assertIsNone(MaxRetriesExceededError("Test message").last_exception)


class TestRetryingBasicUsage(unittest.TestCase):
    """Tests for basic Retrying usage."""

    def test_success_on_first_attempt(self):
        call_count = 0

        for attempt in Retrying(max_retries=3):
            with attempt:
                call_count += 1
                break

        self.assertEqual(call_count, 1)

    def test_no_retry_when_max_retries_is_zero(self):
        """The original exception propagates unwrapped."""
        call_count = 0

        with self.assertRaises(requests.ConnectionError):
            for attempt in Retrying(max_retries=0):
                with attempt:
                    call_count += 1
                    raise requests.ConnectionError("refused")

        self.assertEqual(call_count, 1)

    @patch("randrpc._retry.sleep_with_jitter")
    def test_retry_on_timeout(self, mock_sleep: MagicMock):
        call_count = 0

        for attempt in Retrying(max_retries=3):
            with attempt:
                call_count += 1
                if call_count < 3:
                    raise requests.Timeout("slow")
                break

        self.assertEqual(call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch("randrpc._retry.sleep_with_jitter")
    def test_raises_max_retries_exceeded_when_exhausted(self, mock_sleep: MagicMock):
        call_count = 0

        with self.assertRaises(MaxRetriesExceededError) as ctx:
            for attempt in Retrying(max_retries=2):
                with attempt:
                    call_count += 1
                    raise requests.ConnectionError("refused")

        self.assertEqual(call_count, 3)
        self.assertIsInstance(ctx.exception.last_exception, requests.ConnectionError)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_does_not_retry_on_non_configured_exception(self):
        call_count = 0

        with self.assertRaises(TypeError):
            for attempt in Retrying(max_retries=3):
                with attempt:
                    call_count += 1
                    raise TypeError("bug")

        self.assertEqual(call_count, 1)

    @patch("randrpc._retry.sleep_with_jitter")
    def test_retryable_error_subclass_is_retried(self, mock_sleep: MagicMock):
        class Flaky(RetryableError):
            pass

        call_count = 0
        for attempt in Retrying(max_retries=1):
            with attempt:
                call_count += 1
                if call_count == 1:
                    raise Flaky("once")
                break

        self.assertEqual(call_count, 2)

    def test_invalid_arguments(self):
        with self.assertRaises(AssertionError):
            Retrying(max_retries=-1)
        with self.assertRaises(AssertionError):
            Retrying(backoff_factor=0)


class TestRetryingQuotaFailures(unittest.TestCase):
    """Quota and service failures are never retried."""

    def test_allowance_exceeded_is_not_retried(self):
        call_count = 0

        with self.assertRaises(AllowanceExceeded):
            for attempt in Retrying(max_retries=3, retry_on_exceptions=(Exception,)):
                with attempt:
                    call_count += 1
                    raise AllowanceExceeded("allowance exceeded")

        self.assertEqual(call_count, 1)

    def test_service_error_is_not_retried(self):
        call_count = 0

        with self.assertRaises(ServiceError):
            for attempt in Retrying(max_retries=3, retry_on_exceptions=(Exception,)):
                with attempt:
                    call_count += 1
                    raise ServiceError("boom", 500)

        self.assertEqual(call_count, 1)

    def test_skip_retry_on_exceptions_takes_precedence(self):
        call_count = 0

        with self.assertRaises(requests.Timeout):
            for attempt in Retrying(max_retries=3, skip_retry_on_exceptions=(requests.Timeout,)):
                with attempt:
                    call_count += 1
                    raise requests.Timeout("slow")

        self.assertEqual(call_count, 1)


class TestRetryingHttpStatus(unittest.TestCase):
    """Tests for status-code based retry decisions."""

    @patch("randrpc._retry.sleep_with_jitter")
    def test_retries_on_503(self, mock_sleep: MagicMock):
        call_count = 0

        for attempt in Retrying(max_retries=2):
            with attempt:
                call_count += 1
                if call_count == 1:
                    raise http_error(503)
                break

        self.assertEqual(call_count, 2)

    def test_does_not_retry_on_400(self):
        call_count = 0

        with self.assertRaises(requests.HTTPError):
            for attempt in Retrying(max_retries=3):
                with attempt:
                    call_count += 1
                    raise http_error(400)

        self.assertEqual(call_count, 1)


class TestRetryingWaitTime(unittest.TestCase):
    """Tests for backoff and Retry-After handling."""

    def test_exponential_backoff(self):
        retrying = Retrying(max_retries=3, backoff_factor=0.5)
        error = requests.Timeout("slow")

        waits = []
        for attempt_number in range(3):
            retrying._current_attempt = attempt_number
            waits.append(retrying._calculate_wait_time(error))

        self.assertEqual(waits, [0.5, 1.0, 2.0])

    def test_retry_after_header_on_429(self):
        retrying = Retrying(max_retries=3, backoff_factor=0.5)

        self.assertEqual(retrying._calculate_wait_time(http_error(429, {"Retry-After": "7"})), 7.0)

    def test_retry_after_smaller_than_backoff_uses_backoff(self):
        retrying = Retrying(max_retries=3, backoff_factor=4.0)

        self.assertEqual(retrying._calculate_wait_time(http_error(429, {"Retry-After": "1"})), 4.0)

    def test_retry_after_above_cap_is_ignored(self):
        retrying = Retrying(max_retries=3, backoff_factor=0.5)

        self.assertEqual(retrying._calculate_wait_time(http_error(429, {"Retry-After": "3600"})), 0.5)

    def test_invalid_retry_after_is_ignored(self):
        retrying = Retrying(max_retries=3, backoff_factor=0.5)

        self.assertEqual(
            retrying._calculate_wait_time(http_error(429, {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})),
            0.5,
        )


if __name__ == "__main__":
    unittest.main()
