"""
Transport retry with exponential backoff.

Only transport-level failures are retried: timeouts, connection errors and
transient HTTP statuses. Governor failures (AllowanceExceeded,
InsufficientLocalBudget, ServiceError) are never retried here; waiting for
the resume timestamp is the caller's decision.

Example:
    >>> from randrpc._retry import Retrying
    >>> for attempt in Retrying(max_retries=3, backoff_factor=0.5):
    ...     with attempt:
    ...         response = http_client.post(url, data=envelope)
    ...         break
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from dataclasses import dataclass

import requests

from randrpc._errors import RandomOrgFailure
from randrpc._utils import sleep_with_jitter

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Base class for exceptions that should trigger automatic retry.

    Subclasses are retried by Retrying without being listed in
    `retry_on_exceptions`.
    """

    pass


class MaxRetriesExceededError(Exception):
    """
    Raised when all retry attempts are exhausted.

    Attributes:
        last_exception: The exception from the last attempt.

    Example:
        >>> try:
        ...     client.generate_integers(n=5, min=1, max=6)
        ... except MaxRetriesExceededError as e:
        ...     print(f"Gave up: {e.last_exception}")
    """

    def __init__(self, message: str, last_exception: Exception | None = None):
        super().__init__(message)
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryAttempt:
    """
    Metadata about the current attempt within a retry loop.

    Attributes:
        attempt_number: Zero-based index of the attempt (0 = first attempt).
        max_retries: Maximum number of retries configured.
    """

    attempt_number: int
    max_retries: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number >= self.max_retries


class Retrying:
    """
    Context manager for retrying transport calls with exponential backoff.

    Usage:
        >>> for attempt in Retrying(max_retries=3, backoff_factor=0.5):
        ...     with attempt:
        ...         response = http_client.post(url, data=envelope)
        ...         break

    Args:
        max_retries: Maximum number of retries (default: 3). 0 disables
            retries; the original exception then propagates unwrapped.
        backoff_factor: Sleep time = backoff_factor * (2 ** attempt_number).
        retry_on_status_codes: HTTP statuses that trigger a retry when a
            RequestException carries a response.
        retry_on_exceptions: Exception types that always trigger a retry.
        skip_retry_on_exceptions: Exception types never retried. Takes
            precedence over everything else. RandomOrgFailure is always
            skipped.
        logger_prefix: Prefix for log messages.

    Raises:
        MaxRetriesExceededError: When all retries are exhausted.
    """

    # Retry-After values above this are ignored in favour of the backoff.
    MAX_RETRY_AFTER = 60.0

    def __init__(
        self,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        retry_on_status_codes: tuple[int, ...] = (408, 429, 500, 502, 503, 504),
        retry_on_exceptions: tuple[type[Exception], ...] = (
            requests.Timeout,
            requests.ConnectionError,
        ),
        skip_retry_on_exceptions: tuple[type[Exception], ...] = (),
        logger_prefix: str = "",
    ):
        assert max_retries >= 0, f"max_retries must be >= 0, got {max_retries}"
        assert backoff_factor > 0, f"backoff_factor must be > 0, got {backoff_factor}"
        assert retry_on_status_codes is not None, "retry_on_status_codes cannot be None"
        assert retry_on_exceptions is not None, "retry_on_exceptions cannot be None"
        assert skip_retry_on_exceptions is not None, "skip_retry_on_exceptions cannot be None"

        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.retry_on_status_codes = set(retry_on_status_codes)
        self.retry_on_exceptions = retry_on_exceptions
        self.skip_retry_on_exceptions = (RandomOrgFailure, *skip_retry_on_exceptions)
        self.logger_prefix = logger_prefix

        self._current_attempt = 0

    def __iter__(self) -> Generator[_RetryContext, None, None]:
        for attempt in range(self.max_retries + 1):
            self._current_attempt = attempt
            yield _RetryContext(self, attempt)

    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""

    def _should_retry(self, exception: Exception) -> bool:
        if isinstance(exception, self.skip_retry_on_exceptions):
            return False

        if isinstance(exception, requests.RequestException):
            response = getattr(exception, "response", None)
            if response is not None:
                return response.status_code in self.retry_on_status_codes

        if isinstance(exception, RetryableError):
            return True

        return isinstance(exception, self.retry_on_exceptions)

    def _handle_retry(self, exception: Exception) -> None:
        sleep_time = self._calculate_wait_time(exception)
        logger.warning(
            f"{self._prefix()}Attempt {self._current_attempt + 1}/{self.max_retries + 1} failed: {exception}"
        )
        logger.warning(f"{self._prefix()}Retrying in {sleep_time:.1f}s...")
        sleep_with_jitter(sleep_time)

    def _calculate_wait_time(self, exception: Exception) -> float:
        """Exponential backoff, or a larger Retry-After on HTTP 429."""
        base_wait: float = self.backoff_factor * (2 ** self._current_attempt)

        response = getattr(exception, "response", None)
        if isinstance(exception, requests.HTTPError) and response is not None \
                and response.status_code == 429:
            retry_after = self._parse_retry_after(response)
            if retry_after is not None:
                return float(max(retry_after, base_wait))

        return base_wait

    def _parse_retry_after(self, response: requests.Response) -> float | None:
        """Numeric Retry-After seconds, or None if absent, invalid or too large."""
        header = response.headers.get("Retry-After")
        if not header:
            return None
        try:
            seconds = float(header)
        except (TypeError, ValueError):
            return None
        if seconds > self.MAX_RETRY_AFTER:
            logger.warning(
                f"{self._prefix()}Retry-After header ({seconds}s) exceeds MAX_RETRY_AFTER "
                f"({self.MAX_RETRY_AFTER}s). Using exponential backoff instead."
            )
            return None
        return seconds

    def _handle_exhausted(self, exception: Exception) -> None:
        logger.error(
            f"{self._prefix()}Max retries ({self.max_retries}) exceeded. Last error: {exception}"
        )
        raise MaxRetriesExceededError(
            message=f"Max retries exceeded. Last error: {exception}",
            last_exception=exception,
        ) from exception


class _RetryContext:
    """
    A single attempt (internal).

    On success exits normally; on a retryable exception suppresses it so the
    loop continues; otherwise lets it propagate.
    """

    def __init__(self, retrying: Retrying, attempt: int):
        self._retrying = retrying
        self.attempt = attempt

    def __enter__(self) -> RetryAttempt:
        return RetryAttempt(
            attempt_number=self.attempt,
            max_retries=self._retrying.max_retries,
        )

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        if exc_val is None:
            return False

        # KeyboardInterrupt and friends always propagate
        if not isinstance(exc_val, Exception):
            return False

        if not self._retrying._should_retry(exc_val):
            return False

        if self._retrying.max_retries == 0:
            return False

        if self.attempt >= self._retrying.max_retries:
            self._retrying._handle_exhausted(exc_val)
            return False

        self._retrying._handle_retry(exc_val)
        return True
