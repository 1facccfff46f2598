"""
Background prefetching of random values.

A RandomOrgCache keeps up to `cache_size` result sets ready for immediate
use. A daemon thread refills it through `RandomOrgClient.send_request()`, so
every refill is admitted (or rejected) by the client's quota governor:

- AllowanceExceeded / InsufficientLocalBudget: prefetching is suspended
  until the failure's resume timestamp, then resumes on its own.
- ServiceError 403 (insufficient bits) on a bulk cache: the bulk request is
  shrunk to what the remaining bits allow; if that is impossible the cache
  stops.
- Anything else: logged and retried after `retry_interval` seconds.

Caches are created by the client factories (`create_integer_cache()`, ...),
not directly.

Example:
    >>> cache = client.create_integer_cache(n=5, min=1, max=6)
    >>> cache.get_or_wait(timeout=10)
    [4, 1, 6, 6, 3]
    >>> cache.close()
"""

from __future__ import annotations

import logging
import math
import queue
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from randrpc._errors import AllowanceExceeded, InsufficientLocalBudget, RandomOrgFailure, ServiceError

if TYPE_CHECKING:
    from randrpc.client import RandomOrgClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_SIZE = 20
DEFAULT_CACHE_SIZE_SMALL = 10
MIN_CACHE_SIZE = 2

# Service error code for "not enough bits left"
INSUFFICIENT_BITS_CODE = 403


def request_bits(choices: int, count: int) -> int:
    """Upper bound of the random bits needed to draw `count` values among `choices`."""
    if choices <= 1 or count <= 0:
        return 0
    return math.ceil(math.log2(choices) * count)


class RandomOrgCache(Generic[T]):
    """
    Thread-safe cache of result sets, refilled in the background.

    Each cached entry is one result set of `n` values, as a single call of
    the matching `generate_*` method would return it. Bulk caches ask the
    server for `cache_size // 2` result sets per request and split them.

    Args:
        client: Client used to send the refill requests.
        method: JSON-RPC method name (e.g., "generateIntegers").
        params: Method parameters for ONE result set, without `n`.
        n: Values per result set.
        cache_size: Result sets to keep ready (at least 2).
        bulk: Whether several result sets may be fetched per request.
        single_request_bits: Bits needed by one result set, used to shrink
            bulk requests when the server reports insufficient bits.
        process: Turns a JSON-RPC `result` into the list of values.
        poll_interval: Seconds between checks of the resume timestamp while
            suspended.
        retry_interval: Seconds to wait after a failed refill.
        start: Start the refill thread immediately.
    """

    def __init__(
        self,
        client: RandomOrgClient,
        method: str,
        params: dict[str, Any],
        n: int,
        process: Callable[[dict[str, Any]], list[T]],
        cache_size: int = DEFAULT_CACHE_SIZE,
        bulk: bool = False,
        single_request_bits: int | None = None,
        poll_interval: float = 1.0,
        retry_interval: float = 5.0,
        start: bool = True,
    ):
        assert client is not None, "client cannot be None."
        assert method, "method cannot be empty."
        assert n > 0, "n must be greater than 0."
        assert poll_interval > 0, "poll_interval must be greater than 0."
        assert retry_interval >= 0, "retry_interval must be >= 0."

        self.client = client
        self.method = method
        self.n = n
        self.cache_size = max(MIN_CACHE_SIZE, cache_size)
        self.bulk_request_number = self.cache_size // 2 if bulk else 0
        self.single_request_bits = single_request_bits
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval
        self.logger_prefix = f"{client.logger_prefix} | RandomOrgCache({method})"

        self._process = process
        self._params = {**params, "n": self._request_size()}
        self._queue: queue.Queue[list[T]] = queue.Queue()
        self._condition = threading.Condition()
        self._paused = False
        self._closed = False
        self._resume_at: datetime | None = None
        self._used_bits = 0
        self._used_requests = 0

        self._thread = threading.Thread(
            target=self._populate,
            name=f"randrpc-cache-{method}",
            daemon=True,
        )
        if start:
            self._thread.start()

    # -------------------------------------------------------------------------
    # Consumer API
    # -------------------------------------------------------------------------

    def get(self) -> list[T]:
        """
        Pop the next cached result set without waiting.

        Raises:
            queue.Empty: If no result set is cached right now.
        """
        with self._condition:
            result = self._queue.get_nowait()
            self._condition.notify_all()
            return result

    def get_or_wait(self, timeout: float | None = None) -> list[T]:
        """
        Pop the next cached result set, waiting for a refill if needed.

        Raises:
            queue.Empty: If nothing arrived within `timeout` seconds.
        """
        result = self._queue.get(timeout=timeout)
        with self._condition:
            self._condition.notify_all()
        return result

    def stop(self) -> None:
        """Pause refilling. Cached values stay available."""
        with self._condition:
            self._paused = True
            self._condition.notify_all()

    def resume(self) -> None:
        """Resume refilling after stop()."""
        with self._condition:
            self._paused = False
            self._condition.notify_all()

    def close(self, timeout: float | None = None) -> None:
        """Stop the refill thread for good and wait (up to `timeout`) for it to exit."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def suspended_until(self) -> datetime | None:
        """Resume timestamp while refilling is blocked by the quota governor."""
        with self._condition:
            return self._resume_at

    @property
    def cached_values(self) -> int:
        """Number of result sets ready to be consumed."""
        return self._queue.qsize()

    @property
    def used_bits(self) -> int:
        return self._used_bits

    @property
    def used_requests(self) -> int:
        return self._used_requests

    # -------------------------------------------------------------------------
    # Refill thread
    # -------------------------------------------------------------------------

    def _request_size(self) -> int:
        return self.n * self.bulk_request_number if self.bulk_request_number else self.n

    def _has_space(self) -> bool:
        return self._queue.qsize() < self.cache_size - self.bulk_request_number

    def _can_fetch(self) -> bool:
        """Must be called with the condition held."""
        if self._paused or not self._has_space():
            return False
        return self._resume_at is None or self.client.clock.now() >= self._resume_at

    def _populate(self) -> None:
        while True:
            with self._condition:
                while not self._closed and not self._can_fetch():
                    # Timed wait: the resume timestamp is checked against the client clock.
                    self._condition.wait(timeout=self.poll_interval)
                if self._closed:
                    return
                if self._resume_at is not None:
                    logger.info(f"{self.logger_prefix} | Quota back-off is over. Resuming prefetch.")
                    self._resume_at = None
            self._refill()

    def _refill(self) -> None:
        try:
            result = self.client.send_request(self.method, self._params)
            values = self._process(result)
        except (AllowanceExceeded, InsufficientLocalBudget) as e:
            self._suspend(e)
            return
        except ServiceError as e:
            if e.code == INSUFFICIENT_BITS_CODE:
                self._shrink_bulk_request(e)
                return
            logger.warning(f"{self.logger_prefix} | Prefetch failed: {e!r}. Retrying in {self.retry_interval}s.")
            self._wait_before_retry()
            return
        except Exception as e:
            logger.warning(
                f"{self.logger_prefix} | Prefetch failed: {type(e).__name__}: {e}. "
                f"Retrying in {self.retry_interval}s."
            )
            self._wait_before_retry()
            return

        self._used_requests += 1
        bits_used = result.get("bitsUsed")
        if isinstance(bits_used, int) and not isinstance(bits_used, bool):
            self._used_bits += bits_used

        for start in range(0, len(values), self.n):
            self._queue.put(values[start:start + self.n])
        logger.debug(f"{self.logger_prefix} | Cache refilled ({self.cached_values}/{self.cache_size}).")

    def _suspend(self, failure: RandomOrgFailure) -> None:
        state = self.client.governor.state
        if isinstance(failure, AllowanceExceeded):
            resume_at = state.allowance_resume_at
        else:
            resume_at = state.local_budget_resume_at
        if resume_at is None:
            clock = self.client.clock
            resume_at = clock.next_midnight_utc_after(clock.now())

        with self._condition:
            self._resume_at = resume_at
        logger.warning(f"{self.logger_prefix} | Prefetch suspended until {resume_at.isoformat()}: {failure}")

    def _shrink_bulk_request(self, failure: ServiceError) -> None:
        bits_left = self.client.governor.state.bits_left
        bulk = 0
        if self.bulk_request_number > 1 and bits_left is not None and self.single_request_bits:
            bulk = min(self.bulk_request_number - 1, bits_left // self.single_request_bits)

        if bulk < 1:
            logger.error(f"{self.logger_prefix} | Not enough bits left to refill the cache: {failure}")
            self.stop()
            return

        with self._condition:
            self.bulk_request_number = bulk
            self._params["n"] = self._request_size()
        logger.info(f"{self.logger_prefix} | Bulk request shrunk to {bulk} result sets.")

    def _wait_before_retry(self) -> None:
        with self._condition:
            self._condition.wait_for(lambda: self._closed, timeout=self.retry_interval)
