"""
JSON-RPC client for the random-number-generation service.

RandomOrgClient builds JSON-RPC 2.0 requests and runs every one of them
through the quota governor:

1. `governor.admit()` - fail fast with AllowanceExceeded or
   InsufficientLocalBudget, without contacting the server.
2. Wait for its turn to be sent: requests of one client go out one at a time,
   from a single worker thread in serialized mode (the default), and obey
   the server advisory delay. SendTimeoutError if that takes longer than
   `blocking_timeout`.
3. POST the request (transport failures retried by Retrying, if enabled).
4. `governor.observe()` - raise ServiceError when the response carries an
   error object; update the local budget otherwise.

Example:
    >>> from randrpc import RandomOrgClient
    >>> client = RandomOrgClient.for_api_key("6b1e65b9-4186-45c2-8981-b77a9842c4f0")
    >>> client.generate_integers(n=5, min=1, max=6)
    [3, 1, 6, 6, 2]
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, ClassVar

import requests

from randrpc._cache import DEFAULT_CACHE_SIZE, DEFAULT_CACHE_SIZE_SMALL, RandomOrgCache, request_bits
from randrpc._clock import ClockSource, SystemClock
from randrpc._config import RANDRPC, ClientConfig
from randrpc._errors import RandomOrgFailure
from randrpc._governor import BackoffGovernor, RpcOutcome
from randrpc._http import BadHTTPResponseError, HttpClient, RequestsHttpClient
from randrpc._policy import DEFAULT_ERROR_CODE_POLICY
from randrpc._quota import QuotaState
from randrpc._retry import MaxRetriesExceededError, Retrying
from randrpc._utils import mask_api_key

logger = logging.getLogger(__name__)

# Usage data older than this is fetched again by get_requests_left()/get_bits_left()
ALLOWANCE_STATE_REFRESH = timedelta(hours=1)

BLOB_FORMAT_BASE64 = "base64"
BLOB_FORMAT_HEX = "hex"

# Bits per decimal digit, for cache bulk-request sizing
_BITS_PER_DIGIT = 10
# Random bits in a version 4 UUID
_UUID_BITS = 122


class SendTimeoutError(Exception):
    """
    Raised when a request cannot be sent within `blocking_timeout`.

    Either the server advisory delay is longer than `blocking_timeout`, or
    the request waited that long for its turn behind other requests of the
    same client. This is a transport-side condition, not a quota failure:
    the governor already admitted the request and nothing was sent.

    Attributes:
        wait: Seconds the request would still have had to wait (or waited).
        blocking_timeout: The configured maximum wait.
    """

    def __init__(self, wait: float, blocking_timeout: float, message: str | None = None):
        self.wait = wait
        self.blocking_timeout = blocking_timeout
        super().__init__(message or (
            f"The server advisory delay of {wait:.2f}s is greater than the "
            f"maximum allowed blocking time of {blocking_timeout:.2f}s."
        ))

    @classmethod
    def queued(cls, blocking_timeout: float) -> SendTimeoutError:
        return cls(
            wait=blocking_timeout,
            blocking_timeout=blocking_timeout,
            message=(
                f"The maximum allowed blocking time of {blocking_timeout:.2f}s was "
                f"exceeded while waiting for the request to be sent."
            ),
        )


class RandomOrgClient:
    """
    Client for the random-number-generation JSON-RPC API.

    One QuotaState should exist per API key, so prefer `for_api_key()`,
    which returns a shared instance, over calling the constructor directly.

    Requests of one client are sent one at a time so the server advisory
    delay is obeyed across threads. In serialized mode they are queued to a
    single worker thread and sent in submission order; otherwise the calling
    thread sends its own request once it holds the send lock.

    Args:
        api_key: API key issued by the service. Falls back to
            RANDRPC.config.client.api_key.
        http_client: Transport. Defaults to RequestsHttpClient.
        clock: Time source. Defaults to SystemClock.
        governor: Quota governor. Defaults to one built from
            RANDRPC.config.quota.
        options: Client configuration. Defaults to RANDRPC.config.client.
        serialized: Overrides `options.serialized`.

    Raises:
        AssertionError: If no API key is available.
    """

    _instances: ClassVar[dict[str, RandomOrgClient]] = {}
    _instances_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        api_key: str | None = None,
        *,
        http_client: HttpClient | None = None,
        clock: ClockSource | None = None,
        governor: BackoffGovernor | None = None,
        options: ClientConfig | None = None,
        serialized: bool | None = None,
    ):
        self.options = options or RANDRPC.config.client
        self.api_key = api_key or self.options.api_key
        assert self.api_key, "api_key is required (argument or RANDRPC_CLIENT_API_KEY)."

        self.logger_prefix = f"RandomOrgClient({mask_api_key(self.api_key)})"
        self.http_client = http_client or RequestsHttpClient()
        self.clock = clock or SystemClock()
        self.governor = governor or self._create_governor()
        self.serialized = self.options.serialized if serialized is None else serialized

        self._send_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        if self.serialized:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="randrpc-sender")

        self._advisory_lock = threading.Lock()
        self._advisory_delay = 0.0
        self._last_response_at = 0.0
        self._last_usage_at: datetime | None = None

    @classmethod
    def for_api_key(cls, api_key: str, **kwargs: Any) -> RandomOrgClient:
        """
        Return the shared client for `api_key`, creating it on first use.

        Keyword arguments (including `serialized`) are only used when the
        instance is created.
        """
        with cls._instances_lock:
            instance = cls._instances.get(api_key)
            if instance is None:
                instance = cls(api_key, **kwargs)
                cls._instances[api_key] = instance
            return instance

    @classmethod
    def clear_instances(cls) -> None:
        """Close and forget every shared instance. Useful between tests."""
        with cls._instances_lock:
            for instance in cls._instances.values():
                instance.close(wait=False)
            cls._instances.clear()

    def close(self, wait: bool = True) -> None:
        """Stop the serialized sender thread. Requests already queued are still sent."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _create_governor(self) -> BackoffGovernor:
        quota = RANDRPC.config.quota
        return BackoffGovernor(
            state=QuotaState(daily_request_quota=quota.daily_request_quota, clock=self.clock),
            policy=DEFAULT_ERROR_CODE_POLICY.with_allowance_codes(quota.allowance_codes),
            logger_prefix=self.logger_prefix,
        )

    # -------------------------------------------------------------------------
    # Basic methods
    # -------------------------------------------------------------------------

    def generate_integers(
        self,
        n: int,
        min: int,
        max: int,
        replacement: bool = True,
        base: int = 10,
    ) -> list[int] | list[str]:
        """
        Request `n` true random integers in [min, max].

        With a base other than 10 the service returns strings.
        """
        result = self.send_request("generateIntegers", {
            "n": n, "min": min, "max": max, "replacement": replacement, "base": base,
        })
        return _random_data(result)

    def generate_integer_sequences(
        self,
        n: int,
        length: int,
        min: int,
        max: int,
        replacement: bool = True,
        base: int = 10,
    ) -> list[list[int]]:
        result = self.send_request("generateIntegerSequences", {
            "n": n, "length": length, "min": min, "max": max,
            "replacement": replacement, "base": base,
        })
        return _random_data(result)

    def generate_decimal_fractions(
        self,
        n: int,
        decimal_places: int,
        replacement: bool = True,
    ) -> list[float]:
        result = self.send_request("generateDecimalFractions", {
            "n": n, "decimalPlaces": decimal_places, "replacement": replacement,
        })
        return _random_data(result)

    def generate_gaussians(
        self,
        n: int,
        mean: float,
        standard_deviation: float,
        significant_digits: int,
    ) -> list[float]:
        result = self.send_request("generateGaussians", {
            "n": n, "mean": mean, "standardDeviation": standard_deviation,
            "significantDigits": significant_digits,
        })
        return _random_data(result)

    def generate_strings(
        self,
        n: int,
        length: int,
        characters: str,
        replacement: bool = True,
    ) -> list[str]:
        result = self.send_request("generateStrings", {
            "n": n, "length": length, "characters": characters, "replacement": replacement,
        })
        return _random_data(result)

    def generate_uuids(self, n: int) -> list[uuid.UUID]:
        result = self.send_request("generateUUIDs", {"n": n})
        return _uuids(result)

    def generate_blobs(self, n: int, size: int, format: str = BLOB_FORMAT_BASE64) -> list[str]:
        """
        Request `n` random blobs of `size` bits, encoded as base64 or hex.
        """
        _check_blob_format(format)
        result = self.send_request("generateBlobs", {"n": n, "size": size, "format": format})
        return _random_data(result)

    # -------------------------------------------------------------------------
    # Caches
    # -------------------------------------------------------------------------

    def create_integer_cache(
        self,
        n: int,
        min: int,
        max: int,
        replacement: bool = True,
        base: int = 10,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> RandomOrgCache[int]:
        """
        Return a cache of generate_integers() result sets, refilled in the background.

        With replacement, several result sets are fetched per request.
        """
        return RandomOrgCache(
            self, "generateIntegers",
            {"min": min, "max": max, "replacement": replacement, "base": base},
            n=n, process=_random_data, cache_size=cache_size, bulk=replacement,
            single_request_bits=request_bits(max - min + 1, n),
        )

    def create_integer_sequence_cache(
        self,
        n: int,
        length: int,
        min: int,
        max: int,
        replacement: bool = True,
        base: int = 10,
        cache_size: int = DEFAULT_CACHE_SIZE_SMALL,
    ) -> RandomOrgCache[list[int]]:
        return RandomOrgCache(
            self, "generateIntegerSequences",
            {"length": length, "min": min, "max": max, "replacement": replacement, "base": base},
            n=n, process=_random_data, cache_size=cache_size, bulk=replacement,
            single_request_bits=request_bits(max - min + 1, n * length),
        )

    def create_decimal_fraction_cache(
        self,
        n: int,
        decimal_places: int,
        replacement: bool = True,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> RandomOrgCache[float]:
        return RandomOrgCache(
            self, "generateDecimalFractions",
            {"decimalPlaces": decimal_places, "replacement": replacement},
            n=n, process=_random_data, cache_size=cache_size, bulk=replacement,
            single_request_bits=request_bits(_BITS_PER_DIGIT, decimal_places * n),
        )

    def create_gaussian_cache(
        self,
        n: int,
        mean: float,
        standard_deviation: float,
        significant_digits: int,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> RandomOrgCache[float]:
        return RandomOrgCache(
            self, "generateGaussians",
            {"mean": mean, "standardDeviation": standard_deviation, "significantDigits": significant_digits},
            n=n, process=_random_data, cache_size=cache_size, bulk=True,
            single_request_bits=request_bits(_BITS_PER_DIGIT, significant_digits * n),
        )

    def create_string_cache(
        self,
        n: int,
        length: int,
        characters: str,
        replacement: bool = True,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> RandomOrgCache[str]:
        return RandomOrgCache(
            self, "generateStrings",
            {"length": length, "characters": characters, "replacement": replacement},
            n=n, process=_random_data, cache_size=cache_size, bulk=replacement,
            single_request_bits=request_bits(len(characters), length * n),
        )

    def create_uuid_cache(self, n: int, cache_size: int = DEFAULT_CACHE_SIZE_SMALL) -> RandomOrgCache[uuid.UUID]:
        return RandomOrgCache(
            self, "generateUUIDs", {},
            n=n, process=_uuids, cache_size=cache_size, bulk=True,
            single_request_bits=_UUID_BITS * n,
        )

    def create_blob_cache(
        self,
        n: int,
        size: int,
        format: str = BLOB_FORMAT_BASE64,
        cache_size: int = DEFAULT_CACHE_SIZE_SMALL,
    ) -> RandomOrgCache[str]:
        _check_blob_format(format)
        return RandomOrgCache(
            self, "generateBlobs", {"size": size, "format": format},
            n=n, process=_random_data, cache_size=cache_size, bulk=True,
            single_request_bits=size * n,
        )

    # -------------------------------------------------------------------------
    # Usage
    # -------------------------------------------------------------------------

    def get_usage(self) -> dict[str, Any]:
        """Fetch the API key's usage (status, requestsLeft, bitsLeft, ...)."""
        return self.send_request("getUsage", {})

    def get_requests_left(self) -> int | None:
        """
        Return the (estimated) number of requests left for today.

        Fetches fresh usage from the server when no usage data was seen in
        the last hour.
        """
        if self._usage_is_stale():
            self.get_usage()
        return self.governor.state.requests_left

    def get_bits_left(self) -> int | None:
        """Return the (estimated) number of bits left for today. See get_requests_left()."""
        if self.governor.state.bits_left is None or self._usage_is_stale():
            self.get_usage()
        return self.governor.state.bits_left

    def _usage_is_stale(self) -> bool:
        if self._last_usage_at is None:
            return True
        return self.clock.now() > self._last_usage_at + ALLOWANCE_STATE_REFRESH

    # -------------------------------------------------------------------------
    # Server communication
    # -------------------------------------------------------------------------

    def send_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """
        Send one JSON-RPC request through the quota governor.

        Args:
            method: JSON-RPC method name (e.g., "generateIntegers").
            params: Method parameters, without the API key.

        Returns:
            The JSON-RPC `result` object.

        Raises:
            AllowanceExceeded: Server allowance exhausted; nothing was sent.
            InsufficientLocalBudget: Local budget exhausted; nothing was sent.
            ServiceError: The service answered with an error object.
            SendTimeoutError: The request could not be sent within blocking_timeout.
            BadHTTPResponseError: The endpoint answered with a non-200 status.
            requests.RequestException: Other transport failures.
            MaxRetriesExceededError: Transport retries were exhausted.
        """
        admission = self.governor.admit(self.clock.now())
        if isinstance(admission, RandomOrgFailure):
            raise admission

        envelope = {
            "jsonrpc": "2.0",
            "method": method,
            "params": {"apiKey": self.api_key, **params},
            "id": str(uuid.uuid4()),
        }

        outcome = self._dispatch(envelope)

        now = self.clock.now()
        failure = self.governor.observe(outcome, now)
        if failure is not None:
            raise failure

        result: dict[str, Any] = outcome.result if isinstance(outcome.result, dict) else {}
        if "requestsLeft" in result:
            self._last_usage_at = now
        return result

    def _dispatch(self, envelope: dict[str, Any]) -> RpcOutcome:
        """Send the envelope once no other request of this client is in flight."""
        blocking_timeout = self.options.blocking_timeout

        if self._executor is not None:
            future = self._executor.submit(self._send, envelope)
            return self._wait_for_turn(future, blocking_timeout)

        acquired = self._send_lock.acquire(timeout=-1 if blocking_timeout is None else blocking_timeout)
        if not acquired:
            assert blocking_timeout is not None
            raise SendTimeoutError.queued(blocking_timeout)
        try:
            return self._send(envelope)
        finally:
            self._send_lock.release()

    def _wait_for_turn(self, future: Future[RpcOutcome], blocking_timeout: float | None) -> RpcOutcome:
        try:
            return future.result(timeout=blocking_timeout)
        except TimeoutError:
            # A request still waiting in the queue is withdrawn; one already being sent is awaited.
            if not future.done() and future.cancel():
                assert blocking_timeout is not None
                logger.warning(f"{self.logger_prefix} | Request withdrawn after waiting {blocking_timeout:.2f}s to be sent.")
                raise SendTimeoutError.queued(blocking_timeout) from None
            return future.result()

    def _send(self, envelope: dict[str, Any]) -> RpcOutcome:
        """Obey the advisory delay, POST, and remember the next advisory delay."""
        self._wait_for_advisory_delay()

        try:
            body = self._post(envelope)
        except (requests.RequestException, ValueError, MaxRetriesExceededError) as e:
            return RpcOutcome.from_exception(e)

        outcome = RpcOutcome.from_response(body)
        if not outcome.has_service_error:
            self._update_advisory_delay(outcome.result if isinstance(outcome.result, dict) else {})
        return outcome

    def _post(self, envelope: dict[str, Any]) -> dict[str, Any]:
        """POST the envelope and return the parsed JSON body (with transport retries)."""
        for attempt in Retrying(
            max_retries=self.options.retry_max_retries,
            backoff_factor=self.options.retry_initial_delay,
            logger_prefix=self.logger_prefix,
        ):
            with attempt:
                response = self.http_client.post(
                    self.options.base_url,
                    data=envelope,
                    timeout=self.options.request_timeout,
                )
                if response.status_code != requests.codes.ok:
                    raise BadHTTPResponseError.from_response(response)
                body = response.json()
                if not isinstance(body, dict):
                    raise ValueError(f"Unexpected JSON-RPC response body: {body!r}")
                return body

        raise RuntimeError("Unreachable: Retrying always returns or raises.")

    def _wait_for_advisory_delay(self) -> None:
        with self._advisory_lock:
            wait = self._advisory_delay - (time.monotonic() - self._last_response_at)

        if wait <= 0:
            return

        blocking_timeout = self.options.blocking_timeout
        if blocking_timeout is not None and wait > blocking_timeout:
            raise SendTimeoutError(wait=wait, blocking_timeout=blocking_timeout)

        logger.debug(f"{self.logger_prefix} | Waiting {wait:.2f}s for server advisory delay.")
        time.sleep(wait)

    def _update_advisory_delay(self, result: dict[str, Any]) -> None:
        delay_ms = result.get("advisoryDelay")
        with self._advisory_lock:
            if isinstance(delay_ms, int | float) and not isinstance(delay_ms, bool):
                self._advisory_delay = max(0.0, delay_ms / 1000.0)
            else:
                self._advisory_delay = self.options.default_delay
            self._last_response_at = time.monotonic()


def _random_data(result: dict[str, Any]) -> Any:
    """Extract `result.random.data` from a generate* response."""
    random_obj = result.get("random")
    if not isinstance(random_obj, dict) or "data" not in random_obj:
        raise ValueError(f"Response is missing 'random.data': {result!r}")
    return random_obj["data"]


def _uuids(result: dict[str, Any]) -> list[uuid.UUID]:
    return [uuid.UUID(value) for value in _random_data(result)]


def _check_blob_format(format: str) -> None:
    assert format in (BLOB_FORMAT_BASE64, BLOB_FORMAT_HEX), \
        f"format must be '{BLOB_FORMAT_BASE64}' or '{BLOB_FORMAT_HEX}'."
