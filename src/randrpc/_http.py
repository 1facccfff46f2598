"""
HTTP transport for JSON-RPC requests.

The transport is a collaborator of the quota governor: it knows nothing about
allowances or budgets. Its failures (`requests.RequestException`,
BadHTTPResponseError) pass through the governor unchanged.

Available implementations:
    - RequestsHttpClient: Posts JSON with the `requests` library. Default.

Example:
    >>> from randrpc._http import RequestsHttpClient
    >>> client = RequestsHttpClient()
    >>> response = client.post("https://api.random.org/json-rpc/4/invoke", data=envelope)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, override

import requests

logger = logging.getLogger(__name__)


class BadHTTPResponseError(requests.HTTPError):
    """
    Raised when the JSON-RPC endpoint answers with a non-200 status.

    Extends requests.HTTPError so Retrying can apply its status-code rules
    (5xx and 429 are retried, other statuses are not).

    Example:
        >>> try:
        ...     client.generate_uuids(n=1)
        ... except BadHTTPResponseError as e:
        ...     print(e.response.status_code)
    """

    @classmethod
    def from_response(cls, response: requests.Response) -> "BadHTTPResponseError":
        return cls(f"Error {response.status_code}: {response.reason}", response=response)


class HttpClient(ABC):
    """
    Abstract base class for the JSON-RPC transport.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def post(self, url, data=None, headers=None, timeout=120):
        ...         return requests.post(url, json=data, headers=headers, timeout=timeout)
    """

    @abstractmethod
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 120,
    ) -> requests.Response:
        """
        Execute a POST request with a JSON body.

        Args:
            url: The full URL to request.
            data: JSON-serializable data to send in the request body.
            headers: Additional headers to include.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass


class RequestsHttpClient(HttpClient):
    """
    HTTP client backed by `requests`.

    Args:
        session: Optional `requests.Session` to reuse connections. A plain
            `requests.post` is used when omitted.
    """

    DEFAULT_HEADERS = {"Content-Type": "application/json"}

    def __init__(self, session: requests.Session | None = None):
        self._session = session

    @override
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 120,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        merged_headers = {**self.DEFAULT_HEADERS, **(headers or {})}
        sender = self._session.post if self._session is not None else requests.post
        return sender(
            url,
            json=data,
            headers=merged_headers,
            timeout=timeout,
        )
