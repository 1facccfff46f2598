"""Tests for the HTTP transport."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from randrpc import BadHTTPResponseError, HttpClient, RequestsHttpClient

URL = "https://api.random.org/json-rpc/4/invoke"


def make_response(status_code: int = 200, reason: str = "OK") -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.reason = reason
    return response


# =============================================================================
# BadHTTPResponseError Tests
# =============================================================================


class TestBadHTTPResponseError:
    """Tests for BadHTTPResponseError."""

    def test_message_contains_status_and_reason(self):
        error = BadHTTPResponseError.from_response(make_response(503, "Service Unavailable"))

        assert str(error) == "Error 503: Service Unavailable"

    def test_exposes_response(self):
        response = make_response(404, "Not Found")

        error = BadHTTPResponseError.from_response(response)

        assert error.response is response

    def test_is_requests_http_error(self):
        error = BadHTTPResponseError.from_response(make_response(500, "Internal Server Error"))

        assert isinstance(error, requests.HTTPError)
        assert isinstance(error, requests.RequestException)


# =============================================================================
# RequestsHttpClient Tests
# =============================================================================


class TestRequestsHttpClient:
    """Tests for RequestsHttpClient."""

    def test_is_http_client(self):
        assert isinstance(RequestsHttpClient(), HttpClient)

    @patch("randrpc._http.requests.post")
    def test_posts_json_with_default_headers(self, mock_post: MagicMock):
        mock_post.return_value = make_response()
        envelope = {"jsonrpc": "2.0", "method": "getUsage", "params": {}, "id": "1"}

        response = RequestsHttpClient().post(URL, data=envelope, timeout=30)

        assert response is mock_post.return_value
        mock_post.assert_called_once_with(
            URL,
            json=envelope,
            headers={"Content-Type": "application/json"},
            timeout=30,
        )

    @patch("randrpc._http.requests.post")
    def test_merges_extra_headers(self, mock_post: MagicMock):
        mock_post.return_value = make_response()

        RequestsHttpClient().post(URL, data={}, headers={"X-Trace": "abc"})

        _, kwargs = mock_post.call_args
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Trace": "abc"}
        assert kwargs["timeout"] == 120

    @patch("randrpc._http.requests.post")
    def test_uses_session_when_given(self, mock_post: MagicMock):
        session = MagicMock(spec=requests.Session)
        session.post.return_value = make_response()

        RequestsHttpClient(session=session).post(URL, data={"a": 1})

        session.post.assert_called_once()
        mock_post.assert_not_called()

    @patch("randrpc._http.requests.post")
    def test_transport_errors_propagate(self, mock_post: MagicMock):
        mock_post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(requests.ConnectionError):
            RequestsHttpClient().post(URL, data={})

    def test_empty_url_is_rejected(self):
        with pytest.raises(AssertionError, match="URL cannot be empty"):
            RequestsHttpClient().post("", data={})

    @pytest.mark.parametrize("timeout", [0, -1])
    def test_non_positive_timeout_is_rejected(self, timeout):
        with pytest.raises(AssertionError, match="Timeout must be greater than 0"):
            RequestsHttpClient().post(URL, data={}, timeout=timeout)
