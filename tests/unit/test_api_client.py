"""
Unit tests for the HTTP transport.

These tests use a mocked requests.Session so no real API calls are made.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from ingestion.collector.api_client import ApiClient, parse_retry_after
from ingestion.common.errors import PermanentFetchError, ProtocolError, TransientFetchError


def make_response(status_code=200, json_data=None, headers=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def session():
    mock_session = MagicMock()
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def client(session):
    return ApiClient("https://api.example.com/", token="secret", session=session)


class TestApiClient:

    def test_initialization_sets_headers(self, session):
        ApiClient("https://api.example.com", token="abc", session=session)

        assert session.headers["Authorization"] == "Bearer abc"
        assert session.headers["Accept"] == "application/json"

    def test_raw_api_key_header(self, session):
        ApiClient("https://api.example.com", token="key", auth_scheme="", auth_header="X-API-Key", session=session)

        assert session.headers["X-API-Key"] == "key"

    @patch("ingestion.collector.api_client.requests.Session")
    def test_builds_own_session(self, mock_session_class):
        mock_session = MagicMock()
        mock_session.headers = {}
        mock_session_class.return_value = mock_session

        client = ApiClient("https://api.example.com", token="abc")
        client.close()

        assert client.session is mock_session
        assert mock_session.headers["Authorization"] == "Bearer abc"
        mock_session.close.assert_called_once()

    def test_requires_base_url(self):
        with pytest.raises(ValueError, match="base_url"):
            ApiClient("")

    def test_successful_request(self, client, session):
        session.request.return_value = make_response(json_data={"data": [1]})

        response = client.get("/items", params={"page": 2}, timeout=5)

        assert response.data == {"data": [1]}
        assert response.url == "https://api.example.com/items"
        session.request.assert_called_once_with(
            "GET",
            "https://api.example.com/items",
            params={"page": 2},
            json=None,
            timeout=5,
        )
        assert client.request_count == 1

    def test_request_count_is_exact_across_threads(self, client, session):
        session.request.return_value = make_response(json_data=[])

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(lambda _: client.get("items"), range(400)))

        assert client.request_count == 400

    def test_absolute_urls_are_kept(self, client, session):
        session.request.return_value = make_response(json_data=[])

        assert client.get("https://other.example.com/x").url == "https://other.example.com/x"

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses_are_transient(self, client, session, status):
        session.request.return_value = make_response(status, headers={"Retry-After": "3"})

        with pytest.raises(TransientFetchError) as exc_info:
            client.get("items")

        assert exc_info.value.status_code == status
        assert exc_info.value.retry_after == 3.0

    def test_quota_exhausted_403_is_transient(self, client, session):
        session.request.return_value = make_response(403, headers={"X-RateLimit-Remaining": "0"})

        with pytest.raises(TransientFetchError):
            client.get("items")

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_are_permanent(self, client, session, status):
        session.request.return_value = make_response(status, json_data={"message": "nope"})

        with pytest.raises(PermanentFetchError) as exc_info:
            client.get("items")

        assert exc_info.value.status_code == status

    def test_timeout_is_transient(self, client, session):
        session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TransientFetchError, match="timed out"):
            client.get("items")

    def test_connection_error_is_transient(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TransientFetchError, match="failed"):
            client.get("items")

    def test_invalid_json_is_protocol_error(self, client, session):
        session.request.return_value = make_response(json_data=ValueError("no json"))

        with pytest.raises(ProtocolError, match="not valid JSON"):
            client.get("items")


class TestGraphql:

    def test_returns_data_member(self, client, session):
        session.request.return_value = make_response(json_data={"data": {"viewer": {"login": "me"}}})

        response = client.graphql("query { viewer { login } }", {"first": 1})

        assert response.data == {"viewer": {"login": "me"}}
        _, kwargs = session.request.call_args
        assert kwargs["json"] == {"query": "query { viewer { login } }", "variables": {"first": 1}}

    def test_rate_limited_is_transient(self, client, session):
        session.request.return_value = make_response(
            json_data={"errors": [{"type": "RATE_LIMITED", "message": "slow down"}]}
        )

        with pytest.raises(TransientFetchError, match="rate limited"):
            client.graphql("query {}")

    def test_other_errors_are_permanent(self, client, session):
        session.request.return_value = make_response(
            json_data={"errors": [{"message": "Field 'x' doesn't exist", "path": ["x"]}]}
        )

        with pytest.raises(PermanentFetchError, match="doesn't exist"):
            client.graphql("query {}")

    def test_missing_data_is_protocol_error(self, client, session):
        session.request.return_value = make_response(json_data={"data": None})

        with pytest.raises(ProtocolError):
            client.graphql("query {}")


class TestParseRetryAfter:

    @pytest.mark.parametrize(
        "headers,expected",
        [
            ({"Retry-After": "5"}, 5.0),
            ({"retry-after": "0.5"}, 0.5),
            ({"Retry-After": "-1"}, 0.0),
            ({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, None),
            ({}, None),
        ],
    )
    def test_values(self, headers, expected):
        assert parse_retry_after(headers) == expected


pytestmark = pytest.mark.unit
