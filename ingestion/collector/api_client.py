"""
HTTP transport for REST and GraphQL sources.

Wraps a ``requests.Session`` and turns every outcome into either a decoded
``ApiResponse`` or one of the collector's error types, so the engine can
decide between retrying and failing without knowing HTTP:

- timeouts, connection errors, HTTP 429/5xx, exhausted rate-limit quota
  and GraphQL ``RATE_LIMITED`` errors -> TransientFetchError
- any other HTTP 4xx, other GraphQL errors -> PermanentFetchError
- a body that is not JSON, a GraphQL reply without ``data`` -> ProtocolError
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import requests

from ..common.errors import PermanentFetchError, ProtocolError, TransientFetchError

logger = logging.getLogger(__name__)

# Constants
API_TIMEOUT_SECONDS = 30
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class ApiResponse:
    """Decoded response of one request."""

    status_code: int
    data: Any
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Return the Retry-After delay in seconds, if the header holds a number."""
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def _is_rate_limit_rejection(response: requests.Response) -> bool:
    """Some APIs answer 403 instead of 429 once the quota is used up."""
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    try:
        message = str(response.json().get("message") or "")
    except (ValueError, AttributeError):
        return False
    return "rate limit" in message.lower()


class ApiClient:
    """
    Thin JSON API client shared by collector runs.

    Args:
        base_url: Base URL all request paths are joined to
        token: Optional credential sent in ``auth_header``
        auth_scheme: Prefix for the credential ("Bearer", "token", or "" for raw keys)
        auth_header: Header carrying the credential
        headers: Extra headers sent with every request
        timeout: Default per-request timeout in seconds
        session: Optional pre-built ``requests.Session``

    Example:
        client = ApiClient("https://api.tapd.cn", token=os.getenv("TAPD_TOKEN"))
        response = client.request("GET", "timesheets", params={"page": 1})
        response.data["data"]
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        auth_scheme: str = "Bearer",
        auth_header: str = "Authorization",
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = API_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("base_url must be a non-empty string")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if headers:
            self.session.headers.update(dict(headers))
        if token:
            value = f"{auth_scheme} {token}" if auth_scheme else token
            self.session.headers[auth_header] = value
        self._count_lock = threading.Lock()
        self.request_count = 0

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        """
        Perform one request and decode its JSON body.

        Raises:
            TransientFetchError: On timeouts, connection errors and retryable statuses
            PermanentFetchError: On other 4xx responses
            ProtocolError: If the body is not JSON
        """
        url = self._url(path)
        with self._count_lock:
            self.request_count += 1
            call_count = self.request_count

        logger.debug(
            "Making API call",
            extra={"method": method, "url": url, "params": dict(params or {}), "call_count": call_count},
        )

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientFetchError(f"Request to {url} timed out: {e}") from e
        except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientFetchError(f"Connection to {url} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PermanentFetchError(f"Request to {url} could not be sent: {e}") from e

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES or (status == 403 and _is_rate_limit_rejection(response)):
            raise TransientFetchError(
                f"API error {status} from {url}",
                retry_after=parse_retry_after(response.headers),
                status_code=status,
            )
        if status == 401:
            raise PermanentFetchError(f"Unauthorized request to {url} - check credentials", status_code=status)
        if status >= 400:
            raise PermanentFetchError(f"API error {status} from {url}: {response.text[:500]}", status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Response from {url} is not valid JSON: {e}") from e

        return ApiResponse(status_code=status, data=data, url=url, headers=dict(response.headers))

    def get(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        return self.request("GET", path, params=params, timeout=timeout)

    def graphql(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        path: str = "graphql",
    ) -> ApiResponse:
        """
        Run a GraphQL query.

        Returns:
            ApiResponse whose ``data`` is the reply's ``data`` member

        Raises:
            TransientFetchError: If the server reports RATE_LIMITED
            PermanentFetchError: For any other GraphQL error
            ProtocolError: If the reply has no ``data`` member
        """
        response = self.request(
            "POST",
            path,
            json_body={"query": query, "variables": dict(variables or {})},
            timeout=timeout,
        )
        payload = response.data if isinstance(response.data, dict) else {}

        errors = payload.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            message = first.get("message")
            if any(isinstance(err, dict) and err.get("type") == "RATE_LIMITED" for err in errors):
                raise TransientFetchError(
                    f"GraphQL rate limited: {message}",
                    retry_after=parse_retry_after(response.headers),
                )
            raise PermanentFetchError(
                f"GraphQL returned {len(errors)} error(s). First: {message!r} path={first.get('path')!r}"
            )

        if payload.get("data") is None:
            raise ProtocolError(f"GraphQL reply from {response.url} has no data")

        response.data = payload["data"]
        return response

    def close(self) -> None:
        self.session.close()

    def __repr__(self) -> str:
        return f"ApiClient(base_url='{self.base_url}', requests={self.request_count})"


__all__ = ["ApiClient", "ApiResponse", "parse_retry_after", "API_TIMEOUT_SECONDS"]
