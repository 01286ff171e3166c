"""Mock Source for Testing.

This module simulates an external paginated API in-process. It makes no
HTTP requests but answers the same calls an ``ApiClient`` does (``request``
for offset pages, ``graphql`` for cursor pages), so both collector
front-ends can run against it unchanged.

It is useful for:
- Unit testing the collector and extractor engines without hitting real APIs
- Demonstrating how to write a source plugin
- Testing retries, early finish and cursor protocol errors

Example:
    source = MockSource(generate_records(25))
    response = source.request("GET", "items", params={"page": 1, "per_page": 10})
    assert len(response.data["data"]) == 10
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..collector.api_client import ApiResponse
from ..collector.base import PageResult, RequestData, collect_until, raw_message_array
from ..collector.collector import ApiCollector, CollectorEngine
from ..collector.graphql_collector import GraphqlCollector, page_info_at
from ..common.errors import TransformError
from ..common.identity import CollectionIdentity, RawRecord
from .base import SourcePlugin

logger = logging.getLogger(__name__)

MOCK_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
RAW_MOCK_TABLE = "mock_items"

ITEMS_QUERY = """
query Items($first: Int!, $after: String) {
  items(first: $first, after: $after) {
    nodes { id title created_at }
    pageInfo { endCursor hasNextPage }
  }
}
"""


def timestamp_for(value: float) -> datetime:
    """Map a small number to a creation time (``value`` days after the mock epoch)."""
    return MOCK_EPOCH + timedelta(days=value)


def generate_records(count: int) -> list[dict[str, Any]]:
    """Generate ``count`` fake records, newest first."""
    return [
        {
            "id": count - i,
            "title": f"Mock item {count - i}",
            "created_at": timestamp_for(count - i).isoformat(),
        }
        for i in range(count)
    ]


def item_created_at(item: Mapping[str, Any]) -> Optional[datetime]:
    value = item.get("created_at")
    if value is None:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class MockItem:
    """Typed record extracted from a mock payload."""

    id: int
    title: str
    created_at: datetime


class MockSource:
    """
    Deterministic in-process paginated API.

    Records are served in the order given (callers pass them newest first).

    Args:
        records: Records to serve
        latency: Seconds every request takes
        failures: Page number -> exceptions raised, one per request to that
            page, before it is served normally
        stuck_cursor_page: In cursor mode, this page (>= 2) returns its own
            request cursor as the end cursor, i.e. a cursor that does not advance
    """

    def __init__(
        self,
        records: Sequence[Mapping[str, Any]],
        latency: float = 0.0,
        failures: Optional[Mapping[int, Iterable[BaseException]]] = None,
        stuck_cursor_page: Optional[int] = None,
    ):
        self.records = [dict(record) for record in records]
        self.latency = latency
        self.failures = {page: list(errors) for page, errors in (failures or {}).items()}
        self.stuck_cursor_page = stuck_cursor_page
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.request_times: list[float] = []
        self.pages_requested: list[int] = []

    @classmethod
    def with_created_times(cls, times: Sequence[float], **kwargs: Any) -> "MockSource":
        """Build a source whose record ``i`` has id and creation time ``times[i]``."""
        records = [
            {"id": value, "title": f"Mock item {value}", "created_at": timestamp_for(value).isoformat()}
            for value in times
        ]
        return cls(records, **kwargs)

    @property
    def request_count(self) -> int:
        with self._lock:
            return len(self.request_times)

    def _enter(self, page: int) -> Optional[BaseException]:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.request_times.append(time.monotonic())
            self.pages_requested.append(page)
            pending = self.failures.get(page)
            return pending.pop(0) if pending else None

    def _leave(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def _serve(self, page: int, serve):
        failure = self._enter(page)
        try:
            if self.latency:
                time.sleep(self.latency)
            if failure is not None:
                raise failure
            return serve()
        finally:
            self._leave()

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        """Serve an offset page; ``params`` carries ``page`` and ``per_page``."""
        params = dict(params or {})
        page = int(params.get("page", 1))
        size = int(params.get("per_page", 100))

        def serve() -> ApiResponse:
            start = (page - 1) * size
            items = self.records[start:start + size]
            return ApiResponse(
                status_code=200,
                data={"data": items, "page": page, "total": len(self.records)},
                url=f"mock://{path}?page={page}&per_page={size}",
            )

        return self._serve(page, serve)

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None, timeout: Optional[float] = None) -> ApiResponse:
        return self.request("GET", path, params=params, timeout=timeout)

    def graphql(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        path: str = "graphql",
    ) -> ApiResponse:
        """Serve a cursor page; ``variables`` carries ``first`` and ``after``."""
        variables = dict(variables or {})
        size = int(variables.get("first", 100))
        cursor = variables.get("after")
        start = int(cursor[1:]) if cursor else 0
        page = start // size + 1

        def serve() -> ApiResponse:
            items = self.records[start:start + size]
            end = start + len(items)
            end_cursor = f"c{end}"
            if self.stuck_cursor_page == page and cursor:
                end_cursor = cursor
            return ApiResponse(
                status_code=200,
                data={
                    "items": {
                        "nodes": items,
                        "pageInfo": {"endCursor": end_cursor, "hasNextPage": end < len(self.records)},
                        "totalCount": len(self.records),
                    }
                },
                url=f"mock://{path}?first={size}&after={cursor or ''}",
            )

        return self._serve(page, serve)

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"MockSource(records={len(self.records)}, requests={self.request_count})"


def offset_query(request: RequestData) -> dict[str, Any]:
    return {"page": request.pager.page, "per_page": request.pager.size}


def cursor_query(request: RequestData) -> tuple[str, dict[str, Any]]:
    return ITEMS_QUERY, {"first": request.pager.size, "after": request.pager.cursor}


def parse_offset_page(response: ApiResponse, request: RequestData) -> PageResult:
    return collect_until(raw_message_array(response, "data"), request.cutoff, item_created_at)


def parse_cursor_page(response: ApiResponse, request: RequestData) -> PageResult:
    return collect_until(raw_message_array(response, "items.nodes"), request.cutoff, item_created_at)


def item_key(item: Mapping[str, Any]) -> Any:
    return item["id"]


def transform_item(raw: RawRecord) -> list[MockItem]:
    data = raw.data
    if not isinstance(data, Mapping) or "id" not in data:
        raise TransformError(f"Malformed mock item: {data!r}")
    return [
        MockItem(
            id=int(data["id"]),
            title=str(data.get("title", "")),
            created_at=item_created_at(data),
        )
    ]


class MockPlugin(SourcePlugin):
    """
    The ``mock`` source of collectors.yml.

    Params:
        total_records: Number of generated records (default 50)
        mode: "offset" (REST collector) or "cursor" (GraphQL collector)
        latency: Seconds per simulated request
    """

    plugin_name = "mock"

    def __init__(self, config, source: Optional[MockSource] = None):
        super().__init__(config)
        params = config.params
        self.mode = params.get("mode", "offset")
        if self.mode not in ("offset", "cursor"):
            raise ValueError(f"mock source mode must be 'offset' or 'cursor', got {self.mode!r}")
        self.source = source or MockSource(
            generate_records(int(params.get("total_records", 50))),
            latency=float(params.get("latency", 0.0)),
        )

    @property
    def identity(self) -> CollectionIdentity:
        return CollectionIdentity(RAW_MOCK_TABLE, {"source": self.config.name, "mode": self.mode})

    def build_collector(self, *, store, state_store, full_sync=False, cancel_event=None, progress=None) -> CollectorEngine:
        args = self.collector_args(
            store=store,
            state_store=state_store,
            full_sync=full_sync,
            cancel_event=cancel_event,
            progress=progress,
        )
        if self.mode == "cursor":
            return GraphqlCollector(
                client=self.source,
                build_query=cursor_query,
                get_page_info=page_info_at("items.pageInfo"),
                response_parser=parse_cursor_page,
                record_key=item_key,
                **args,
            )
        return ApiCollector(
            client=self.source,
            url_template="items",
            query=offset_query,
            response_parser=parse_offset_page,
            record_key=item_key,
            **args,
        )

    def transform(self, raw: RawRecord) -> list[MockItem]:
        return transform_item(raw)


__all__ = [
    "MockSource",
    "MockPlugin",
    "MockItem",
    "generate_records",
    "timestamp_for",
    "item_created_at",
    "offset_query",
    "cursor_query",
    "parse_offset_page",
    "parse_cursor_page",
    "item_key",
    "transform_item",
    "ITEMS_QUERY",
    "RAW_MOCK_TABLE",
]
