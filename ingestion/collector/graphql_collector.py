"""
Collector for GraphQL connections.

GraphQL connections paginate with ``pageInfo { endCursor hasNextPage }``, so
the engine always drives a ``CursorPaginator``: the next query cannot be built
before the prior response arrived, and a cursor that does not advance fails
the run with a ProtocolError instead of looping.
"""

import logging
from typing import Any, Callable, Mapping, Optional

from ..common.errors import IngestionError, ProtocolError
from .api_client import ApiClient, ApiResponse
from .base import FetchedPage, PageStatus, RequestData, as_page_result
from .collector import CollectorEngine, ResponseParser
from .pagination import CursorPaginator, PageInfo
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

BuildQuery = Callable[[RequestData], tuple[str, Mapping[str, Any]]]
GetPageInfo = Callable[[Any, RequestData], PageInfo]


def page_info_at(path: str) -> GetPageInfo:
    """
    Build a ``get_page_info`` hook reading ``pageInfo`` under a dotted path.

    Example:
        get_page_info=page_info_at("repository.pullRequests.pageInfo")
    """

    def get_page_info(data: Any, request: RequestData) -> PageInfo:
        node = data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                raise ProtocolError(f"Response has no '{path}' member")
            node = node[part]
        if not isinstance(node, dict):
            raise ProtocolError(f"'{path}' is not an object")
        return PageInfo(
            end_cursor=node.get("endCursor"),
            has_next_page=bool(node.get("hasNextPage")),
        )

    return get_page_info


class GraphqlCollector(CollectorEngine):
    """
    Collector for cursor-paginated GraphQL queries.

    Args:
        client: ApiClient pointed at the GraphQL endpoint's base URL
        build_query: Returns ``(query, variables)`` for a ``RequestData``;
            the cursor to continue from is ``request.pager.cursor``
        get_page_info: Extracts ``PageInfo`` from the reply's ``data``
        response_parser: Maps the reply to a ``PageResult`` or list of units;
            when its result carries no ``page_info`` the one from
            ``get_page_info`` is attached
        page_size: Nodes requested per query
        path: Endpoint path relative to the client's base URL
        rate_limit: Requests per ``rate_interval``
        rate_interval: Rate-limit interval in seconds
        **engine_args: Remaining ``CollectorEngine`` arguments
    """

    def __init__(
        self,
        *,
        client: ApiClient,
        build_query: BuildQuery,
        get_page_info: GetPageInfo,
        response_parser: ResponseParser,
        page_size: int = 100,
        path: str = "graphql",
        start_cursor: Optional[str] = None,
        rate_limit: Optional[int] = None,
        rate_interval: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        **engine_args: Any,
    ):
        self.client = client
        self.build_query = build_query
        self.get_page_info = get_page_info
        self.graphql_parser = response_parser
        self.path = path
        super().__init__(
            fetch_page=self._fetch,
            response_parser=self._parse,
            paginator=CursorPaginator(page_size, start_cursor=start_cursor),
            rate_limiter=rate_limiter or RateLimiter(rate=rate_limit, interval=rate_interval),
            **engine_args,
        )

    def _fetch(self, request: RequestData) -> FetchedPage:
        query, variables = self.build_query(request)
        response = self.client.graphql(query, variables, timeout=request.timeout, path=self.path)
        return FetchedPage(
            response=response,
            source_input={"variables": dict(variables), "input": request.input},
        )

    def _parse(self, response: ApiResponse, request: RequestData):
        parsed = as_page_result(self.graphql_parser(response, request))
        if parsed.page_info is None and parsed.status is not PageStatus.FATAL:
            try:
                parsed.page_info = self.get_page_info(response.data, request)
            except IngestionError:
                raise
            except Exception as e:
                raise ProtocolError(f"Could not read page info: {type(e).__name__}: {e}") from e
        return parsed


__all__ = ["GraphqlCollector", "page_info_at"]
