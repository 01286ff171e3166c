"""Collector side: fetch paginated API data into the raw staging store."""

from .api_client import ApiClient, ApiResponse
from .base import FetchedPage, PageResult, PageStatus, RequestData, collect_until, raw_message_array
from .collector import ApiCollector, CollectorEngine, CollectorResult, RunStatus
from .db_storage import InMemoryRawStore, PostgresRawStore, RawStagingStore, RunToken
from .graphql_collector import GraphqlCollector, page_info_at
from .pagination import CursorPaginator, OffsetPaginator, PageInfo, PageOutcome, Pager, Paginator
from .rate_limiter import RateLimiter
from .retry import RetryPolicy, retry_with_backoff
from .source_config import CollectorSettings, SourceConfig, load_collectors_config
from .state import CollectorState, InMemoryStateStore, PostgresStateStore, StateStore, resolve_cutoff

__all__ = [
    "ApiClient",
    "ApiResponse",
    "RequestData",
    "FetchedPage",
    "PageResult",
    "PageStatus",
    "collect_until",
    "raw_message_array",
    "CollectorEngine",
    "ApiCollector",
    "GraphqlCollector",
    "page_info_at",
    "CollectorResult",
    "RunStatus",
    "RawStagingStore",
    "InMemoryRawStore",
    "PostgresRawStore",
    "RunToken",
    "Pager",
    "PageInfo",
    "PageOutcome",
    "Paginator",
    "OffsetPaginator",
    "CursorPaginator",
    "RateLimiter",
    "RetryPolicy",
    "retry_with_backoff",
    "CollectorSettings",
    "SourceConfig",
    "load_collectors_config",
    "CollectorState",
    "StateStore",
    "InMemoryStateStore",
    "PostgresStateStore",
    "resolve_cutoff",
]
