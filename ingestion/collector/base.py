"""Collector Base Types.

This module defines what flows between the collector engine and the
per-source hooks a plugin supplies:

- RequestData: what a query builder receives (pager, input, cutoff)
- FetchedPage: a response plus the request parameters that produced it
- PageResult: what a response parser returns: the units to stage and
  whether to continue, finish early, or fail
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

from ..common.errors import ProtocolError
from .api_client import ApiResponse
from .pagination import PageInfo, Pager


@dataclass(frozen=True)
class RequestData:
    """Everything a query builder may need to build one page request.

    Attributes:
        pager: Current page / cursor position
        input: Item from the collector's ``inputs`` iterable (None without inputs)
        cutoff: Effective "created since" bound for this run, if any
        incremental: Whether the run collects incrementally
        timeout: Per-request timeout in seconds
    """

    pager: Pager
    input: Any = None
    cutoff: Optional[datetime] = None
    incremental: bool = False
    timeout: Optional[float] = None


@dataclass
class FetchedPage:
    """A decoded response and the parameters that produced it."""

    response: ApiResponse
    source_input: dict[str, Any] = field(default_factory=dict)


class PageStatus(enum.Enum):
    CONTINUE = "continue"
    EARLY_FINISH = "early_finish"
    FATAL = "fatal"


@dataclass
class PageResult:
    """Parsed outcome of one page.

    ``units`` are staged in the order given. ``item_count`` is the number of
    items the source returned on the page (before any cutoff filtering); it
    decides whether an offset-paginated page was the last one and defaults to
    ``len(units)``.
    """

    units: list[Any] = field(default_factory=list)
    status: PageStatus = PageStatus.CONTINUE
    page_info: Optional[PageInfo] = None
    item_count: Optional[int] = None
    error: Optional[BaseException] = None

    @classmethod
    def proceed(cls, units: Iterable[Any], page_info: Optional[PageInfo] = None, item_count: Optional[int] = None) -> "PageResult":
        return cls(units=list(units), page_info=page_info, item_count=item_count)

    @classmethod
    def finish(cls, units: Iterable[Any], page_info: Optional[PageInfo] = None, item_count: Optional[int] = None) -> "PageResult":
        return cls(
            units=list(units),
            status=PageStatus.EARLY_FINISH,
            page_info=page_info,
            item_count=item_count,
        )

    @classmethod
    def fatal(cls, error: BaseException) -> "PageResult":
        return cls(status=PageStatus.FATAL, error=error)

    @property
    def count(self) -> int:
        return self.item_count if self.item_count is not None else len(self.units)


def as_page_result(value: Any) -> PageResult:
    """Accept the shapes a parser may return: PageResult, a list, or None."""
    if isinstance(value, PageResult):
        return value
    if value is None:
        return PageResult()
    if isinstance(value, (list, tuple)):
        return PageResult.proceed(value)
    raise ProtocolError(f"Response parser returned unsupported type {type(value).__name__}")


def raw_message_array(response: Any, key: Optional[str] = None) -> list[Any]:
    """
    Pull the list of staged units out of a JSON response.

    Args:
        response: ApiResponse or already-decoded JSON
        key: Dotted path to the list (e.g. "data" or "repository.issues.nodes");
             None means the body itself is the list

    Raises:
        ProtocolError: If the path is missing or does not hold a list

    Example:
        raw_message_array({"data": [{"id": 1}]}, "data")  # [{"id": 1}]
    """
    data = response.data if isinstance(response, ApiResponse) else response
    if key:
        for part in key.split("."):
            if not isinstance(data, dict) or part not in data:
                raise ProtocolError(f"Response has no '{key}' member")
            data = data[part]
    if data is None:
        return []
    if not isinstance(data, list):
        raise ProtocolError(f"Expected a JSON array at '{key or '<root>'}', got {type(data).__name__}")
    return data


def collect_until(
    items: Sequence[Any],
    cutoff: Optional[datetime],
    created_at: Callable[[Any], Optional[datetime]],
    page_info: Optional[PageInfo] = None,
) -> PageResult:
    """
    Keep items created at or after ``cutoff`` from a newest-first page.

    The boundary is inclusive: an item created exactly at the cutoff is
    kept. The first strictly older item ends the page with an early-finish
    result and is not staged, nor is anything after it.

    Args:
        items: Page items, newest first
        cutoff: Effective cutoff (None keeps everything)
        created_at: Returns an item's creation time
        page_info: Page info to attach for cursor pagination
    """
    if cutoff is None:
        return PageResult.proceed(items, page_info=page_info, item_count=len(items))

    kept = []
    for item in items:
        created = created_at(item)
        if created is not None and created < cutoff:
            return PageResult.finish(kept, page_info=page_info, item_count=len(items))
        kept.append(item)
    return PageResult.proceed(kept, page_info=page_info, item_count=len(items))


__all__ = [
    "RequestData",
    "FetchedPage",
    "PageStatus",
    "PageResult",
    "as_page_result",
    "raw_message_array",
    "collect_until",
]
