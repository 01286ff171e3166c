"""Pagination drivers.

Two drivers share one contract: ``first()`` returns the first ``Pager`` and
``next_page(prior, outcome)`` returns the following one, or ``None`` once the
source reports no more pages.

- OffsetPaginator: page numbers 1, 2, 3, ...; a page shorter than the page
  size is the last one. Pages do not depend on each other, so the engine may
  request several ahead (``prefetch``).
- CursorPaginator: each response carries an end cursor and a has-next flag;
  the next request cannot be built until the previous response arrived.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..common.errors import ProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pager:
    """Position within a paginated result set."""

    page: int = 1
    size: int = 100
    cursor: Optional[str] = None

    @property
    def skip(self) -> int:
        """Number of items before this page (for offset-style APIs)."""
        return (self.page - 1) * self.size

    def describe(self) -> str:
        if self.cursor is not None:
            return f"page {self.page} (cursor {self.cursor!r})"
        return f"page {self.page}"


@dataclass(frozen=True)
class PageInfo:
    """Continuation info reported by cursor-paginated sources."""

    end_cursor: Optional[str]
    has_next_page: bool


@dataclass(frozen=True)
class PageOutcome:
    """What the engine learned from a completed page."""

    item_count: int
    page_info: Optional[PageInfo] = None


class Paginator(ABC):
    """Base class for pagination drivers."""

    # True when the next request can be built before the prior one returns.
    prefetch: bool = False

    def __init__(self, page_size: int):
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.page_size = page_size

    @abstractmethod
    def first(self) -> Pager:
        """Return the first page to request."""

    @abstractmethod
    def next_page(self, prior: Pager, outcome: Optional[PageOutcome]) -> Optional[Pager]:
        """Return the page after ``prior`` or ``None`` when pagination is over.

        ``outcome`` is ``None`` when the engine asks ahead of the prior
        response (prefetching drivers only).
        """

    @abstractmethod
    def spawn(self) -> "Paginator":
        """Return a fresh driver with the same settings for a new chain."""


class OffsetPaginator(Paginator):
    """Page-number pagination; a short page ends the result set.

    Args:
        page_size: Items requested per page
        max_pages: Optional hard limit on the number of pages
    """

    prefetch = True

    def __init__(self, page_size: int, max_pages: Optional[int] = None):
        super().__init__(page_size)
        self.max_pages = max_pages

    def first(self) -> Pager:
        return Pager(page=1, size=self.page_size)

    def is_last(self, prior: Pager, outcome: PageOutcome) -> bool:
        return outcome.item_count < prior.size

    def next_page(self, prior: Pager, outcome: Optional[PageOutcome]) -> Optional[Pager]:
        if outcome is not None and self.is_last(prior, outcome):
            return None
        if self.max_pages is not None and prior.page >= self.max_pages:
            return None
        return Pager(page=prior.page + 1, size=self.page_size)

    def spawn(self) -> "OffsetPaginator":
        return OffsetPaginator(self.page_size, max_pages=self.max_pages)

    def __repr__(self) -> str:
        return f"OffsetPaginator(page_size={self.page_size}, max_pages={self.max_pages})"


class CursorPaginator(Paginator):
    """Forward-only cursor pagination driven by the prior page's info.

    A cursor that repeats (equal to the current one or to any cursor already
    seen in this chain) is a protocol error, never a retry: requesting it
    again would loop forever.
    """

    prefetch = False

    def __init__(self, page_size: int, start_cursor: Optional[str] = None):
        super().__init__(page_size)
        self.start_cursor = start_cursor
        self._seen: set[str] = set()
        if start_cursor is not None:
            self._seen.add(start_cursor)

    def first(self) -> Pager:
        return Pager(page=1, size=self.page_size, cursor=self.start_cursor)

    def next_page(self, prior: Pager, outcome: Optional[PageOutcome]) -> Optional[Pager]:
        if outcome is None:
            raise ValueError("CursorPaginator cannot advance without the prior page's info")

        info = outcome.page_info
        if info is None:
            raise ProtocolError("Response carried no page info", location=prior.describe())
        if not info.has_next_page:
            return None

        cursor = info.end_cursor
        if not cursor:
            raise ProtocolError(
                "Source reported a next page but no end cursor",
                location=prior.describe(),
            )
        if cursor == prior.cursor or cursor in self._seen:
            logger.error(
                "Cursor did not advance",
                extra={"page": prior.page, "cursor": cursor},
            )
            raise ProtocolError(
                f"Cursor did not advance: {cursor!r} was already requested",
                location=prior.describe(),
            )

        self._seen.add(cursor)
        return Pager(page=prior.page + 1, size=self.page_size, cursor=cursor)

    def spawn(self) -> "CursorPaginator":
        return CursorPaginator(self.page_size, start_cursor=self.start_cursor)

    def __repr__(self) -> str:
        return f"CursorPaginator(page_size={self.page_size})"


__all__ = [
    "Pager",
    "PageInfo",
    "PageOutcome",
    "Paginator",
    "OffsetPaginator",
    "CursorPaginator",
]
