"""Progress reporting for collector and extractor runs."""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    """
    Sink for per-page and per-run status events.

    Implementations must be cheap; the collector calls ``page_collected``
    from its scheduling loop after every staged page.
    """

    def page_collected(self, identity: Any, request: Any, staged: int) -> None:
        """A page was fetched, parsed and staged."""

    def collection_finished(self, result: Any) -> None:
        """A collection run ended (succeeded, failed or canceled)."""

    def extraction_finished(self, result: Any) -> None:
        """An extraction run ended."""


class LoggingProgressReporter:
    """Default reporter: writes every event to the log with structured extras."""

    def page_collected(self, identity: Any, request: Any, staged: int) -> None:
        logger.debug(
            "Page collected",
            extra={
                "table": getattr(identity, "table", None),
                "params": getattr(identity, "params_key", None),
                "page": getattr(getattr(request, "pager", None), "page", None),
                "cursor": getattr(getattr(request, "pager", None), "cursor", None),
                "records_staged": staged,
            },
        )

    def collection_finished(self, result: Any) -> None:
        logger.info(
            "Collection run finished: %s",
            result.status.value,
            extra=result.as_log_extra(),
        )

    def extraction_finished(self, result: Any) -> None:
        logger.info(
            "Extraction run finished: %s",
            result.status.value,
            extra=result.as_log_extra(),
        )


__all__ = ["ProgressReporter", "LoggingProgressReporter"]
