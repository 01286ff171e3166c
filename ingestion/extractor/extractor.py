"""
Extractor engine: raw staged payloads -> typed records.

Streams every published raw record of one identity in insertion order,
applies a caller-supplied fan-out transform to each, and replaces the
identity's typed output with the accumulated result. Extraction is
all-or-nothing per identity: if any record fails to transform, nothing is
written and the previous output stays as it was.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from ..collector.collector import RunStatus
from ..collector.db_storage import RawStagingStore
from ..common.errors import RunCanceled, StorageError, TransformError
from ..common.identity import CollectionIdentity, RawRecord
from ..common.progress import LoggingProgressReporter, ProgressReporter
from .db_operations import ExtractedRecord, TypedRecordSink

logger = logging.getLogger(__name__)

Transform = Callable[[RawRecord], Optional[Iterable[Any]]]


@dataclass
class ExtractorResult:
    """Outcome and counters of one extraction run."""

    identity: CollectionIdentity
    started_at: datetime
    status: Optional[RunStatus] = None
    raw_records_read: int = 0
    records_extracted: int = 0
    records_by_type: Optional[dict[str, int]] = None
    skipped: bool = False
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def as_log_extra(self) -> dict[str, Any]:
        return {
            "table": self.identity.table,
            "params": self.identity.params_key,
            "status": self.status.value if self.status else None,
            "raw_records_read": self.raw_records_read,
            "records_extracted": self.records_extracted,
            "records_by_type": self.records_by_type or {},
            "skipped": self.skipped,
            "error": self.error,
        }


class ApiExtractor:
    """
    Runs extraction transforms over staged raw data.

    Args:
        store: Raw staging store to read from
        sink: Typed-record sink to replace output in
        progress: Progress event sink

    Example:
        extractor = ApiExtractor(store, sink)
        extractor.execute(identity, lambda raw: [JobPosting.from_raw(raw.data)])
    """

    def __init__(
        self,
        store: RawStagingStore,
        sink: TypedRecordSink,
        progress: Optional[ProgressReporter] = None,
    ):
        self.store = store
        self.sink = sink
        self.progress = progress or LoggingProgressReporter()

    def _transform_one(self, transform: Transform, raw: RawRecord) -> list[ExtractedRecord]:
        # The transform may be a generator; consume it here so its errors
        # are attributed to this record.
        try:
            produced = list(transform(raw) or [])
        except TransformError as e:
            raise e.with_context(identity=raw.identity, location=f"raw record {raw.sequence}")
        except Exception as e:
            raise TransformError(
                f"Transform failed: {type(e).__name__}: {e}",
                identity=raw.identity,
                location=f"raw record {raw.sequence}",
            ) from e
        return [
            ExtractedRecord(record=record, raw_record_id=raw.record_id, raw_sequence=raw.sequence)
            for record in produced
        ]

    def execute(
        self,
        identity: CollectionIdentity,
        transform: Transform,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractorResult:
        """
        Extract typed records for ``identity``.

        Args:
            identity: Collection identity whose published raw data is read
            transform: Maps one RawRecord to zero or more typed records
            cancel_event: Stops further transform calls when set

        Returns:
            ExtractorResult with status SUCCEEDED

        Raises:
            TransformError: A record failed to transform (prior output kept)
            StorageError: Reading raw data or replacing typed output failed
            RunCanceled: ``cancel_event`` fired before the output was replaced
        """
        result = ExtractorResult(identity=identity, started_at=datetime.now(timezone.utc))

        logger.info(
            "Starting extraction",
            extra={"table": identity.table, "params": identity.params_key},
        )

        try:
            if not self.store.has_published(identity):
                logger.warning(
                    "No published raw data, leaving typed output untouched",
                    extra={"table": identity.table, "params": identity.params_key},
                )
                result.skipped = True
                return self._finish(result, RunStatus.SUCCEEDED)

            extracted: list[ExtractedRecord] = []
            by_type: dict[str, int] = {}
            for raw in self.store.list_all(identity):
                if cancel_event is not None and cancel_event.is_set():
                    self._finish(result, RunStatus.CANCELED, "canceled by caller")
                    raise RunCanceled("Extraction canceled", result=result, identity=identity)

                result.raw_records_read += 1
                produced = self._transform_one(transform, raw)
                for item in produced:
                    by_type[item.record_type] = by_type.get(item.record_type, 0) + 1
                extracted.extend(produced)

            if cancel_event is not None and cancel_event.is_set():
                self._finish(result, RunStatus.CANCELED, "canceled by caller")
                raise RunCanceled("Extraction canceled", result=result, identity=identity)

            result.records_extracted = self.sink.replace(identity, extracted)
            result.records_by_type = by_type
        except (TransformError, StorageError) as e:
            logger.error(
                "Extraction failed, prior typed output kept",
                extra={
                    "table": identity.table,
                    "params": identity.params_key,
                    "raw_records_read": result.raw_records_read,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            self._finish(result, RunStatus.FAILED, str(e))
            raise

        return self._finish(result, RunStatus.SUCCEEDED)

    def _finish(self, result: ExtractorResult, status: RunStatus, error: Optional[str] = None) -> ExtractorResult:
        result.status = status
        result.error = error
        result.finished_at = datetime.now(timezone.utc)
        self.progress.extraction_finished(result)
        return result


__all__ = ["ApiExtractor", "ExtractorResult", "Transform"]
