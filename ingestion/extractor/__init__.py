"""Extractor side: turn staged raw payloads into typed records."""

from .db_operations import (
    ExtractedRecord,
    InMemoryTypedRecordSink,
    PostgresTypedRecordSink,
    TypedRecordSink,
)
from .extractor import ApiExtractor, ExtractorResult

__all__ = [
    "ApiExtractor",
    "ExtractorResult",
    "ExtractedRecord",
    "TypedRecordSink",
    "InMemoryTypedRecordSink",
    "PostgresTypedRecordSink",
]
