"""Shared types for the collector and extractor services."""

from .errors import (
    IngestionError,
    PermanentFetchError,
    ProtocolError,
    RetryExhaustedError,
    RunCanceled,
    RunFailed,
    StateCommitError,
    StorageError,
    TransformError,
    TransientFetchError,
)
from .identity import CollectionIdentity, RawRecord
from .progress import LoggingProgressReporter, ProgressReporter

__all__ = [
    "CollectionIdentity",
    "RawRecord",
    "IngestionError",
    "TransientFetchError",
    "RetryExhaustedError",
    "PermanentFetchError",
    "ProtocolError",
    "StorageError",
    "StateCommitError",
    "TransformError",
    "RunFailed",
    "RunCanceled",
    "ProgressReporter",
    "LoggingProgressReporter",
]
