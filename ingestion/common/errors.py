"""Error taxonomy shared by the collector and extractor engines.

Only ``TransientFetchError`` is ever retried. Every other error is fatal to
the run that raised it and bubbles to the caller with the identity and the
page (or cursor) it happened at.
"""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for all collector/extractor errors."""

    def __init__(
        self,
        message: str,
        *,
        identity: Any = None,
        location: Any = None,
    ):
        self.message = message
        self.identity = identity
        self.location = location
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [self.message]
        if self.identity is not None:
            parts.append(f"identity={self.identity}")
        if self.location is not None:
            parts.append(f"at={self.location}")
        return " | ".join(parts)

    def with_context(self, identity: Any = None, location: Any = None) -> "IngestionError":
        """Fill in identity/location if the raiser did not know them."""
        if self.identity is None and identity is not None:
            self.identity = identity
        if self.location is None and location is not None:
            self.location = location
        self.args = (self._render(),)
        return self


class TransientFetchError(IngestionError):
    """Timeout, connection failure, server error or explicit rate limiting."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        self.retry_after = retry_after
        self.status_code = status_code
        super().__init__(message, **context)


class RetryExhaustedError(TransientFetchError):
    """A transient error persisted past the bounded number of attempts."""

    def __init__(self, message: str, *, attempts: int, **context: Any):
        self.attempts = attempts
        super().__init__(message, **context)


class PermanentFetchError(IngestionError):
    """The source rejected the request; retrying cannot help."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **context: Any):
        self.status_code = status_code
        super().__init__(message, **context)


class ProtocolError(IngestionError):
    """Non-advancing cursor, malformed page info or unparseable response."""


class StorageError(IngestionError):
    """Raw staging or typed-record persistence failed."""


class StateCommitError(StorageError):
    """The incremental cutoff could not be persisted after a successful run."""


class TransformError(IngestionError):
    """The extraction transform failed on a raw record."""


class RunFailed(IngestionError):
    """A collection run ended in failure.

    Attributes:
        cause: The fatal error that stopped the run
        result: Partial ``CollectorResult`` at the time of failure
    """

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, result: Any = None, **context: Any):
        self.cause = cause
        self.result = result
        super().__init__(message, **context)


class RunCanceled(IngestionError):
    """A run stopped because of cancellation or its deadline.

    Canceled is neither success nor failure: nothing is published and no
    state is committed.
    """

    def __init__(self, message: str = "run canceled", *, result: Any = None, **context: Any):
        self.result = result
        super().__init__(message, **context)


__all__ = [
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
]
