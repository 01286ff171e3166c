"""
Typed-record sink for the extractor.

This module persists the output of an extraction run:
- Replacing all typed records of one collection identity in one transaction
- Keeping the lineage of each record (raw table, params, raw record id)
- Connection management and error handling

Key Features:
- Delete-then-insert in a single transaction: readers see either the old
  set or the new one, never a mix
- Idempotent: running the same extraction twice leaves one copy
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass, is_dataclass
from functools import partial
from typing import Any, Generator, Mapping, Optional, Sequence

import psycopg2
import psycopg2.extras
from dotenv import load_dotenv
from psycopg2.extras import Json, execute_values

from ..collector.db_storage import open_connection
from ..common.errors import StorageError
from ..common.identity import CollectionIdentity

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedRecord:
    """One typed record plus the raw record it came from."""

    record: Any
    raw_record_id: Optional[int] = None
    raw_sequence: Optional[int] = None

    @property
    def record_type(self) -> str:
        return type(self.record).__name__


def record_to_dict(record: Any) -> dict[str, Any]:
    """Serialize a typed record (dataclass or mapping) for storage."""
    if is_dataclass(record) and not isinstance(record, type):
        return asdict(record)
    if isinstance(record, Mapping):
        return dict(record)
    raise StorageError(f"Cannot serialize typed record of type {type(record).__name__}")


class TypedRecordSink(ABC):
    """Persistence of extraction output, partitioned by collection identity."""

    @abstractmethod
    def replace(self, identity: CollectionIdentity, records: Sequence[ExtractedRecord]) -> int:
        """Atomically replace all typed records of ``identity``; return the new count.

        Raises:
            StorageError: If the replacement fails (the prior set stays)
        """

    @abstractmethod
    def count(self, identity: CollectionIdentity) -> int:
        """Number of typed records currently stored for ``identity``."""


class InMemoryTypedRecordSink(TypedRecordSink):
    """Process-local sink used by tests and ``--dry-run``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[CollectionIdentity, list[ExtractedRecord]] = {}

    def replace(self, identity: CollectionIdentity, records: Sequence[ExtractedRecord]) -> int:
        # Serialize up front so a bad record fails before the old set is dropped.
        for item in records:
            record_to_dict(item.record)
        with self._lock:
            self._records[identity] = list(records)
            return len(records)

    def count(self, identity: CollectionIdentity) -> int:
        with self._lock:
            return len(self._records.get(identity, []))

    def records(self, identity: CollectionIdentity) -> list[Any]:
        """The typed records stored for ``identity``, in insertion order."""
        with self._lock:
            return [item.record for item in self._records.get(identity, [])]

    def extracted(self, identity: CollectionIdentity) -> list[ExtractedRecord]:
        with self._lock:
            return list(self._records.get(identity, []))


CREATE_TYPED_TABLES_SQL = """
    CREATE SCHEMA IF NOT EXISTS domain;

    CREATE TABLE IF NOT EXISTS domain.extracted_records (
        id BIGSERIAL PRIMARY KEY,
        raw_table TEXT NOT NULL,
        params TEXT NOT NULL,
        record_type TEXT NOT NULL,
        record JSONB NOT NULL,
        raw_record_id BIGINT,
        extracted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS extracted_records_identity_idx
        ON domain.extracted_records (raw_table, params, record_type);
"""

_json_default = partial(json.dumps, default=str)


class PostgresTypedRecordSink(TypedRecordSink):
    """
    Typed-record sink backed by domain.extracted_records.

    Every operation opens its own connection; the context manager commits on
    success and rolls back on any error.
    """

    def __init__(self, database_url: Optional[str] = None, page_size: int = 500):
        """
        Args:
            database_url: PostgreSQL connection URL (defaults to DATABASE_URL env var)
            page_size: Rows per INSERT statement

        Raises:
            ValueError: If no database URL is available
        """
        self.database_url = database_url or os.getenv("DATABASE_URL")
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in environment or passed as parameter")
        self.page_size = page_size

    @contextmanager
    def _get_connection(self) -> Generator[psycopg2.extensions.connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            Database connection
        """
        conn = None
        try:
            conn = open_connection(self.database_url)
            yield conn
            conn.commit()
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(
                "Database operation failed, rolled back transaction",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise
        finally:
            if conn:
                conn.close()

    def create_tables(self) -> None:
        try:
            with self._get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(CREATE_TYPED_TABLES_SQL)
        except psycopg2.Error as e:
            raise StorageError(f"Failed to create typed-record tables: {e}") from e

    def replace(self, identity: CollectionIdentity, records: Sequence[ExtractedRecord]) -> int:
        """
        Replace the typed records of ``identity`` in domain.extracted_records.

        Example:
            >>> sink = PostgresTypedRecordSink("postgresql://...")
            >>> sink.replace(identity, [ExtractedRecord(JobPosting(...), raw_record_id=12)])
            1
        """
        rows = [
            (
                identity.table,
                identity.params_key,
                item.record_type,
                Json(record_to_dict(item.record), dumps=_json_default),
                item.raw_record_id,
            )
            for item in records
        ]

        try:
            with self._get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM domain.extracted_records WHERE raw_table = %s AND params = %s",
                        (identity.table, identity.params_key),
                    )
                    deleted = cur.rowcount
                    if rows:
                        execute_values(
                            cur,
                            """
                            INSERT INTO domain.extracted_records
                                (raw_table, params, record_type, record, raw_record_id)
                            VALUES %s
                            """,
                            rows,
                            page_size=self.page_size,
                        )
        except psycopg2.Error as e:
            logger.error(
                "Failed to replace typed records",
                extra={"table": identity.table, "params": identity.params_key, "error": str(e), "pgcode": e.pgcode},
            )
            raise StorageError(f"Failed to replace typed records: {e}", identity=identity) from e

        logger.info(
            "Replaced typed records",
            extra={"table": identity.table, "params": identity.params_key, "deleted": deleted, "inserted": len(rows)},
        )
        return len(rows)

    def count(self, identity: CollectionIdentity) -> int:
        try:
            with self._get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT COUNT(*) FROM domain.extracted_records WHERE raw_table = %s AND params = %s",
                        (identity.table, identity.params_key),
                    )
                    return cur.fetchone()[0]
        except psycopg2.Error as e:
            raise StorageError(f"Failed to count typed records: {e}", identity=identity) from e

    def fetch(self, identity: CollectionIdentity, record_type: Optional[str] = None) -> list[dict[str, Any]]:
        """Return stored rows for ``identity`` (optionally one record type), oldest first."""
        query = """
            SELECT id, record_type, record, raw_record_id, extracted_at
            FROM domain.extracted_records
            WHERE raw_table = %s AND params = %s
        """
        params: list[Any] = [identity.table, identity.params_key]
        if record_type:
            query += " AND record_type = %s"
            params.append(record_type)
        query += " ORDER BY id"
        try:
            with self._get_connection() as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(query, params)
                    return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise StorageError(f"Failed to fetch typed records: {e}", identity=identity) from e


__all__ = [
    "ExtractedRecord",
    "record_to_dict",
    "TypedRecordSink",
    "InMemoryTypedRecordSink",
    "PostgresTypedRecordSink",
    "CREATE_TYPED_TABLES_SQL",
]
