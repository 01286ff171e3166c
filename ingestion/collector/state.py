"""
Incremental collection state.

The tracker remembers, per collection identity, when the last fully
successful run *started* and which explicit ``created_date_after`` bound it
ran with. The state is loaded once at run start and committed once at run
end; a failed or canceled run never touches it.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import psycopg2
from dotenv import load_dotenv

from ..common.errors import StateCommitError, StorageError
from ..common.identity import CollectionIdentity
from .db_storage import open_connection

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class CollectorState:
    """Bookkeeping for one identity.

    Attributes:
        identity: The collection identity this state belongs to
        latest_success_start: Start time of the last successful run (None on first run)
        created_date_after: Explicit caller cutoff used by that run
        is_incremental: Whether the run being prepared collects incrementally
    """

    identity: CollectionIdentity
    latest_success_start: Optional[datetime] = None
    created_date_after: Optional[datetime] = None
    is_incremental: bool = False


def resolve_cutoff(
    explicit_cutoff: Optional[datetime],
    state: CollectorState,
) -> Optional[datetime]:
    """
    Compute the effective "created since" bound for a run.

    When the run is incremental and both bounds are known the more recent one
    wins; otherwise whichever is present is used, and ``None`` means a full
    sync. A non-incremental run ignores the stored timestamp so the engine
    never narrows a full re-sync behind the caller's back.

    Example:
        >>> resolve_cutoff(None, CollectorState(identity, latest, is_incremental=True))
        latest
    """
    stored = state.latest_success_start if state.is_incremental else None
    if explicit_cutoff is not None and stored is not None:
        return max(explicit_cutoff, stored)
    return explicit_cutoff if explicit_cutoff is not None else stored


class StateStore(ABC):
    """Persistence of ``CollectorState`` per identity."""

    @abstractmethod
    def _read(self, identity: CollectionIdentity) -> Optional[tuple[datetime, Optional[datetime]]]:
        """Return (latest_success_start, created_date_after) or None."""

    @abstractmethod
    def commit(
        self,
        identity: CollectionIdentity,
        run_started_at: datetime,
        created_date_after: Optional[datetime] = None,
    ) -> None:
        """Advance the stored timestamp after a fully successful run.

        Raises:
            StateCommitError: If the state cannot be persisted
        """

    def load(
        self,
        identity: CollectionIdentity,
        incremental: bool = False,
        created_date_after: Optional[datetime] = None,
    ) -> CollectorState:
        """
        Load the state for the run about to start.

        The run is incremental only when the caller opts in, a previous run
        succeeded, and the explicit cutoff is unchanged since that run. A
        changed cutoff means the user moved their window, so the whole window
        is collected again.

        Args:
            identity: Collection identity
            incremental: Caller opts into incremental collection
            created_date_after: Explicit caller cutoff for this run

        Returns:
            CollectorState (absent row means first run, non-incremental)
        """
        stored = self._read(identity)
        if stored is None:
            return CollectorState(identity=identity)

        latest_success_start, stored_cutoff = stored
        is_incremental = incremental and stored_cutoff == created_date_after
        if incremental and not is_incremental:
            logger.info(
                "Cutoff changed since last successful run, collecting in full",
                extra={
                    "table": identity.table,
                    "previous_cutoff": stored_cutoff.isoformat() if stored_cutoff else None,
                    "cutoff": created_date_after.isoformat() if created_date_after else None,
                },
            )
        return CollectorState(
            identity=identity,
            latest_success_start=latest_success_start,
            created_date_after=stored_cutoff,
            is_incremental=is_incremental,
        )


class InMemoryStateStore(StateStore):
    """Process-local state store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[CollectionIdentity, tuple[datetime, Optional[datetime]]] = {}

    def _read(self, identity):
        with self._lock:
            return self._states.get(identity)

    def commit(self, identity, run_started_at, created_date_after=None):
        with self._lock:
            self._states[identity] = (run_started_at, created_date_after)
        logger.info(
            "Collector state committed",
            extra={"table": identity.table, "latest_success_start": run_started_at.isoformat()},
        )


CREATE_STATE_TABLE_SQL = """
    CREATE SCHEMA IF NOT EXISTS raw;

    CREATE TABLE IF NOT EXISTS raw.collector_state (
        raw_table TEXT NOT NULL,
        params TEXT NOT NULL,
        latest_success_start TIMESTAMPTZ NOT NULL,
        created_date_after TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (raw_table, params)
    );
"""


class PostgresStateStore(StateStore):
    """
    State store backed by the raw.collector_state table.

    Opens a short-lived connection per operation, the same way the
    extractor's database layer does.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.getenv("DATABASE_URL")
        if not self.database_url:
            raise ValueError(
                "DATABASE_URL must be set in environment or passed as parameter"
            )

    def create_tables(self) -> None:
        conn = None
        try:
            conn = open_connection(self.database_url)
            with conn.cursor() as cur:
                cur.execute(CREATE_STATE_TABLE_SQL)
            conn.commit()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to create state table: {e}") from e
        finally:
            if conn:
                conn.close()

    def _read(self, identity):
        conn = None
        try:
            conn = open_connection(self.database_url)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT latest_success_start, created_date_after
                    FROM raw.collector_state
                    WHERE raw_table = %s AND params = %s
                    """,
                    (identity.table, identity.params_key),
                )
                row = cur.fetchone()
            return (row[0], row[1]) if row else None
        except psycopg2.Error as e:
            logger.error(
                "Failed to load collector state",
                extra={"table": identity.table, "error": str(e), "pgcode": e.pgcode},
            )
            raise StorageError(f"Failed to load collector state: {e}", identity=identity) from e
        finally:
            if conn:
                conn.close()

    def commit(self, identity, run_started_at, created_date_after=None):
        conn = None
        try:
            conn = open_connection(self.database_url)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO raw.collector_state
                        (raw_table, params, latest_success_start, created_date_after)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (raw_table, params)
                    DO UPDATE SET
                        latest_success_start = EXCLUDED.latest_success_start,
                        created_date_after = EXCLUDED.created_date_after,
                        updated_at = NOW()
                    """,
                    (identity.table, identity.params_key, run_started_at, created_date_after),
                )
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(
                "Failed to commit collector state",
                extra={"table": identity.table, "error": str(e), "pgcode": e.pgcode},
            )
            raise StateCommitError(f"Failed to commit collector state: {e}", identity=identity) from e
        finally:
            if conn:
                conn.close()

        logger.info(
            "Collector state committed",
            extra={"table": identity.table, "latest_success_start": run_started_at.isoformat()},
        )


__all__ = [
    "CollectorState",
    "resolve_cutoff",
    "StateStore",
    "InMemoryStateStore",
    "PostgresStateStore",
    "CREATE_STATE_TABLE_SQL",
]
