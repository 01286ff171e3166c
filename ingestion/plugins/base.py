"""Base class for collection sources.

A source plugin ties one configured source to the framework: it names the
collection identity, builds the collector that stages raw data for it, and
supplies the extraction transform that turns staged payloads into typed
records.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from ..collector.collector import CollectorEngine
from ..collector.db_storage import RawStagingStore
from ..collector.source_config import SourceConfig
from ..collector.state import StateStore
from ..common.identity import CollectionIdentity, RawRecord
from ..common.progress import ProgressReporter

logger = logging.getLogger(__name__)


class SourcePlugin(ABC):
    """Abstract base class for all collection sources.

    Each source must implement:
    - identity: the collection identity its raw data is staged under
    - build_collector(): a configured ApiCollector or GraphqlCollector
    - transform(): the fan-out from one raw record to typed records
    """

    plugin_name: str = ""

    def __init__(self, config: SourceConfig):
        """Initialize the plugin.

        Args:
            config: The source's entry from collectors.yml
        """
        self.config = config

    @property
    @abstractmethod
    def identity(self) -> CollectionIdentity:
        """Collection identity for this source and its parameters."""

    @abstractmethod
    def build_collector(
        self,
        *,
        store: RawStagingStore,
        state_store: StateStore,
        full_sync: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> CollectorEngine:
        """Build the collector for one run."""

    @abstractmethod
    def transform(self, raw: RawRecord) -> Iterable[Any]:
        """Map one staged raw record to zero or more typed records."""

    def collector_args(
        self,
        *,
        store: RawStagingStore,
        state_store: StateStore,
        full_sync: bool,
        cancel_event: Optional[threading.Event],
        progress: Optional[ProgressReporter],
    ) -> dict[str, Any]:
        """Keyword arguments shared by every collector front-end."""
        return {
            "identity": self.identity,
            "store": store,
            "state_store": state_store,
            "incremental": self.config.incremental and not full_sync,
            "created_date_after": self.config.created_date_after,
            "progress": progress,
            **self.config.settings.engine_args(cancel_event),
        }

    def close(self) -> None:
        """Release clients held by the plugin."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source='{self.config.name}')"


__all__ = ["SourcePlugin"]
