"""
Ingestion - Main Entry Point

This is the command-line interface for the collector and extractor engines.
It runs the sources configured in config/collectors.yml one after another.

Usage:
    python -m ingestion.main {collect,extract,run} [OPTIONS]

Commands:
    collect              Fetch every enabled source into the raw staging store
    extract              Turn published raw data into typed records
    run                  Collect, then extract each source whose collection succeeded

Options:
    --source NAME        Only run this source (repeatable)
    --config PATH        Path to collectors.yml
    --full-sync          Ignore incremental state for this invocation
    --dry-run            Use in-memory stores instead of PostgreSQL
    --verbose            Enable debug logging
    --help               Show this message and exit

Examples:
    # Collect and extract everything that is enabled:
    python -m ingestion.main run

    # Re-collect GitHub pull requests from scratch:
    python -m ingestion.main collect --source github_prs --full-sync

    # Try the mock source without a database:
    python -m ingestion.main run --source mock --dry-run --verbose

Exit Codes:
    0: Success
    1: At least one source failed
    2: Fatal error (configuration, database connection, etc.)
    130: Interrupted
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from dotenv import load_dotenv

from .collector.db_storage import InMemoryRawStore, PostgresRawStore, RawStagingStore
from .collector.source_config import SourceConfig, load_collectors_config
from .collector.state import InMemoryStateStore, PostgresStateStore, StateStore
from .common.errors import RunCanceled, RunFailed, StorageError, TransformError
from .extractor.db_operations import InMemoryTypedRecordSink, PostgresTypedRecordSink, TypedRecordSink
from .extractor.extractor import ApiExtractor
from .plugins import SourcePlugin, get_plugin

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

COMMANDS = ("collect", "extract", "run")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Collect API data into raw staging and extract typed records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("command", choices=COMMANDS, help="What to run")
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        default=None,
        help="Only run this source (repeatable)",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to collectors.yml")
    parser.add_argument(
        "--full-sync",
        action="store_true",
        dest="full_sync",
        help="Ignore incremental state for this invocation",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Use in-memory stores instead of PostgreSQL",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


@dataclass
class Stores:
    """The three stores a run touches."""

    raw: RawStagingStore
    state: StateStore
    sink: TypedRecordSink
    close: Callable[[], None] = lambda: None


def build_stores(dry_run: bool) -> Stores:
    """
    Create the stores for this invocation.

    Raises:
        StorageError: If the database cannot be reached or initialized
        ValueError: If DATABASE_URL is not set
    """
    if dry_run:
        logger.info("DRY RUN: using in-memory stores")
        return Stores(raw=InMemoryRawStore(), state=InMemoryStateStore(), sink=InMemoryTypedRecordSink())

    raw = PostgresRawStore()
    raw.connect()
    try:
        raw.create_tables()
        state = PostgresStateStore()
        state.create_tables()
        sink = PostgresTypedRecordSink()
        sink.create_tables()
    except Exception:
        raw.disconnect()
        raise
    return Stores(raw=raw, state=state, sink=sink, close=raw.disconnect)


def select_sources(configs: dict[str, SourceConfig], names: Optional[list[str]]) -> list[SourceConfig]:
    """
    Pick the sources to run.

    Sources named with --source run even when disabled in the config.

    Raises:
        ValueError: If a named source is not configured
    """
    if not names:
        return [cfg for cfg in configs.values() if cfg.enabled]
    unknown = [name for name in names if name not in configs]
    if unknown:
        raise ValueError(f"Unknown source(s): {', '.join(unknown)}")
    return [configs[name] for name in names]


@dataclass
class RunSummary:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)

    def exit_code(self) -> int:
        if self.canceled:
            return 130
        if self.failed:
            return 1
        return 0


def collect_source(
    plugin: SourcePlugin,
    stores: Stores,
    full_sync: bool,
    cancel_event: threading.Event,
) -> bool:
    """Run one source's collector. Returns True on success."""
    collector = plugin.build_collector(
        store=stores.raw,
        state_store=stores.state,
        full_sync=full_sync,
        cancel_event=cancel_event,
    )
    try:
        result = collector.execute()
    except RunFailed as e:
        logger.error(
            "Collection failed",
            extra={"source": plugin.config.name, "error": str(e.cause or e), "error_type": type(e.cause).__name__},
        )
        return False

    logger.info(
        "Collection succeeded",
        extra={"source": plugin.config.name, "pages": result.pages_fetched, "records": result.records_staged},
    )
    return True


def extract_source(plugin: SourcePlugin, stores: Stores, cancel_event: threading.Event) -> bool:
    """Run one source's extractor. Returns True on success."""
    extractor = ApiExtractor(stores.raw, stores.sink)
    try:
        result = extractor.execute(plugin.identity, plugin.transform, cancel_event=cancel_event)
    except (TransformError, StorageError) as e:
        logger.error(
            "Extraction failed",
            extra={"source": plugin.config.name, "error": str(e), "error_type": type(e).__name__},
        )
        return False

    logger.info(
        "Extraction succeeded",
        extra={
            "source": plugin.config.name,
            "raw_records": result.raw_records_read,
            "records": result.records_extracted,
            "skipped": result.skipped,
        },
    )
    return True


def run_command(
    command: str,
    plugins: list[SourcePlugin],
    stores: Stores,
    full_sync: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> RunSummary:
    """
    Run ``command`` for every plugin, one source at a time.

    A source whose collection fails or is canceled is not extracted.
    Once the cancel event fires the remaining sources are skipped.
    """
    cancel_event = cancel_event or threading.Event()
    summary = RunSummary()

    for plugin in plugins:
        name = plugin.config.name
        if cancel_event.is_set():
            summary.canceled.append(name)
            continue

        try:
            ok = True
            if command in ("collect", "run"):
                ok = collect_source(plugin, stores, full_sync, cancel_event)
            if ok and command in ("extract", "run"):
                ok = extract_source(plugin, stores, cancel_event)
        except RunCanceled as e:
            logger.warning("Source canceled", extra={"source": name, "reason": str(e)})
            summary.canceled.append(name)
            continue

        (summary.succeeded if ok else summary.failed).append(name)

    return summary


def install_interrupt_handler(cancel_event: threading.Event) -> None:
    """First Ctrl-C cancels the running source; a second one aborts immediately."""

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, canceling after in-flight requests finish")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the ingestion CLI.

    Returns:
        Exit code (0 = success, 1 = source failure, 2 = fatal error, 130 = interrupted)
    """
    args = parse_args(argv)

    # Set logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")

    start_time = datetime.now(timezone.utc)

    try:
        configs = load_collectors_config(args.config)
        plugins = [get_plugin(cfg) for cfg in select_sources(configs, args.sources)]
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if not plugins:
        logger.warning("No enabled sources to run")
        return 0

    cancel_event = threading.Event()
    install_interrupt_handler(cancel_event)

    try:
        stores = build_stores(args.dry_run)
    except (StorageError, ValueError) as e:
        logger.error(f"Database error: {e}")
        return 2

    try:
        summary = run_command(args.command, plugins, stores, full_sync=args.full_sync, cancel_event=cancel_event)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(
            "Unexpected fatal error",
            extra={"error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return 2
    finally:
        stores.close()
        for plugin in plugins:
            plugin.close()

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        "Ingestion completed",
        extra={
            "command": args.command,
            "duration_seconds": duration,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "canceled": summary.canceled,
        },
    )
    return summary.exit_code()


if __name__ == "__main__":
    sys.exit(main())
