"""
Rate-limited, paginated collector engine.

One engine implementation drives every collection, parameterized over a
pagination driver and two hooks: a page fetcher and a response parser.
``ApiCollector`` (this module) and ``GraphqlCollector`` only differ in how
they build those hooks.

Run lifecycle:
1. Load the incremental state and resolve the effective cutoff.
2. Open a new raw generation for the identity.
3. Schedule page requests on a bounded thread pool; every request (and
   every retry) first takes a token from the shared rate limiter.
4. Stage each parsed page from the scheduling thread as it completes.
5. Stop scheduling on early finish, the last page, a fatal error,
   cancellation or the run deadline; in-flight requests are always drained.
6. On success publish the generation, then commit the state with the run's
   *start* time. On failure or cancellation abort the generation and leave
   the state untouched.
"""

import enum
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, NoReturn, Optional

from ..common.errors import (
    IngestionError,
    ProtocolError,
    RunCanceled,
    RunFailed,
    StorageError,
    TransientFetchError,
)
from ..common.identity import CollectionIdentity
from ..common.progress import LoggingProgressReporter, ProgressReporter
from .api_client import ApiClient, ApiResponse
from .base import FetchedPage, PageResult, PageStatus, RequestData, as_page_result
from .db_storage import RawStagingStore, RunToken
from .pagination import OffsetPaginator, PageOutcome, Pager, Paginator
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .state import StateStore, resolve_cutoff

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
POLL_INTERVAL_SECONDS = 0.1

FetchPage = Callable[[RequestData], FetchedPage]
ResponseParser = Callable[[ApiResponse, RequestData], Any]


class RunStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class CollectorResult:
    """Outcome and counters of one collection run."""

    identity: CollectionIdentity
    run_started_at: datetime
    status: Optional[RunStatus] = None
    incremental: bool = False
    cutoff: Optional[datetime] = None
    pages_fetched: int = 0
    records_staged: int = 0
    early_finished: bool = False
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.run_started_at).total_seconds()

    def as_log_extra(self) -> dict[str, Any]:
        return {
            "table": self.identity.table,
            "params": self.identity.params_key,
            "status": self.status.value if self.status else None,
            "incremental": self.incremental,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "pages_fetched": self.pages_fetched,
            "records_staged": self.records_staged,
            "early_finished": self.early_finished,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }


@dataclass
class _Chain:
    """One pagination sequence (one per input, or a single one)."""

    index: int
    input: Any
    paginator: Paginator
    next_pager: Optional[Pager]
    in_flight: int = 0
    finished: bool = False

    def schedulable(self) -> bool:
        if self.finished or self.next_pager is None:
            return False
        return self.paginator.prefetch or self.in_flight == 0


@dataclass
class _CompletedPage:
    fetched: FetchedPage
    parsed: PageResult


@dataclass
class _RunState:
    result: CollectorResult
    token: RunToken
    cutoff: Optional[datetime]
    incremental: bool
    failure: Optional[BaseException] = None
    cancel_reason: Optional[str] = None
    deadline: Optional[float] = None
    chains: list[_Chain] = field(default_factory=list)


class CollectorEngine:
    """
    Drives a pagination driver through a bounded worker pool.

    Args:
        identity: Collection identity the run stages into
        store: Raw staging store
        state_store: Incremental state tracker
        fetch_page: Performs one request for a ``RequestData``
        response_parser: Maps a response to a ``PageResult`` (or a list of units)
        paginator: Pagination driver; each chain gets its own ``spawn()``
        concurrency: Worker pool size
        rate_limiter: Shared limiter (unlimited when omitted)
        retry_policy: Backoff for transient errors
        inputs: Optional iterable; each item gets its own pagination chain
        incremental: Caller opts into incremental collection
        created_date_after: Explicit caller cutoff
        request_timeout: Per-request timeout in seconds
        run_timeout: Overall run deadline in seconds
        cancel_event: Run-scoped cancellation signal from the host
        progress: Progress event sink
        record_key: Maps a staged unit to its upstream id; an incremental run
            replaces published rows with the same id (content hash when omitted)
    """

    def __init__(
        self,
        *,
        identity: CollectionIdentity,
        store: RawStagingStore,
        state_store: StateStore,
        fetch_page: FetchPage,
        response_parser: ResponseParser,
        paginator: Paginator,
        concurrency: int = DEFAULT_CONCURRENCY,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        inputs: Optional[Iterable[Any]] = None,
        incremental: bool = False,
        created_date_after: Optional[datetime] = None,
        request_timeout: Optional[float] = None,
        run_timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressReporter] = None,
        record_key: Optional[Callable[[Any], Any]] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.identity = identity
        self.store = store
        self.state_store = state_store
        self.fetch_page = fetch_page
        self.response_parser = response_parser
        self.paginator = paginator
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter or RateLimiter(rate=None)
        self.retry_policy = retry_policy or RetryPolicy()
        self.inputs = inputs
        self.incremental = incremental
        self.created_date_after = created_date_after
        self.request_timeout = request_timeout
        self.run_timeout = run_timeout
        self.cancel_event = cancel_event
        self.progress = progress or LoggingProgressReporter()
        self.record_key = record_key
        # Set when in-flight work should stop waiting (cancel, deadline, failure).
        self._halt = threading.Event()

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _interruptible_sleep(self, delay: float) -> None:
        if self._halt.wait(delay):
            raise RunCanceled("Backoff interrupted")

    def _attempt(self, request: RequestData) -> FetchedPage:
        if not self.rate_limiter.acquire(self._halt):
            raise RunCanceled("Rate limiter wait interrupted")
        try:
            return self.fetch_page(request)
        except (ConnectionError, TimeoutError) as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}") from e

    def _fetch_and_parse(self, request: RequestData) -> _CompletedPage:
        """Runs on a worker thread: fetch with retry, then parse."""
        if self._halt.is_set():
            raise RunCanceled("Run halted before request was sent")

        location = request.pager.describe()
        fetched = self.retry_policy.call(
            lambda: self._attempt(request),
            sleep=self._interruptible_sleep,
            description=f"Fetch {location} of {self.identity.table}",
        )

        try:
            parsed = as_page_result(self.response_parser(fetched.response, request))
        except IngestionError:
            raise
        except Exception as e:
            raise ProtocolError(f"Failed to parse response: {type(e).__name__}: {e}") from e

        if parsed.status is PageStatus.FATAL:
            error = parsed.error
            if isinstance(error, IngestionError):
                raise error
            raise ProtocolError(f"Response parser reported a fatal error: {error}") from error

        return _CompletedPage(fetched=fetched, parsed=parsed)

    # ------------------------------------------------------------------
    # Scheduling side
    # ------------------------------------------------------------------

    def _check_stop_signals(self, run: _RunState) -> None:
        if run.cancel_reason is not None or run.failure is not None:
            return
        if self.cancel_event is not None and self.cancel_event.is_set():
            run.cancel_reason = "canceled by caller"
        elif run.deadline is not None and time.monotonic() >= run.deadline:
            run.cancel_reason = f"run deadline of {self.run_timeout}s exceeded"
        if run.cancel_reason is not None:
            self._halt.set()
            logger.warning(
                "Collector run stopping: %s",
                run.cancel_reason,
                extra={"table": self.identity.table, "params": self.identity.params_key},
            )

    def _fail(self, run: _RunState, error: BaseException, request: RequestData) -> None:
        if isinstance(error, IngestionError):
            error.with_context(identity=self.identity, location=request.pager.describe())
        if run.failure is None and run.cancel_reason is None:
            run.failure = error
            self._halt.set()
            logger.error(
                "Page failed, stopping collector run",
                extra={
                    "table": self.identity.table,
                    "params": self.identity.params_key,
                    "page": request.pager.page,
                    "cursor": request.pager.cursor,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )

    def _next_chain(self, run: _RunState, inputs) -> Optional[_Chain]:
        for chain in run.chains:
            if chain.schedulable():
                return chain
        try:
            item = next(inputs)
        except StopIteration:
            return None
        paginator = self.paginator.spawn()
        chain = _Chain(index=len(run.chains), input=item, paginator=paginator, next_pager=paginator.first())
        run.chains.append(chain)
        return chain

    def _submit(self, executor: ThreadPoolExecutor, run: _RunState, chain: _Chain, pending: dict) -> None:
        pager = chain.next_pager
        request = RequestData(
            pager=pager,
            input=chain.input,
            cutoff=run.cutoff,
            incremental=run.incremental,
            timeout=self.request_timeout,
        )
        future = executor.submit(self._fetch_and_parse, request)
        pending[future] = (chain, request)
        chain.in_flight += 1
        if chain.paginator.prefetch:
            chain.next_pager = chain.paginator.next_page(pager, None)
            if chain.next_pager is None:
                chain.finished = True
        else:
            chain.next_pager = None

    def _handle_completed(self, run: _RunState, chain: _Chain, request: RequestData, future: Future) -> None:
        try:
            completed = future.result()
        except RunCanceled:
            # Only raised once the run is halted; the reason is already recorded.
            return
        except Exception as e:
            self._fail(run, e, request)
            return

        self._check_stop_signals(run)
        if run.cancel_reason is not None or run.failure is not None:
            return

        parsed = completed.parsed
        try:
            records = self.store.put_many(
                run.token,
                parsed.units,
                source_input=completed.fetched.source_input,
                url=completed.fetched.response.url,
                key=self.record_key,
            )
        except (StorageError, ValueError) as e:
            self._fail(run, e, request)
            return

        run.result.pages_fetched += 1
        run.result.records_staged += len(records)
        self.progress.page_collected(self.identity, request, len(records))

        if parsed.status is PageStatus.EARLY_FINISH:
            chain.finished = True
            chain.next_pager = None
            run.result.early_finished = True
            logger.info(
                "Early finish: page crossed the cutoff",
                extra={
                    "table": self.identity.table,
                    "page": request.pager.page,
                    "cutoff": run.cutoff.isoformat() if run.cutoff else None,
                },
            )
            return

        outcome = PageOutcome(item_count=parsed.count, page_info=parsed.page_info)
        try:
            following = chain.paginator.next_page(request.pager, outcome)
        except ProtocolError as e:
            self._fail(run, e, request)
            return

        if following is None:
            chain.finished = True
            chain.next_pager = None
        elif not chain.paginator.prefetch:
            chain.next_pager = following

    def _schedule(self, run: _RunState) -> None:
        run.deadline = time.monotonic() + self.run_timeout if self.run_timeout else None
        inputs = iter(self.inputs) if self.inputs is not None else iter([None])
        pending: dict[Future, tuple[_Chain, RequestData]] = {}

        with ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"collector-{self.identity.table}",
        ) as executor:
            try:
                while True:
                    self._check_stop_signals(run)
                    stopping = run.cancel_reason is not None or run.failure is not None

                    while not stopping and len(pending) < self.concurrency:
                        chain = self._next_chain(run, inputs)
                        if chain is None:
                            break
                        self._submit(executor, run, chain, pending)

                    if not pending:
                        break

                    timeout = POLL_INTERVAL_SECONDS
                    if run.deadline is not None:
                        timeout = max(min(timeout, run.deadline - time.monotonic()), 0.0)
                    done, _ = wait(list(pending), timeout=timeout, return_when=FIRST_COMPLETED)
                    for future in done:
                        chain, request = pending.pop(future)
                        chain.in_flight -= 1
                        self._handle_completed(run, chain, request, future)

                    run.chains = [c for c in run.chains if not (c.finished and c.in_flight == 0)]
            finally:
                # Let workers blocked on the limiter or a backoff return promptly
                # if we are leaving because of an unexpected error.
                if pending:
                    self._halt.set()

    def execute(self) -> CollectorResult:
        """
        Run the collection to completion.

        Returns:
            CollectorResult with status SUCCEEDED

        Raises:
            RunFailed: A page failed permanently, retries ran out, the cursor
                did not advance, staging failed or the state could not be
                committed (``.cause`` holds the error, ``.result`` the counters)
            RunCanceled: The cancel event fired or the run deadline passed
        """
        identity = self.identity
        run_started_at = datetime.now(timezone.utc)
        self._halt = threading.Event()

        try:
            state = self.state_store.load(
                identity,
                incremental=self.incremental,
                created_date_after=self.created_date_after,
            )
        except StorageError as e:
            result = CollectorResult(identity=identity, run_started_at=run_started_at, status=RunStatus.FAILED, error=str(e))
            raise RunFailed(f"Could not load collector state: {e}", cause=e, result=result, identity=identity) from e

        cutoff = resolve_cutoff(self.created_date_after, state)
        result = CollectorResult(
            identity=identity,
            run_started_at=run_started_at,
            incremental=state.is_incremental,
            cutoff=cutoff,
        )

        logger.info(
            "Starting collector run",
            extra={
                "table": identity.table,
                "params": identity.params_key,
                "incremental": state.is_incremental,
                "cutoff": cutoff.isoformat() if cutoff else None,
                "concurrency": self.concurrency,
                "paginator": repr(self.paginator),
                "rate_limiter": repr(self.rate_limiter),
            },
        )

        try:
            token = self.store.begin_run(identity, incremental=state.is_incremental)
        except StorageError as e:
            return self._finish_failed(result, e, None)

        run = _RunState(result=result, token=token, cutoff=cutoff, incremental=state.is_incremental)
        try:
            self._schedule(run)
        except BaseException:
            self.store.abort(token)
            raise

        if run.cancel_reason is not None:
            self.store.abort(token)
            result.status = RunStatus.CANCELED
            result.error = run.cancel_reason
            result.finished_at = datetime.now(timezone.utc)
            self.progress.collection_finished(result)
            raise RunCanceled(f"Collection canceled: {run.cancel_reason}", result=result, identity=identity)

        if run.failure is not None:
            return self._finish_failed(result, run.failure, token)

        try:
            self.store.publish(token)
        except StorageError as e:
            return self._finish_failed(result, e, token)

        try:
            self.state_store.commit(identity, run_started_at, self.created_date_after)
        except StorageError as e:
            # Raw data is already published; only the cutoff failed to advance.
            return self._finish_failed(result, e, None)

        result.status = RunStatus.SUCCEEDED
        result.finished_at = datetime.now(timezone.utc)
        self.progress.collection_finished(result)
        return result

    def _finish_failed(self, result: CollectorResult, error: BaseException, token: Optional[RunToken]) -> NoReturn:
        if token is not None:
            try:
                self.store.abort(token)
            except StorageError as abort_error:
                logger.error(
                    "Failed to abort raw generation",
                    extra={"table": self.identity.table, "error": str(abort_error)},
                )
        result.status = RunStatus.FAILED
        result.error = str(error)
        result.finished_at = datetime.now(timezone.utc)
        self.progress.collection_finished(result)
        raise RunFailed(
            f"Collection failed: {error}",
            cause=error,
            result=result,
            identity=self.identity,
        ) from error


class ApiCollector(CollectorEngine):
    """
    Collector for REST endpoints.

    Args:
        client: ApiClient used for requests
        url_template: Request path; ``{input}`` and ``{pager}`` are substituted
            with ``str.format`` (e.g. "repos/{input[name]}/issues")
        query: Builds the query parameters for a ``RequestData``
        response_parser: Maps the ``ApiResponse`` to a ``PageResult`` or list
        method: HTTP method
        page_size: Page size for the default offset paginator
        paginator: Pagination driver (defaults to ``OffsetPaginator(page_size)``)
        rate_limit: Requests per ``rate_interval`` (ignored if ``rate_limiter`` given)
        rate_interval: Rate-limit interval in seconds
        **engine_args: Remaining ``CollectorEngine`` arguments

    Example:
        collector = ApiCollector(
            identity=CollectionIdentity.of("tapd_api_worklogs", connection_id=1, workspace_id=42),
            store=store,
            state_store=states,
            client=client,
            url_template="timesheets",
            query=lambda req: {"workspace_id": 42, "page": req.pager.page, "limit": req.pager.size},
            response_parser=lambda response, req: raw_message_array(response, "data"),
            page_size=100,
        )
        collector.execute()
    """

    def __init__(
        self,
        *,
        client: ApiClient,
        url_template: str,
        response_parser: ResponseParser,
        query: Optional[Callable[[RequestData], Mapping[str, Any]]] = None,
        method: str = "GET",
        page_size: int = 100,
        paginator: Optional[Paginator] = None,
        rate_limit: Optional[int] = None,
        rate_interval: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        **engine_args: Any,
    ):
        self.client = client
        self.url_template = url_template
        self.query = query
        self.method = method
        super().__init__(
            fetch_page=self._fetch,
            response_parser=response_parser,
            paginator=paginator or OffsetPaginator(page_size),
            rate_limiter=rate_limiter or RateLimiter(rate=rate_limit, interval=rate_interval),
            **engine_args,
        )

    def _fetch(self, request: RequestData) -> FetchedPage:
        params = dict(self.query(request)) if self.query else {}
        path = self.url_template.format(input=request.input, pager=request.pager)
        response = self.client.request(self.method, path, params=params, timeout=request.timeout)
        return FetchedPage(response=response, source_input={"params": params, "input": request.input})


__all__ = [
    "RunStatus",
    "CollectorResult",
    "CollectorEngine",
    "ApiCollector",
    "DEFAULT_CONCURRENCY",
]
