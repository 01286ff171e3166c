"""
JSearch source for OpenWebNinja job listings.

Collects job postings from the JSearch REST API page by page into the raw
store, then extracts them into ``JobPosting`` records.

Environment Variables Required:
    JSEARCH_API_KEY: Your OpenWebNinja API key (or the variable named by ``token_env``)
    JSEARCH_BASE_URL: Base URL for the API (default: https://api.openwebninja.com)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from dotenv import load_dotenv

from ..collector.api_client import ApiClient, ApiResponse
from ..collector.base import PageResult, RequestData, raw_message_array
from ..collector.collector import ApiCollector, CollectorEngine
from ..collector.pagination import OffsetPaginator
from ..common.errors import TransformError
from ..common.identity import CollectionIdentity, RawRecord, content_key
from .base import SourcePlugin

# Load environment variables from .env
load_dotenv()

logger = logging.getLogger(__name__)

# Constants
RAW_JOBS_TABLE = "jsearch_api_jobs"
JSEARCH_PAGE_SIZE = 10
DEFAULT_QUERY = "analytics engineer"
DEFAULT_LOCATION = "United States"
DEFAULT_DATE_POSTED = "month"
DEFAULT_MAX_PAGES = 2

CONTRACT_TYPES = {
    "FULLTIME": "full_time",
    "PARTTIME": "part_time",
    "CONTRACTOR": "contract",
    "INTERN": "intern",
    "TEMPORARY": "temp",
}


@dataclass(frozen=True)
class JobPosting:
    """A job posting in the common format."""

    provider_job_id: Optional[str]
    job_title: str
    company: str
    location: str
    remote_type: str
    contract_type: str
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_currency: Optional[str] = None
    description: Optional[str] = None
    posted_at: Optional[str] = None
    apply_url: Optional[str] = None
    source: str = "jsearch"


def posted_at(job: dict[str, Any]) -> Optional[datetime]:
    value = job.get("job_posted_at_datetime_utc")
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def job_key(job: dict[str, Any]) -> str:
    """Provider job id, or a content hash for postings that lack one."""
    return job.get("job_id") or content_key(job)


def parse_jobs_page(response: ApiResponse, request: RequestData) -> PageResult:
    """
    Stage the ``data`` array of a search response.

    JSearch orders results by relevance, not by date, so a cutoff filters
    postings out without ending pagination early.
    """
    jobs = raw_message_array(response, "data")
    if request.cutoff is None:
        return PageResult.proceed(jobs)
    kept = [job for job in jobs if posted_at(job) is None or posted_at(job) >= request.cutoff]
    return PageResult.proceed(kept, item_count=len(jobs))


def to_job_posting(payload: dict[str, Any], source: str = "jsearch") -> JobPosting:
    """
    Map a JSearch job payload to the common ``JobPosting`` format.

    Example:
        >>> to_job_posting({"job_id": "x", "job_title": "Analytics Engineer", "job_is_remote": True})
        JobPosting(provider_job_id='x', job_title='Analytics Engineer', ..., remote_type='remote', ...)
    """
    # Build location string from available fields
    location_parts = [payload[key] for key in ("job_city", "job_state", "job_country") if payload.get(key)]
    location = ", ".join(location_parts) if location_parts else "Unknown"

    if payload.get("job_is_remote"):
        remote_type = "remote"
    elif location != "Unknown":
        remote_type = "onsite"
    else:
        remote_type = "unknown"

    return JobPosting(
        provider_job_id=payload.get("job_id"),
        job_title=payload.get("job_title") or "Unknown Title",
        company=payload.get("employer_name") or "Unknown Company",
        location=location,
        remote_type=remote_type,
        contract_type=CONTRACT_TYPES.get(payload.get("job_employment_type"), "unknown"),
        salary_min=payload.get("job_min_salary"),
        salary_max=payload.get("job_max_salary"),
        salary_currency=payload.get("job_salary_currency") or "USD",
        description=payload.get("job_description"),
        posted_at=payload.get("job_posted_at_datetime_utc"),
        apply_url=payload.get("job_apply_link"),
        source=source,
    )


class JSearchPlugin(SourcePlugin):
    """
    The ``jsearch`` source of collectors.yml.

    Params:
        query: Job search query (default: "analytics engineer")
        location: Location filter (default: "United States")
        date_posted: all/today/3days/week/month (default: "month")
        max_pages: Pages of 10 postings to fetch at most (default: 2)
    """

    plugin_name = "jsearch"

    def __init__(self, config, client: Optional[ApiClient] = None):
        super().__init__(config)
        params = config.params
        self.query = params.get("query", DEFAULT_QUERY)
        self.location = params.get("location", DEFAULT_LOCATION)
        self.date_posted = params.get("date_posted", DEFAULT_DATE_POSTED)
        self.max_pages = int(params.get("max_pages", DEFAULT_MAX_PAGES))

        if client is None:
            api_key = config.token() or os.getenv("JSEARCH_API_KEY")
            if not api_key:
                raise ValueError("JSEARCH_API_KEY must be set in environment or passed as parameter")
            base_url = config.base_url or os.getenv("JSEARCH_BASE_URL", "https://api.openwebninja.com")
            client = ApiClient(
                base_url,
                token=api_key,
                auth_scheme="",
                auth_header="X-API-Key",
                timeout=config.settings.request_timeout_seconds or 30,
            )
        self.client = client

        logger.info(
            "JSearch source initialized",
            extra={"source": config.name, "base_url": self.client.base_url, "max_pages": self.max_pages},
        )

    @property
    def identity(self) -> CollectionIdentity:
        return CollectionIdentity.of(
            RAW_JOBS_TABLE,
            source=self.config.name,
            query=self.query,
            location=self.location,
            date_posted=self.date_posted,
        )

    def build_query(self, request: RequestData) -> dict[str, Any]:
        return {
            "query": self.query,
            "location": self.location,
            "page": request.pager.page,
            "num_pages": 1,  # Fetch one page at a time
            "date_posted": self.date_posted,
        }

    def build_collector(self, *, store, state_store, full_sync=False, cancel_event=None, progress=None) -> CollectorEngine:
        args = self.collector_args(
            store=store,
            state_store=state_store,
            full_sync=full_sync,
            cancel_event=cancel_event,
            progress=progress,
        )
        args.pop("page_size")
        return ApiCollector(
            client=self.client,
            url_template="jsearch/search",
            query=self.build_query,
            response_parser=parse_jobs_page,
            paginator=OffsetPaginator(JSEARCH_PAGE_SIZE, max_pages=self.max_pages),
            record_key=job_key,
            **args,
        )

    def transform(self, raw: RawRecord) -> list[JobPosting]:
        if not isinstance(raw.data, dict):
            raise TransformError(f"Expected a job object, got {type(raw.data).__name__}")
        job = to_job_posting(raw.data, source=self.config.name)
        if not job.provider_job_id:
            logger.warning(
                "Job posting has no provider id",
                extra={"raw_record": raw.sequence, "job_title": job.job_title},
            )
        return [job]

    def close(self) -> None:
        self.client.close()


__all__ = [
    "JSearchPlugin",
    "JobPosting",
    "job_key",
    "parse_jobs_page",
    "to_job_posting",
    "RAW_JOBS_TABLE",
    "JSEARCH_PAGE_SIZE",
]
