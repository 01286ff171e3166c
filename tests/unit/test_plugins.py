"""
Unit tests for the source plugins.

API clients are replaced with mocks returning canned payloads, so no real
API calls are made.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from ingestion.collector.api_client import ApiResponse
from ingestion.collector.base import RequestData
from ingestion.collector.collector import RunStatus
from ingestion.collector.graphql_collector import GraphqlCollector
from ingestion.collector.pagination import Pager
from ingestion.collector.source_config import CollectorSettings, SourceConfig
from ingestion.common.errors import TransformError
from ingestion.common.identity import content_key
from ingestion.extractor.extractor import ApiExtractor
from ingestion.plugins import PLUGINS, get_plugin
from ingestion.plugins.github_prs import (
    GithubAccount,
    GithubCommit,
    GithubPrCommit,
    GithubPrLabel,
    GithubPrReview,
    GithubPrsPlugin,
    GithubPullRequest,
    GithubReviewer,
    compile_label_pattern,
    extract_pull_request,
    pull_request_key,
)
from ingestion.plugins.jsearch import JobPosting, JSearchPlugin, job_key, parse_jobs_page, to_job_posting
from ingestion.plugins.mock_source import MockItem, MockPlugin, item_key

FAST_SETTINGS = CollectorSettings(
    page_size=10,
    concurrency=1,
    rate_limit=None,
    max_retries=1,
    initial_retry_delay=0.001,
    max_retry_delay=0.01,
)


def make_config(plugin, params=None, **kwargs):
    kwargs.setdefault("settings", FAST_SETTINGS)
    return SourceConfig(name=plugin, plugin=plugin, params=params or {}, **kwargs)


# Sample JSearch job for testing
SAMPLE_JOB = {
    "job_id": "test-job-1",
    "employer_name": "TechCorp Inc",
    "job_publisher": "LinkedIn",
    "job_employment_type": "FULLTIME",
    "job_title": "Senior Software Engineer",
    "job_apply_link": "https://example.com/apply/123",
    "job_description": "We are looking for a talented software engineer...",
    "job_is_remote": True,
    "job_posted_at_datetime_utc": "2024-01-01T00:00:00.000Z",
    "job_city": "San Francisco",
    "job_state": "CA",
    "job_country": "US",
    "job_min_salary": 120000,
    "job_max_salary": 180000,
    "job_salary_currency": "USD",
}


def jsearch_page(count, start=0):
    jobs = []
    for i in range(start, start + count):
        job = dict(SAMPLE_JOB)
        job["job_id"] = f"job-{i}"
        jobs.append(job)
    return {"status": "OK", "data": jobs}


class TestRegistry:

    def test_known_plugins(self):
        assert set(PLUGINS) == {"mock", "jsearch", "github_prs"}

    def test_get_plugin(self):
        assert isinstance(get_plugin(make_config("mock")), MockPlugin)

    def test_unknown_plugin(self):
        with pytest.raises(ValueError, match="Unknown plugin"):
            get_plugin(make_config("tapd"))


class TestMockPlugin:

    @pytest.mark.parametrize("mode", ["offset", "cursor"])
    def test_collect_then_extract(self, mode, raw_store, state_store, sink):
        plugin = MockPlugin(make_config("mock", {"mode": mode, "total_records": 23}))

        result = plugin.build_collector(store=raw_store, state_store=state_store).execute()
        extraction = ApiExtractor(raw_store, sink).execute(plugin.identity, plugin.transform)

        assert result.status is RunStatus.SUCCEEDED
        assert result.pages_fetched == 3
        assert extraction.records_extracted == 23
        items = sink.records(plugin.identity)
        assert all(isinstance(item, MockItem) for item in items)
        assert [item.id for item in items] == list(range(23, 0, -1))

    def test_cursor_mode_builds_graphql_collector(self, raw_store, state_store):
        plugin = MockPlugin(make_config("mock", {"mode": "cursor"}))

        assert isinstance(plugin.build_collector(store=raw_store, state_store=state_store), GraphqlCollector)

    def test_identity_includes_mode(self):
        identity = MockPlugin(make_config("mock", {"mode": "cursor"})).identity

        assert identity.params == {"source": "mock", "mode": "cursor"}

    def test_invalid_mode(self):
        with pytest.raises(ValueError, match="mode"):
            MockPlugin(make_config("mock", {"mode": "keyset"}))

    def test_full_sync_overrides_incremental(self, raw_store, state_store):
        plugin = MockPlugin(make_config("mock", incremental=True))

        incremental = plugin.build_collector(store=raw_store, state_store=state_store)
        full = plugin.build_collector(store=raw_store, state_store=state_store, full_sync=True)

        assert incremental.incremental is True
        assert full.incremental is False

    def test_collector_keys_items_by_id(self, raw_store, state_store):
        plugin = MockPlugin(make_config("mock"))

        collector = plugin.build_collector(store=raw_store, state_store=state_store)

        assert collector.record_key is item_key


class TestJSearchPlugin:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("JSEARCH_API_KEY", raising=False)

        with pytest.raises(ValueError, match="JSEARCH_API_KEY"):
            JSearchPlugin(make_config("jsearch"))

    def test_api_key_header(self, monkeypatch):
        monkeypatch.setenv("JSEARCH_API_KEY", "test-key")
        plugin = JSearchPlugin(make_config("jsearch"))

        assert plugin.client.session.headers["X-API-Key"] == "test-key"

    def test_build_query(self):
        plugin = JSearchPlugin(make_config("jsearch", {"query": "data engineer"}), client=MagicMock())
        params = plugin.build_query(RequestData(pager=Pager(page=3, size=10)))

        assert params["query"] == "data engineer"
        assert params["page"] == 3
        assert params["num_pages"] == 1

    def test_collects_until_short_page(self, raw_store, state_store, sink):
        client = MagicMock()
        client.request.side_effect = [
            ApiResponse(200, jsearch_page(10), "https://api/jsearch/search?page=1"),
            ApiResponse(200, jsearch_page(4, start=10), "https://api/jsearch/search?page=2"),
        ]
        plugin = JSearchPlugin(make_config("jsearch", {"max_pages": 5}), client=client)

        result = plugin.build_collector(store=raw_store, state_store=state_store).execute()
        ApiExtractor(raw_store, sink).execute(plugin.identity, plugin.transform)

        assert result.records_staged == 14
        assert client.request.call_count == 2
        method, path = client.request.call_args_list[0].args
        assert (method, path) == ("GET", "jsearch/search")
        assert sink.count(plugin.identity) == 14

    def test_max_pages_limits_requests(self, raw_store, state_store):
        client = MagicMock()
        client.request.side_effect = lambda method, path, params=None, timeout=None: ApiResponse(
            200, jsearch_page(10), path
        )
        plugin = JSearchPlugin(make_config("jsearch", {"max_pages": 2}), client=client)

        plugin.build_collector(store=raw_store, state_store=state_store).execute()

        assert client.request.call_count == 2

    def test_cutoff_filters_without_finishing(self):
        old = dict(SAMPLE_JOB, job_posted_at_datetime_utc="2023-01-01T00:00:00Z")
        response = ApiResponse(200, {"data": [SAMPLE_JOB, old, SAMPLE_JOB]}, "u")
        request = RequestData(pager=Pager(), cutoff=datetime(2023, 6, 1, tzinfo=timezone.utc))

        result = parse_jobs_page(response, request)

        assert len(result.units) == 2
        assert result.item_count == 3
        assert result.status.value == "continue"

    def test_job_key(self):
        assert job_key({"job_id": "abc", "job_title": "x"}) == "abc"
        assert job_key({"job_title": "x"}) == content_key({"job_title": "x"})

    def test_to_job_posting(self):
        job = to_job_posting(SAMPLE_JOB)

        assert isinstance(job, JobPosting)
        assert job.provider_job_id == "test-job-1"
        assert job.location == "San Francisco, CA, US"
        assert job.remote_type == "remote"
        assert job.contract_type == "full_time"
        assert job.salary_min == 120000

    def test_to_job_posting_defaults(self):
        job = to_job_posting({"job_id": "x"})

        assert job.job_title == "Unknown Title"
        assert job.company == "Unknown Company"
        assert job.location == "Unknown"
        assert job.remote_type == "unknown"
        assert job.contract_type == "unknown"

    def test_onsite_when_location_known(self):
        job = to_job_posting({"job_id": "x", "job_city": "Austin", "job_is_remote": False})

        assert job.remote_type == "onsite"


PR_NODE = {
    "databaseId": 1001,
    "number": 42,
    "state": "MERGED",
    "title": "Add collector",
    "body": "Adds a collector",
    "url": "https://github.com/o/r/pull/42",
    "createdAt": "2024-05-02T10:00:00Z",
    "updatedAt": "2024-05-03T10:00:00Z",
    "closedAt": "2024-05-03T10:00:00Z",
    "mergedAt": "2024-05-03T10:00:00Z",
    "headRefName": "feature",
    "headRefOid": "h1",
    "baseRefName": "main",
    "baseRefOid": "b1",
    "mergeCommit": {"oid": "m1"},
    "author": {"login": "alice", "databaseId": 7, "name": "Alice"},
    "labels": {"nodes": [{"id": "L1", "name": "type/feature"}, {"id": "L2", "name": "component/api"}]},
    "reviews": {
        "nodes": [
            {
                "databaseId": 5,
                "body": "LGTM",
                "state": "APPROVED",
                "submittedAt": "2024-05-03T09:00:00Z",
                "commit": {"oid": "h1"},
                "author": {"login": "bob", "databaseId": 8},
            },
            {"databaseId": 6, "state": "PENDING", "author": {"login": "carol", "databaseId": 9}},
        ]
    },
    "commits": {
        "nodes": [
            {
                "url": "https://github.com/o/r/commit/c1",
                "commit": {
                    "oid": "c1",
                    "message": "Add collector",
                    "author": {"name": "Alice", "email": "a@example.com", "date": "2024-05-02T09:00:00Z",
                               "user": {"login": "alice", "databaseId": 7}},
                    "committer": {"name": "Alice", "email": "a@example.com", "date": "2024-05-02T09:00:00Z"},
                },
            }
        ]
    },
}


def prs_response(nodes, end_cursor, has_next):
    return ApiResponse(
        200,
        {"repository": {"pullRequests": {"nodes": nodes, "pageInfo": {"endCursor": end_cursor, "hasNextPage": has_next}}}},
        "https://api.github.com/graphql",
    )


def pr(database_id, created_at):
    return dict(PR_NODE, databaseId=database_id, number=database_id, createdAt=created_at)


class TestGithubPrsPlugin:

    def make_plugin(self, client=None, **params):
        params.setdefault("repo", "o/r")
        return GithubPrsPlugin(make_config("github_prs", params), client=client or MagicMock())

    @pytest.mark.parametrize("repo", ["", "o", "o/", "o/r/x"])
    def test_repo_must_be_owner_slash_name(self, repo):
        with pytest.raises(ValueError, match="owner/name"):
            self.make_plugin(repo=repo)

    def test_identity(self):
        plugin = self.make_plugin(connection_id=3)

        assert plugin.identity.table == "github_graphql_prs"
        assert plugin.identity.params == {"connection_id": 3, "name": "o/r"}

    def test_invalid_label_regex(self):
        with pytest.raises(ValueError, match="pr_type"):
            self.make_plugin(pr_type="type/(")

    def test_build_query_variables(self):
        plugin = self.make_plugin()
        _, variables = plugin.build_query(RequestData(pager=Pager(page=2, size=30, cursor="abc")))

        assert variables == {"owner": "o", "name": "r", "pageSize": 30, "skipCursor": "abc"}

    def test_page_size_is_capped(self, raw_store, state_store):
        config = make_config("github_prs", {"repo": "o/r"}, settings=CollectorSettings(page_size=500, rate_limit=None))
        collector = GithubPrsPlugin(config, client=MagicMock()).build_collector(
            store=raw_store, state_store=state_store
        )

        assert collector.paginator.page_size == 100

    def test_incremental_run_stops_at_cutoff(self, raw_store, state_store, sink):
        client = MagicMock()
        client.graphql.side_effect = [
            prs_response([pr(3, "2024-05-03T00:00:00Z"), pr(2, "2024-05-02T00:00:00Z")], "c2", True),
            prs_response([pr(1, "2024-04-01T00:00:00Z")], "c3", True),
        ]
        config = make_config(
            "github_prs",
            {"repo": "o/r"},
            created_date_after=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        plugin = GithubPrsPlugin(config, client=client)

        result = plugin.build_collector(store=raw_store, state_store=state_store).execute()

        assert result.early_finished is True
        assert client.graphql.call_count == 2
        assert [raw.data["databaseId"] for raw in raw_store.list_all(plugin.identity)] == [3, 2]

        ApiExtractor(raw_store, sink).execute(plugin.identity, plugin.transform)
        prs = [r for r in sink.records(plugin.identity) if isinstance(r, GithubPullRequest)]
        assert [p.github_id for p in prs] == [3, 2]


class TestExtractPullRequest:

    def test_pull_request_key(self):
        assert pull_request_key({"databaseId": 42, "number": 7}) == 42
        assert pull_request_key({"number": 7}) == content_key({"number": 7})

    def test_fan_out(self):
        records = extract_pull_request(
            PR_NODE,
            connection_id=1,
            repo="o/r",
            type_pattern=compile_label_pattern("type/(.*)$", "pr_type"),
            component_pattern=compile_label_pattern("component/(.*)$", "pr_component"),
        )
        by_type = {}
        for record in records:
            by_type.setdefault(type(record), []).append(record)

        pull = by_type[GithubPullRequest][0]
        assert pull.github_id == 1001
        assert pull.type == "feature"
        assert pull.component == "api"
        assert pull.merge_commit_sha == "m1"
        assert pull.author_name == "alice"
        assert pull.created_at == datetime(2024, 5, 2, 10, tzinfo=timezone.utc)
        assert [label.label_name for label in by_type[GithubPrLabel]] == ["type/feature", "component/api"]
        # The pending review is skipped
        assert [review.github_id for review in by_type[GithubPrReview]] == [5]
        assert [reviewer.login for reviewer in by_type[GithubReviewer]] == ["bob"]
        assert [commit.sha for commit in by_type[GithubCommit]] == ["c1"]
        assert by_type[GithubPrCommit] == [GithubPrCommit(connection_id=1, pull_request_id=1001, commit_sha="c1")]
        assert {account.login for account in by_type[GithubAccount]} == {"alice", "bob"}

    def test_pattern_without_group_uses_whole_match(self):
        records = extract_pull_request(
            PR_NODE,
            connection_id=1,
            repo="o/r",
            type_pattern=compile_label_pattern("feature", "pr_type"),
        )
        pull = next(r for r in records if isinstance(r, GithubPullRequest))

        assert pull.type == "feature"
        assert pull.component is None

    def test_missing_database_id(self):
        with pytest.raises(TransformError, match="databaseId"):
            extract_pull_request({"number": 1}, connection_id=1, repo="o/r")


pytestmark = pytest.mark.unit
