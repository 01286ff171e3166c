"""
Pytest configuration and shared fixtures

This file contains test fixtures that can be used across all tests.
Fixtures are reusable components that set up test preconditions.

Learn more: https://docs.pytest.org/en/stable/fixture.html
"""

import os
from typing import Any, Optional

import pytest

from ingestion.collector.collector import ApiCollector
from ingestion.collector.db_storage import InMemoryRawStore
from ingestion.collector.retry import RetryPolicy
from ingestion.collector.state import InMemoryStateStore
from ingestion.common.identity import CollectionIdentity
from ingestion.extractor.db_operations import InMemoryTypedRecordSink
from ingestion.plugins.mock_source import MockSource, offset_query, parse_offset_page


@pytest.fixture(scope="session")
def database_url() -> Optional[str]:
    """
    Provide database URL for integration tests.

    Integration tests are skipped when INGESTION_TEST_DATABASE_URL is not set.

    Scope: session (created once per test run)
    """
    return os.getenv("INGESTION_TEST_DATABASE_URL")


@pytest.fixture(scope="function")
def identity() -> CollectionIdentity:
    """A collection identity for an imaginary worklog endpoint."""
    return CollectionIdentity.of("tapd_api_worklogs", connection_id=1, workspace_id=42)


@pytest.fixture(scope="function")
def raw_store() -> InMemoryRawStore:
    return InMemoryRawStore()


@pytest.fixture(scope="function")
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture(scope="function")
def sink() -> InMemoryTypedRecordSink:
    return InMemoryTypedRecordSink()


@pytest.fixture(scope="function")
def fast_retry() -> RetryPolicy:
    """Retry policy with millisecond backoff so retry tests stay fast."""
    return RetryPolicy(max_retries=3, initial_delay=0.001, backoff_factor=2.0, max_delay=0.01)


@pytest.fixture(scope="function")
def make_collector(identity, raw_store, state_store, fast_retry):
    """
    Factory for ApiCollector runs against a MockSource.

    Example:
        collector = make_collector(source, page_size=2, concurrency=1)
        result = collector.execute()
    """

    def factory(source: MockSource, **overrides: Any) -> ApiCollector:
        args: dict[str, Any] = {
            "identity": identity,
            "store": raw_store,
            "state_store": state_store,
            "client": source,
            "url_template": "items",
            "query": offset_query,
            "response_parser": parse_offset_page,
            "page_size": 10,
            "concurrency": 1,
            "retry_policy": fast_retry,
        }
        args.update(overrides)
        return ApiCollector(**args)

    return factory


# Mark tests based on their type for selective running
def pytest_configure(config):
    """
    Register custom pytest markers.

    This allows us to run specific test categories:
    - pytest -m unit        (run only unit tests)
    - pytest -m integration (run only integration tests)
    - pytest -m "not slow"  (skip slow tests)
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test (isolated, fast)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (requires services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (>1 second)"
    )
