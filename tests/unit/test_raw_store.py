"""Unit tests for the raw staging store and its database connection helper."""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from ingestion.collector.db_storage import InMemoryRawStore, PostgresRawStore, open_connection
from ingestion.common.errors import StorageError
from ingestion.common.identity import CollectionIdentity


def ids(store, identity):
    return [record.data["id"] for record in store.list_all(identity)]


class TestGenerations:

    def test_unpublished_rows_are_invisible(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        raw_store.put_many(token, [{"id": 1}, {"id": 2}])

        assert ids(raw_store, identity) == []
        assert raw_store.has_published(identity) is False

    def test_publish_makes_rows_visible_in_order(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        raw_store.put_many(token, [{"id": 3}, {"id": 1}])
        raw_store.put(token, {"id": 2})

        assert raw_store.publish(token) == 3
        assert ids(raw_store, identity) == [3, 1, 2]
        assert raw_store.has_published(identity) is True

    def test_full_run_replaces_previous_generation(self, raw_store, identity):
        first = raw_store.begin_run(identity)
        raw_store.put_many(first, [{"id": 1}, {"id": 2}])
        raw_store.publish(first)

        second = raw_store.begin_run(identity)
        raw_store.put_many(second, [{"id": 9}])
        raw_store.publish(second)

        assert ids(raw_store, identity) == [9]

    def test_incremental_run_merges(self, raw_store, identity):
        first = raw_store.begin_run(identity)
        raw_store.put_many(first, [{"id": 1}, {"id": 2}])
        raw_store.publish(first)

        second = raw_store.begin_run(identity, incremental=True)
        raw_store.put_many(second, [{"id": 3}])

        assert raw_store.publish(second) == 3
        assert ids(raw_store, identity) == [1, 2, 3]

    def test_incremental_run_supersedes_refetched_rows(self, raw_store, identity):
        first = raw_store.begin_run(identity)
        raw_store.put_many(first, [{"id": 1, "v": 1}, {"id": 2, "v": 1}], key=lambda item: item["id"])
        raw_store.publish(first)

        second = raw_store.begin_run(identity, incremental=True)
        raw_store.put_many(second, [{"id": 2, "v": 2}, {"id": 3, "v": 1}], key=lambda item: item["id"])

        assert raw_store.publish(second) == 3
        records = list(raw_store.list_all(identity))
        assert [(r.data["id"], r.data["v"]) for r in records] == [(1, 1), (2, 2), (3, 1)]
        assert [r.source_key for r in records] == ["1", "2", "3"]

    def test_full_run_keeps_rows_with_equal_keys(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        raw_store.put_many(token, [{"id": 1}, {"id": 1}])

        assert raw_store.publish(token) == 2

    def test_abort_drops_rows_and_keeps_published(self, raw_store, identity):
        first = raw_store.begin_run(identity)
        raw_store.put(first, {"id": 1})
        raw_store.publish(first)

        failed = raw_store.begin_run(identity)
        raw_store.put(failed, {"id": 2})
        raw_store.abort(failed)

        assert ids(raw_store, identity) == [1]

    def test_closed_generation_rejects_writes(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        raw_store.abort(token)

        with pytest.raises(StorageError, match="not open"):
            raw_store.put(token, {"id": 1})
        with pytest.raises(StorageError):
            raw_store.publish(token)

    def test_identities_are_isolated(self, raw_store, identity):
        other = CollectionIdentity.of(identity.table, connection_id=2, workspace_id=42)
        token = raw_store.begin_run(identity)
        raw_store.put(token, {"id": 1})
        raw_store.publish(token)

        assert ids(raw_store, other) == []


class TestRecords:

    def test_payload_bytes_are_decoded(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        record = raw_store.put(token, b'{"id": 7, "name": "x"}')

        assert record.data == {"id": 7, "name": "x"}

    def test_invalid_json_payload(self, raw_store, identity):
        token = raw_store.begin_run(identity)

        with pytest.raises(ValueError):
            raw_store.put(token, "{not json")

    def test_source_input_and_url_are_kept(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        record = raw_store.put(token, {"id": 1}, source_input={"params": {"page": 2}}, url="mock://items?page=2")
        raw_store.publish(token)

        stored = next(raw_store.list_all(identity))
        assert stored.source_input == {"params": {"page": 2}}
        assert stored.url == "mock://items?page=2"
        assert stored.record_id == record.record_id

    def test_payloads_are_keyed_by_content_by_default(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        first, second, other = raw_store.put_many(token, [{"id": 1, "a": 2}, {"a": 2, "id": 1}, {"id": 2}])

        assert first.source_key == second.source_key
        assert first.source_key != other.source_key

    def test_failing_key_is_storage_error(self, raw_store, identity):
        token = raw_store.begin_run(identity)

        with pytest.raises(StorageError, match="source key"):
            raw_store.put(token, {"name": "x"}, key=lambda item: item["id"])
        with pytest.raises(StorageError, match="missing"):
            raw_store.put(token, {"id": None}, key=lambda item: item["id"])

    def test_list_all_is_restartable(self, raw_store, identity):
        token = raw_store.begin_run(identity)
        raw_store.put_many(token, [{"id": 1}, {"id": 2}])
        raw_store.publish(token)

        assert ids(raw_store, identity) == ids(raw_store, identity)


class TestOpenConnection:

    @patch("ingestion.collector.db_storage.psycopg2.connect")
    def test_retries_unreachable_server(self, mock_connect):
        connection = MagicMock()
        mock_connect.side_effect = [psycopg2.OperationalError("server starting up"), connection]

        assert open_connection("postgresql://localhost/test") is connection
        assert mock_connect.call_count == 2

    @patch("ingestion.collector.db_storage.psycopg2.connect")
    def test_store_reports_storage_error_when_retries_run_out(self, mock_connect):
        mock_connect.side_effect = psycopg2.OperationalError("connection refused")
        store = PostgresRawStore("postgresql://localhost/test")

        with pytest.raises(StorageError, match="connection failed"):
            store.connect()

        assert mock_connect.call_count == 3

    @patch("ingestion.collector.db_storage.psycopg2.connect")
    def test_other_errors_are_not_retried(self, mock_connect):
        mock_connect.side_effect = psycopg2.ProgrammingError("bad dsn")

        with pytest.raises(psycopg2.ProgrammingError):
            open_connection("postgresql://localhost/test")

        assert mock_connect.call_count == 1


pytestmark = pytest.mark.unit
