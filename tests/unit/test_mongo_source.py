"""Unit tests for the MongoDB change stream source."""

import pytest
from unittest.mock import Mock, MagicMock
from datetime import datetime, timezone

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from bson import Timestamp
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

from src.connectors.changefeed.cursor import ChangeFeedCursor, ChangeFeedConfig
from src.connectors.changefeed.errors import (
    ChangeFeedError, InvalidCheckpointError, PartitionGoneError, TransientReadError
)
from src.connectors.changefeed.mongo_source import (
    DropOutcome,
    MongoChangeFeedSource,
    decode_resume_token,
    encode_resume_token,
    reset_collection,
)

RESUME_TOKEN = {"_data": "8265A1B2C3000000012B022C0100296E5A1004"}


def change(doc_id, wall_time, operation="insert"):
    return {
        "_id": {"_data": f"token-{doc_id}"},
        "operationType": operation,
        "documentKey": {"_id": doc_id},
        "fullDocument": {"_id": doc_id, "id": doc_id, "partition_key_range": "0"},
        "wallTime": wall_time,
        "clusterTime": Timestamp(wall_time, 1),
    }


def make_stream(changes, resume_token=RESUME_TOKEN):
    """Mock change stream yielding ``changes`` then reporting no new events."""
    stream = MagicMock()
    stream.__enter__.return_value = stream
    stream.__exit__.return_value = False
    stream.try_next.side_effect = list(changes) + [None]
    stream.resume_token = resume_token
    return stream


@pytest.fixture
def mock_collection():
    """Mock MongoDB collection."""
    collection = Mock(spec=Collection)
    collection.name = "cfcoll"
    return collection


@pytest.fixture
def source(mock_collection):
    return MongoChangeFeedSource(mock_collection, partitions=["0", "1"])


class TestMongoChangeFeedSource:
    """Test MongoChangeFeedSource."""

    def test_init_validates_collection(self):
        with pytest.raises(TypeError, match="collection must be a PyMongo Collection"):
            MongoChangeFeedSource("not_a_collection")

    def test_explicit_partitions(self, source):
        assert source.list_partitions() == ["0", "1"]

    def test_partitions_discovered_from_documents(self, mock_collection):
        mock_collection.distinct.return_value = [2, "0", None, 1]
        source = MongoChangeFeedSource(mock_collection, partition_field="shard")

        assert source.list_partitions() == ["0", "1", "2"]
        mock_collection.distinct.assert_called_once_with("shard")

    def test_reads_until_stream_is_idle(self, source, mock_collection):
        t1 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        t2 = datetime(2024, 1, 1, 10, 1, tzinfo=timezone.utc)
        mock_collection.watch.return_value = make_stream([change("a", t1), change("b", t2)])

        page = source.read_change_page("0", None, None, max_item_count=10)

        assert [r.id for r in page.records] == ["a", "b"]
        assert [r.modified_at for r in page.records] == [t1, t2]
        assert all(r.partition_id == "0" for r in page.records)
        assert page.has_more is False
        assert decode_resume_token(page.continuation) == RESUME_TOKEN

    def test_full_page_reports_more(self, source, mock_collection):
        t = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        stream = make_stream([change("a", t), change("b", t), change("c", t)])
        mock_collection.watch.return_value = stream

        page = source.read_change_page("0", None, None, max_item_count=2)

        assert [r.id for r in page.records] == ["a", "b"]
        assert page.has_more is True
        assert stream.try_next.call_count == 2

    def test_pipeline_filters_partition_and_operations(self, source, mock_collection):
        mock_collection.watch.return_value = make_stream([])

        source.read_change_page("1", None, None)

        kwargs = mock_collection.watch.call_args.kwargs
        match = kwargs["pipeline"][0]["$match"]
        assert match["fullDocument.partition_key_range"] == "1"
        assert match["operationType"] == {"$in": ["insert", "update", "replace"]}
        assert kwargs["full_document"] == "updateLookup"

    def test_start_time_becomes_operation_time(self, source, mock_collection):
        mock_collection.watch.return_value = make_stream([])
        start = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        source.read_change_page("0", start, None)

        kwargs = mock_collection.watch.call_args.kwargs
        assert kwargs["start_at_operation_time"] == Timestamp(start, 0)
        assert "resume_after" not in kwargs

    def test_sub_second_start_time_drops_earlier_changes(self, source, mock_collection):
        start = datetime(2024, 1, 1, 10, 0, 0, 900000, tzinfo=timezone.utc)
        mock_collection.watch.return_value = make_stream([
            change("early", datetime(2024, 1, 1, 10, 0, 0, 100000, tzinfo=timezone.utc)),
            change("on-time", start),
            change("late", datetime(2024, 1, 1, 10, 0, 1, tzinfo=timezone.utc)),
        ])

        page = source.read_change_page("0", start, None)

        assert [r.id for r in page.records] == ["on-time", "late"]
        assert all(r.modified_at >= start for r in page.records)

    def test_start_time_ignored_when_resuming(self, source, mock_collection):
        start = datetime(2024, 1, 1, 10, 0, 0, 900000, tzinfo=timezone.utc)
        mock_collection.watch.return_value = make_stream([
            change("early", datetime(2024, 1, 1, 10, 0, 0, 100000, tzinfo=timezone.utc)),
        ])

        page = source.read_change_page("0", start, encode_resume_token(RESUME_TOKEN))

        assert [r.id for r in page.records] == ["early"]

    def test_continuation_becomes_resume_after(self, source, mock_collection):
        mock_collection.watch.return_value = make_stream([])
        start = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        source.read_change_page("0", start, encode_resume_token(RESUME_TOKEN))

        kwargs = mock_collection.watch.call_args.kwargs
        assert kwargs["resume_after"] == RESUME_TOKEN
        assert "start_at_operation_time" not in kwargs

    def test_empty_page_keeps_continuation(self, source, mock_collection):
        mock_collection.watch.return_value = make_stream([], resume_token={"_data": "newer"})
        continuation = encode_resume_token(RESUME_TOKEN)

        page = source.read_change_page("0", None, continuation)

        assert page.records == []
        assert page.continuation == continuation
        assert page.has_more is False

    def test_cluster_time_used_without_wall_time(self, source, mock_collection):
        event = change("a", datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))
        del event["wallTime"]
        event["clusterTime"] = Timestamp(1704103200, 3)
        mock_collection.watch.return_value = make_stream([event])

        page = source.read_change_page("0", None, None)

        assert page.records[0].modified_at == datetime.fromtimestamp(1704103200, tz=timezone.utc)

    def test_naive_wall_time_is_utc(self, source, mock_collection):
        mock_collection.watch.return_value = make_stream([change("a", datetime(2024, 1, 1, 10, 0))])

        page = source.read_change_page("0", None, None)

        assert page.records[0].modified_at == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_malformed_continuation(self, source):
        with pytest.raises(InvalidCheckpointError):
            source.read_change_page("0", None, "{not json")
        with pytest.raises(InvalidCheckpointError):
            source.read_change_page("0", None, "[]")


class TestErrorTranslation:
    """Test pymongo errors map onto the change feed error taxonomy."""

    @pytest.mark.parametrize("error", [
        ConnectionFailure("Connection refused"),
        ServerSelectionTimeoutError("No primary available"),
        OperationFailure("Interrupted", code=11602, details={"errorLabels": ["ResumableChangeStreamError"]}),
    ])
    def test_transient_errors(self, source, mock_collection, error):
        mock_collection.watch.side_effect = error
        with pytest.raises(TransientReadError):
            source.read_change_page("0", None, None)

    def test_namespace_not_found_is_partition_gone(self, source, mock_collection):
        mock_collection.watch.side_effect = OperationFailure("ns not found", code=26)
        with pytest.raises(PartitionGoneError) as exc_info:
            source.read_change_page("1", None, None)
        assert exc_info.value.partition_id == "1"

    def test_history_lost_is_invalid_checkpoint(self, source, mock_collection):
        mock_collection.watch.side_effect = OperationFailure("history lost", code=286)
        with pytest.raises(InvalidCheckpointError):
            source.read_change_page("0", None, None)

    @pytest.mark.parametrize("code", [13, 18, 2])
    def test_non_retryable_errors(self, source, mock_collection, code):
        mock_collection.watch.side_effect = OperationFailure("denied", code=code)
        with pytest.raises(ChangeFeedError) as exc_info:
            source.read_change_page("0", None, None)
        assert not isinstance(exc_info.value, TransientReadError)

    def test_cursor_retries_connection_failures(self, source, mock_collection):
        t = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        mock_collection.watch.side_effect = [
            ConnectionFailure("Connection reset"),
            make_stream([change("a", t)]),
        ]
        cursor = ChangeFeedCursor(source, ChangeFeedConfig(max_retries=2, retry_backoff_multiplier=0))

        page = cursor.next_page(cursor.open("0"))

        assert [r.id for r in page.records] == ["a"]
        assert mock_collection.watch.call_count == 2


class TestResetCollection:
    """Test reset_collection reports explicit outcomes."""

    def test_drops_existing_collection(self):
        database = Mock(spec=Database)
        database.list_collection_names.return_value = ["cfcoll"]

        assert reset_collection(database, "cfcoll") == DropOutcome.DROPPED
        database.drop_collection.assert_called_once_with("cfcoll")

    def test_reports_already_absent(self):
        database = Mock(spec=Database)
        database.list_collection_names.return_value = []

        assert reset_collection(database, "cfcoll") == DropOutcome.ALREADY_ABSENT
        database.drop_collection.assert_not_called()

    def test_genuine_failure_propagates(self):
        database = Mock(spec=Database)
        database.list_collection_names.side_effect = OperationFailure("not authorized", code=13)

        with pytest.raises(OperationFailure):
            reset_collection(database, "cfcoll")
