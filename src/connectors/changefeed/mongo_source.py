"""
MongoDB change streams as a partitioned change feed.

MongoDB orders a collection's change stream globally. Partitions here are
logical: every document carries a partition field (see ``partition_for``), and
each partition is read through its own filtered change stream. Resume tokens
serve as continuation tokens.

Requires a replica set or sharded cluster (change streams are unavailable on a
standalone server).
"""

from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from bson import Timestamp, json_util
from bson.errors import BSONError
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from .errors import ChangeFeedError, InvalidCheckpointError, PartitionGoneError, TransientReadError
from .models import ChangePage, ChangeRecord, ensure_utc
from .source import ChangeFeedSource

logger = logging.getLogger(__name__)

# Server error codes
UNAUTHORIZED = 13
AUTHENTICATION_FAILED = 18
NAMESPACE_NOT_FOUND = 26
CHANGE_STREAM_HISTORY_LOST = 286

CHANGE_OPERATIONS = ["insert", "update", "replace"]


class DropOutcome(str, Enum):
    DROPPED = "dropped"
    ALREADY_ABSENT = "already_absent"


def reset_collection(database: Database, name: str) -> DropOutcome:
    """
    Drop a collection, reporting whether it existed.

    Genuine failures (auth, network) propagate as PyMongoError.
    """
    if name not in database.list_collection_names(filter={"name": name}):
        logger.info(f"Collection {name} already absent", extra={"collection": name})
        return DropOutcome.ALREADY_ABSENT

    database.drop_collection(name)
    logger.info(f"Dropped collection {name}", extra={"collection": name})
    return DropOutcome.DROPPED


def encode_resume_token(token: Dict[str, Any]) -> str:
    return json_util.dumps(token)


def decode_resume_token(continuation: str) -> Dict[str, Any]:
    try:
        token = json_util.loads(continuation)
    except (ValueError, TypeError, BSONError) as e:
        raise InvalidCheckpointError(f"Malformed resume token: {continuation!r}") from e
    if not isinstance(token, dict) or not token:
        raise InvalidCheckpointError(f"Malformed resume token: {continuation!r}")
    return token


class MongoChangeFeedSource(ChangeFeedSource):
    """
    Read a MongoDB collection's change stream one logical partition at a time.

    Deletes carry no full document and are not part of the feed; only inserts,
    updates and replacements are delivered, each with the post-image.

    Example:
        >>> source = MongoChangeFeedSource(db["cfcoll"], partition_field="partition_key_range")
        >>> page = source.read_change_page("0", run_started, None, 100)
    """

    def __init__(
        self,
        collection: Collection,
        partition_field: str = "partition_key_range",
        partitions: Optional[List[str]] = None,
        max_await_time_ms: int = 1000,
        page_size: int = 100
    ):
        """
        Initialize source.

        Args:
            collection: PyMongo collection to read
            partition_field: Document field holding the partition id
            partitions: Fixed partition ids; when None they are discovered with
                ``distinct`` on the partition field
            max_await_time_ms: How long the server waits for new changes per getMore
            page_size: Default page size when the caller gives none

        Raises:
            TypeError: If collection is not a PyMongo Collection
        """
        if not isinstance(collection, Collection):
            raise TypeError("collection must be a PyMongo Collection instance")
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self.collection = collection
        self.partition_field = partition_field
        self.partitions = [str(p) for p in partitions] if partitions is not None else None
        self.max_await_time_ms = max_await_time_ms
        self.page_size = page_size

    def list_partitions(self) -> List[str]:
        if self.partitions is not None:
            return list(self.partitions)
        try:
            values = self.collection.distinct(self.partition_field)
        except PyMongoError as e:
            raise self._translate_error(e, partition_id=None) from e
        return sorted(str(value) for value in values if value is not None)

    def read_change_page(
        self,
        partition_id: str,
        start_time: Optional[datetime],
        continuation: Optional[str],
        max_item_count: Optional[int] = None
    ) -> ChangePage:
        limit = max_item_count if max_item_count and max_item_count > 0 else self.page_size
        start_time = ensure_utc(start_time)

        pipeline = [{
            "$match": {
                "operationType": {"$in": CHANGE_OPERATIONS},
                f"fullDocument.{self.partition_field}": partition_id
            }
        }]
        stream_options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": limit,
            "max_await_time_ms": self.max_await_time_ms
        }
        if continuation is not None:
            stream_options["resume_after"] = decode_resume_token(continuation)
        elif start_time is not None:
            stream_options["start_at_operation_time"] = Timestamp(start_time, 0)

        records: List[ChangeRecord] = []
        exhausted = False
        try:
            with self.collection.watch(pipeline=pipeline, **stream_options) as stream:
                while len(records) < limit:
                    change = stream.try_next()
                    if change is None:
                        exhausted = True
                        break
                    record = self._to_record(change, partition_id)
                    # start_at_operation_time is truncated to the second
                    if continuation is None and start_time is not None and record.modified_at < start_time:
                        continue
                    records.append(record)
                token = stream.resume_token
        except PyMongoError as e:
            raise self._translate_error(e, partition_id) from e

        next_continuation = encode_resume_token(token) if records and token else continuation
        return ChangePage(
            records=records,
            continuation=next_continuation,
            has_more=not exhausted
        )

    def _to_record(self, change: Dict[str, Any], partition_id: str) -> ChangeRecord:
        document = change.get("fullDocument") or {}
        doc_key = change.get("documentKey") or {}
        doc_id = document.get("id", doc_key.get("_id"))

        # wallTime is present from MongoDB 6.0; clusterTime has second precision
        modified_at = change.get("wallTime")
        if modified_at is None:
            modified_at = change["clusterTime"].as_datetime()

        return ChangeRecord(
            id=str(doc_id),
            modified_at=ensure_utc(modified_at),
            partition_id=partition_id,
            payload=document
        )

    def _translate_error(self, error: PyMongoError, partition_id: Optional[str]) -> ChangeFeedError:
        if isinstance(error, (ConnectionFailure, ServerSelectionTimeoutError, NetworkTimeout, AutoReconnect)):
            return TransientReadError(f"MongoDB unavailable: {error}")

        if isinstance(error, OperationFailure):
            if error.code in (UNAUTHORIZED, AUTHENTICATION_FAILED):
                return ChangeFeedError(f"Not authorized to read change stream: {error}")
            if error.code == NAMESPACE_NOT_FOUND and partition_id is not None:
                return PartitionGoneError(partition_id, f"Collection for partition {partition_id!r} is gone: {error}")
            if error.code == CHANGE_STREAM_HISTORY_LOST:
                return InvalidCheckpointError(f"Resume point fell off the oplog: {error}")
            if error.has_error_label("ResumableChangeStreamError"):
                return TransientReadError(f"Resumable change stream error: {error}")

        logger.error(
            f"Non-retryable MongoDB error: {error}",
            extra={"collection": self.collection.name, "partition_id": partition_id}
        )
        return ChangeFeedError(f"Non-retryable error: {error}")
