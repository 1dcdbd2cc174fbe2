#!/usr/bin/env python3
"""
Change feed demo: per-partition ordering and a read cutoff.

Scenario:
1. Reset the collection and capture the run start time
2. Insert doc1, then doc2
3. Fix the read cutoff
4. Insert a few more documents (after the cutoff, so never read)
5. Update doc1, which moves it behind doc2 in its partition's feed
6. Read every partition from the run start time, stopping each partition at
   the first change past the cutoff and checkpointing each consumed page

Run against MongoDB (replica set required) or fully in-process:

    python examples/change_feed_demo.py --backend memory --pause 0.5
    MONGO_URI="mongodb://localhost:27017/?replicaSet=rs0" python examples/change_feed_demo.py --backend mongo
"""

import argparse
import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Dict

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pymongo

from config.settings import get_settings
from src.connectors.changefeed import (
    ChangeFeedConfig,
    ChangeFeedCursor,
    ChangeFeedReader,
    ChangeFeedSource,
    CheckpointStore,
    InMemoryChangeFeedSource,
    InMemoryCheckpointStore,
    SqlCheckpointStore,
    partition_for,
)
from src.connectors.changefeed.models import utcnow
from src.connectors.changefeed.mongo_source import MongoChangeFeedSource, reset_collection
from src.utils.logging import RunContext, configure_logging

logger = logging.getLogger("change_feed_demo")


class MemoryBackend:
    """Writes go straight into an in-process change feed."""

    def __init__(self, partition_count: int):
        self.source = InMemoryChangeFeedSource(partition_count=partition_count)

    def reset(self) -> None:
        logger.info("In-memory feed starts empty")

    def insert(self, doc_id: str) -> None:
        self.source.upsert({"id": doc_id, "updated_time": utcnow().isoformat()})

    def touch(self, doc_id: str) -> None:
        self.source.upsert({"id": doc_id, "updated_time": utcnow().isoformat()})

    def close(self) -> None:
        pass


class MongoBackend:
    """Writes documents to MongoDB; the feed is read from its change stream."""

    def __init__(self, settings):
        self.settings = settings
        self.client = pymongo.MongoClient(
            settings.uri,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
            tz_aware=True
        )
        self.client.admin.command('ping')
        self.db = self.client[settings.database]
        self.collection = self.db[settings.collection]
        self.source = MongoChangeFeedSource(
            self.collection,
            partition_field=settings.partition_field,
            partitions=[str(i) for i in range(settings.partition_count)],
            max_await_time_ms=settings.max_await_time_ms
        )
        logger.info(f"Connected to MongoDB: {settings.database}.{settings.collection}")

    def _document(self, doc_id: str) -> Dict[str, Any]:
        return {
            "_id": doc_id,
            "id": doc_id,
            self.settings.partition_field: partition_for(doc_id, self.settings.partition_count),
            "updated_time": utcnow()
        }

    def reset(self) -> None:
        outcome = reset_collection(self.db, self.settings.collection)
        logger.info(f"Reset collection {self.settings.collection}: {outcome.value}")
        self.db.create_collection(self.settings.collection)

    def insert(self, doc_id: str) -> None:
        self.collection.insert_one(self._document(doc_id))

    def touch(self, doc_id: str) -> None:
        self.collection.update_one({"_id": doc_id}, {"$set": {"updated_time": utcnow()}})

    def close(self) -> None:
        self.client.close()


def build_checkpoint_store(settings) -> CheckpointStore:
    if settings.checkpoint_db.is_durable:
        return SqlCheckpointStore(
            settings.checkpoint_db.url,
            pool_size=settings.checkpoint_db.pool_size,
            max_overflow=settings.checkpoint_db.max_overflow
        )
    # Demo only: checkpoints vanish with the process
    return InMemoryCheckpointStore()


def wait(seconds: float) -> None:
    logger.info(f"Waiting for {seconds:g} secs")
    time.sleep(seconds)


def run_demo(backend, source: ChangeFeedSource, checkpoint_store: CheckpointStore, pause: float, extra_docs: int) -> int:
    settings = get_settings()

    backend.reset()

    run_started = utcnow()
    logger.info(f"Run started time {run_started.isoformat()}")
    wait(pause)

    doc1 = f"Id1-{uuid.uuid4()}"
    doc2 = f"Id2-{uuid.uuid4()}"

    logger.info(f"Inserting first document {doc1}")
    backend.insert(doc1)
    wait(pause)

    logger.info(f"Inserting second document {doc2}")
    backend.insert(doc2)

    # Only changes made at or before this instant are in scope
    read_cutoff = utcnow()
    logger.info(f"Read cutoff time {read_cutoff.isoformat()}")
    wait(pause * 2.5)

    logger.info("Inserting documents after the read cutoff; the change feed read will skip them")
    for i in range(3, 3 + extra_docs):
        doc_id = f"Id{i}-{uuid.uuid4()}"
        logger.info(f"Adding {doc_id}")
        backend.insert(doc_id)

    logger.info(f"Updating document {doc1} at {utcnow().isoformat()}")
    backend.touch(doc1)

    config = ChangeFeedConfig.from_settings(settings.change_feed, start_time=run_started)
    cursor = ChangeFeedCursor(source, config, checkpoint_store=checkpoint_store)
    reader = ChangeFeedReader(cursor, max_workers=settings.change_feed.max_workers)

    def show(record):
        logger.info(f"Last modified time {record.modified_at.isoformat()}")
        logger.info(f"Read document {record.id} from partition {record.partition_id}")

    result = reader.read_until_cutoff(read_cutoff, callback=show)

    for partition_id, part in sorted(result.partitions.items()):
        if part.cutoff_exceeded is not None:
            logger.info(
                f"Partition {partition_id}: stopped at {part.cutoff_exceeded.record_id} "
                f"modified {part.cutoff_exceeded.modified_at.isoformat()} > cutoff"
            )
        else:
            logger.info(f"Partition {partition_id}: {part.stop_reason.value}")

    logger.info(f"Checkpoints: {cursor.checkpoints()}")
    return len(result.records())


def main():
    parser = argparse.ArgumentParser(description="Change feed ordering and read cutoff demo")
    parser.add_argument(
        "--backend",
        choices=["memory", "mongo"],
        default="memory",
        help="Where documents are written and the change feed is read from"
    )
    parser.add_argument(
        "--pause",
        type=float,
        default=2.0,
        help="Seconds between steps (the post-cutoff wait is 2.5x this)"
    )
    parser.add_argument(
        "--extra-docs",
        type=int,
        default=5,
        help="Documents inserted after the read cutoff"
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json_format)

    if args.backend == "mongo":
        backend = MongoBackend(settings.mongo)
    else:
        backend = MemoryBackend(settings.mongo.partition_count)

    checkpoint_store = build_checkpoint_store(settings)
    try:
        with RunContext():
            count = run_demo(backend, backend.source, checkpoint_store, args.pause, args.extra_docs)
        logger.info(f"End of demo, {count} changes read before the cutoff")
    finally:
        checkpoint_store.close()
        backend.close()


if __name__ == "__main__":
    main()
