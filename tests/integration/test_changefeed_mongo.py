"""End-to-end change feed reads against a MongoDB replica set."""

import pytest
import time
from datetime import datetime, timezone

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

import pymongo

from src.connectors.changefeed.checkpoint_store import SqlCheckpointStore
from src.connectors.changefeed.cursor import ChangeFeedCursor, ChangeFeedConfig
from src.connectors.changefeed.models import StopReason
from src.connectors.changefeed.mongo_source import DropOutcome, MongoChangeFeedSource, reset_collection
from src.connectors.changefeed.reader import ChangeFeedReader

container_module = pytest.importorskip("testcontainers.core.container")


@pytest.fixture(scope="module")
def mongo_client():
    """Single-node replica set (required for change streams)."""
    container = (
        container_module.DockerContainer("mongo:7.0")
        .with_command("--replSet rs0 --bind_ip_all")
        .with_exposed_ports(27017)
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker unavailable: {e}")

    try:
        uri = f"mongodb://{container.get_container_host_ip()}:{container.get_exposed_port(27017)}"
        admin = pymongo.MongoClient(uri, directConnection=True, serverSelectionTimeoutMS=30000)
        admin.admin.command("replSetInitiate", {"_id": "rs0", "members": [{"_id": 0, "host": "localhost:27017"}]})
        time.sleep(5)  # Wait for the node to become primary

        client = pymongo.MongoClient(uri, directConnection=True, tz_aware=True)
        client.admin.command("ping")
        admin.close()
        yield client
        client.close()
    finally:
        container.stop()


@pytest.fixture
def collection(mongo_client):
    db = mongo_client["test"]
    reset_collection(db, "cfcoll")
    db.create_collection("cfcoll")
    return db["cfcoll"]


def insert(collection, doc_id, partition="0"):
    collection.insert_one({"_id": doc_id, "id": doc_id, "partition_key_range": partition})


def test_reset_collection_outcomes(mongo_client):
    db = mongo_client["test"]
    db.create_collection("scratch")

    assert reset_collection(db, "scratch") == DropOutcome.DROPPED
    assert reset_collection(db, "scratch") == DropOutcome.ALREADY_ABSENT


def test_reads_until_cutoff_and_resumes(collection, tmp_path):
    run_started = datetime.now(timezone.utc)
    time.sleep(1)
    insert(collection, "doc1")
    insert(collection, "doc2")
    time.sleep(1)
    cutoff = datetime.now(timezone.utc)
    time.sleep(1)
    insert(collection, "doc3")

    source = MongoChangeFeedSource(collection, partitions=["0", "1"], max_await_time_ms=200)
    store = SqlCheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}")
    config = ChangeFeedConfig(feed_id="it", start_time=run_started, max_item_count=1)

    result = ChangeFeedReader(ChangeFeedCursor(source, config, checkpoint_store=store)).read_until_cutoff(cutoff)

    assert [r.id for r in result.partitions["0"].records] == ["doc1", "doc2"]
    assert result.partitions["0"].stop_reason == StopReason.CUTOFF_EXCEEDED
    assert result.partitions["1"].records == []

    resumed = ChangeFeedCursor(source, config, checkpoint_store=store)
    later = list(resumed.advance_until_cutoff(resumed.open("0"), datetime.now(timezone.utc)))
    assert [r.id for r in later] == ["doc3"]
    store.close()
