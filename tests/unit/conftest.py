"""Shared fixtures for change feed unit tests."""

import pytest
from datetime import datetime, timezone

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from src.connectors.changefeed.source import InMemoryChangeFeedSource


BASE_TIME = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def at(minute: int, second: int = 0) -> datetime:
    """10:MM:SS UTC on the base day."""
    return BASE_TIME.replace(minute=minute, second=second)


class FakeClock:
    """Settable clock standing in for the store's write timestamps."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source(clock):
    """Two-partition in-memory feed driven by the fake clock."""
    return InMemoryChangeFeedSource(partition_count=2, clock=clock)


@pytest.fixture
def write(source, clock):
    """Write a document into a partition at a given time."""
    def _write(doc_id: str, when: datetime, partition_id: str = "0", **fields):
        clock.now = when
        return source.upsert({"id": doc_id, **fields}, partition_id=partition_id)
    return _write
