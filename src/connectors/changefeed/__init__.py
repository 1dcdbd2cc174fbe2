"""
Change feed consumption: per-partition cursors, checkpoints and a read cutoff.
"""

from .errors import (
    ChangeFeedError,
    TransientReadError,
    NotFoundError,
    PartitionGoneError,
    InvalidCheckpointError,
    CheckpointError,
)
from .models import ChangeRecord, ChangePage, StopReason, CutoffExceeded
from .source import ChangeFeedSource, InMemoryChangeFeedSource, partition_for
from .checkpoint_store import CheckpointStore, InMemoryCheckpointStore, SqlCheckpointStore, ChangeFeedCheckpoint
from .cursor import ChangeFeedCursor, ChangeFeedConfig, PageIterator
from .reader import ChangeFeedReader, ReadResult, PartitionReadResult

__all__ = [
    "ChangeFeedError",
    "TransientReadError",
    "NotFoundError",
    "PartitionGoneError",
    "InvalidCheckpointError",
    "CheckpointError",
    "ChangeRecord",
    "ChangePage",
    "StopReason",
    "CutoffExceeded",
    "ChangeFeedSource",
    "InMemoryChangeFeedSource",
    "partition_for",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqlCheckpointStore",
    "ChangeFeedCheckpoint",
    "ChangeFeedCursor",
    "ChangeFeedConfig",
    "PageIterator",
    "ChangeFeedReader",
    "ReadResult",
    "PartitionReadResult",
]
