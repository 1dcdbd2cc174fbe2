"""
Error taxonomy for change feed consumption.

Reaching the read cutoff is not an error; see ``models.CutoffExceeded``.
"""

from typing import Optional


class ChangeFeedError(Exception):
    """Base exception for change feed errors."""
    pass


class TransientReadError(ChangeFeedError):
    """Network or service hiccup. Safe to retry with the unchanged checkpoint."""
    pass


class NotFoundError(ChangeFeedError):
    """Requested feed resource does not exist."""
    pass


class PartitionGoneError(NotFoundError):
    """Partition no longer exists; re-enumerate partitions and drop its checkpoint."""

    def __init__(self, partition_id: str, message: Optional[str] = None):
        self.partition_id = partition_id
        super().__init__(message or f"Partition {partition_id!r} no longer exists")


class InvalidCheckpointError(ChangeFeedError):
    """Continuation token cannot be decoded by the source."""
    pass


class CheckpointError(ChangeFeedError):
    """Error saving/loading checkpoint."""
    pass
