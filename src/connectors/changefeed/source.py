"""
Change feed source boundary and an in-process implementation.

A source exposes a partitioned change log. Each partition delivers changes in
the order the store committed them; nothing is promised across partitions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import threading
import zlib

from .errors import InvalidCheckpointError, PartitionGoneError
from .models import ChangePage, ChangeRecord, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ChangeFeedSource(ABC):
    """Storage collaborator consumed by ``ChangeFeedCursor``."""

    @abstractmethod
    def list_partitions(self) -> List[str]:
        """Return the ids of the partitions that currently exist."""

    @abstractmethod
    def read_change_page(
        self,
        partition_id: str,
        start_time: Optional[datetime],
        continuation: Optional[str],
        max_item_count: Optional[int] = None
    ) -> ChangePage:
        """
        Read the next page of changes for one partition.

        Args:
            partition_id: Partition to read
            start_time: Only changes modified at or after this time (ignored when
                resuming from a continuation)
            continuation: Resume position from a previous page, or None
            max_item_count: Page size limit; None lets the source decide

        Raises:
            PartitionGoneError: If the partition no longer exists
            TransientReadError: On retryable network/service failures
            InvalidCheckpointError: If the continuation cannot be decoded
        """


def partition_for(document_id: str, partition_count: int) -> str:
    """Map a document id onto one of ``partition_count`` hash partitions."""
    if partition_count <= 0:
        raise ValueError("partition_count must be positive")
    return str(zlib.crc32(document_id.encode("utf-8")) % partition_count)


@dataclass
class _LogEntry:
    lsn: int
    record: ChangeRecord


class InMemoryChangeFeedSource(ChangeFeedSource):
    """
    Process-local change feed with latest-version semantics.

    Writing a document that already exists removes its previous entry and
    appends the new version at the tail of the partition's log, so an update
    moves the document after everything written before it. Modification
    timestamps are assigned here on write and never go backwards.

    Thread Safety: YES (single lock around all partitions)

    Example:
        >>> source = InMemoryChangeFeedSource(partition_count=2)
        >>> source.upsert({"id": "doc-1", "status": "new"})
        >>> page = source.read_change_page("0", None, None)
    """

    def __init__(
        self,
        partition_count: int = 1,
        clock: Callable[[], datetime] = utcnow,
        page_size: int = 100
    ):
        if partition_count <= 0:
            raise ValueError("partition_count must be positive")
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self.partition_count = partition_count
        self.page_size = page_size
        self._clock = clock
        self._lock = threading.Lock()
        self._logs: Dict[str, List[_LogEntry]] = {
            str(i): [] for i in range(partition_count)
        }
        self._next_lsn: Dict[str, int] = {pid: 1 for pid in self._logs}
        self._last_modified: Optional[datetime] = None

    def list_partitions(self) -> List[str]:
        with self._lock:
            return list(self._logs)

    def upsert(self, document: Dict[str, Any], partition_id: Optional[str] = None) -> ChangeRecord:
        """
        Insert or replace a document and append it to its partition's log.

        Args:
            document: Document with a string ``id`` field
            partition_id: Explicit partition; defaults to the hash partition of the id

        Returns:
            The change record as the feed will deliver it
        """
        doc_id = document.get("id")
        if not isinstance(doc_id, str) or not doc_id:
            raise ValueError("document must have a non-empty string 'id'")

        if partition_id is None:
            partition_id = partition_for(doc_id, self.partition_count)

        with self._lock:
            if partition_id not in self._logs:
                raise PartitionGoneError(partition_id)

            modified_at = ensure_utc(self._clock())
            if self._last_modified is not None and modified_at < self._last_modified:
                modified_at = self._last_modified
            self._last_modified = modified_at

            # an id lives in one partition at a time
            for entries in self._logs.values():
                entries[:] = [entry for entry in entries if entry.record.id != doc_id]
            log = self._logs[partition_id]

            record = ChangeRecord(
                id=doc_id,
                modified_at=modified_at,
                partition_id=partition_id,
                payload=dict(document)
            )
            lsn = self._next_lsn[partition_id]
            self._next_lsn[partition_id] = lsn + 1
            log.append(_LogEntry(lsn=lsn, record=record))

        logger.debug(
            f"Upserted document {doc_id} into partition {partition_id}",
            extra={"partition_id": partition_id, "lsn": lsn}
        )
        return record

    def remove_partition(self, partition_id: str) -> None:
        """Drop a partition, e.g. to simulate a split."""
        with self._lock:
            if self._logs.pop(partition_id, None) is None:
                raise PartitionGoneError(partition_id)
            self._next_lsn.pop(partition_id, None)

    def read_change_page(
        self,
        partition_id: str,
        start_time: Optional[datetime],
        continuation: Optional[str],
        max_item_count: Optional[int] = None
    ) -> ChangePage:
        after_lsn = self._decode_continuation(continuation)
        start_time = ensure_utc(start_time)
        limit = max_item_count if max_item_count and max_item_count > 0 else self.page_size

        with self._lock:
            if partition_id not in self._logs:
                raise PartitionGoneError(partition_id)
            pending = [
                entry for entry in self._logs[partition_id]
                if entry.lsn > after_lsn
                and (start_time is None or entry.record.modified_at >= start_time)
            ]

        if not pending:
            return ChangePage(records=[], continuation=continuation, has_more=False)

        batch = pending[:limit]
        return ChangePage(
            records=[entry.record for entry in batch],
            continuation=str(batch[-1].lsn),
            has_more=len(pending) > len(batch)
        )

    def _decode_continuation(self, continuation: Optional[str]) -> int:
        if continuation is None:
            return 0
        try:
            lsn = int(continuation)
        except (TypeError, ValueError) as e:
            raise InvalidCheckpointError(f"Malformed continuation token: {continuation!r}") from e
        if lsn < 0:
            raise InvalidCheckpointError(f"Malformed continuation token: {continuation!r}")
        return lsn
