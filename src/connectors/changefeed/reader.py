"""
Drive every partition of a feed up to a shared read cutoff.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging

from .cursor import ChangeFeedCursor
from .errors import PartitionGoneError
from .models import ChangeRecord, CutoffExceeded, StopReason, ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class PartitionReadResult:
    partition_id: str
    records: List[ChangeRecord] = field(default_factory=list)
    stop_reason: Optional[StopReason] = None
    cutoff_exceeded: Optional[CutoffExceeded] = None
    checkpoint: Optional[str] = None


@dataclass
class ReadResult:
    cutoff: datetime
    partitions: Dict[str, PartitionReadResult] = field(default_factory=dict)

    def records(self) -> List[ChangeRecord]:
        """
        All records, partition by partition.

        Ordered within each partition only; the concatenation is not a global
        time order.
        """
        result: List[ChangeRecord] = []
        for partition_id in sorted(self.partitions):
            result.extend(self.partitions[partition_id].records)
        return result

    @property
    def gone_partitions(self) -> List[str]:
        return sorted(
            pid for pid, part in self.partitions.items()
            if part.stop_reason == StopReason.PARTITION_GONE
        )


class ChangeFeedReader:
    """
    Read all partitions through one cursor, sequentially or on a thread pool.

    Each partition task owns its iterator; the only shared state is the
    cursor's checkpoint map and the read-only cutoff.
    """

    def __init__(self, cursor: ChangeFeedCursor, max_workers: int = 1):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.cursor = cursor
        self.max_workers = max_workers

    def read_until_cutoff(
        self,
        cutoff: datetime,
        callback: Optional[Callable[[ChangeRecord], None]] = None
    ) -> ReadResult:
        """
        Read every partition from its checkpoint up to ``cutoff``.

        Args:
            cutoff: Records modified after this time end a partition's read
            callback: Called for each record before its page is committed. An
                exception from it propagates and leaves the page uncommitted.

        Returns:
            Per-partition records, stop reasons and final checkpoints
        """
        cutoff = ensure_utc(cutoff)
        partitions = self._discover_partitions()
        result = ReadResult(cutoff=cutoff)

        logger.info(
            f"Reading {len(partitions)} partitions up to cutoff {cutoff}",
            extra={
                "feed_id": self.cursor.config.feed_id,
                "partitions": partitions,
                "max_workers": self.max_workers
            }
        )

        if self.max_workers == 1 or len(partitions) <= 1:
            for partition_id in partitions:
                result.partitions[partition_id] = self._read_partition(partition_id, cutoff, callback)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="changefeed") as pool:
                futures = {
                    partition_id: pool.submit(self._read_partition, partition_id, cutoff, callback)
                    for partition_id in partitions
                }
                for partition_id, future in futures.items():
                    result.partitions[partition_id] = future.result()

        logger.info(
            f"Read {len(result.records())} records up to cutoff {cutoff}",
            extra={
                "feed_id": self.cursor.config.feed_id,
                "stop_reasons": {
                    pid: part.stop_reason.value for pid, part in result.partitions.items()
                },
                "gone_partitions": result.gone_partitions
            }
        )
        return result

    def _discover_partitions(self) -> List[str]:
        partitions = self.cursor.list_partitions()
        for stale in sorted(set(self.cursor.checkpoints()) - set(partitions)):
            logger.warning(
                f"Dropping checkpoint of vanished partition {stale}",
                extra={"feed_id": self.cursor.config.feed_id, "partition_id": stale}
            )
            self.cursor.forget(stale)
        return partitions

    def _read_partition(
        self,
        partition_id: str,
        cutoff: datetime,
        callback: Optional[Callable[[ChangeRecord], None]]
    ) -> PartitionReadResult:
        part = PartitionReadResult(partition_id=partition_id)
        try:
            iterator = self.cursor.open(partition_id)
            for record in self.cursor.advance_until_cutoff(iterator, cutoff):
                if callback is not None:
                    callback(record)
                part.records.append(record)
        except PartitionGoneError:
            logger.warning(
                f"Partition {partition_id} disappeared during read",
                extra={"feed_id": self.cursor.config.feed_id, "partition_id": partition_id}
            )
            self.cursor.forget(partition_id)
            part.stop_reason = StopReason.PARTITION_GONE
            return part

        part.stop_reason = iterator.stop_reason
        part.cutoff_exceeded = iterator.cutoff_exceeded
        part.checkpoint = iterator.checkpoint
        return part
