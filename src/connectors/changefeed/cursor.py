"""
Per-partition change feed cursor with checkpointing and a read cutoff.

Must guarantee:
1. Records of a partition are emitted in the order the store committed them
2. A checkpoint advances only after its page was fully consumed
3. No record modified after the cutoff is ever emitted
4. Transient read failures are retried with the unchanged checkpoint
5. A vanished partition is surfaced immediately, never retried
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional
import logging
import threading
import time

from prometheus_client import Counter, Histogram
from tenacity import Retrying, RetryCallState, stop_after_attempt, wait_exponential, retry_if_exception_type

from .checkpoint_store import CheckpointStore
from .errors import PartitionGoneError, TransientReadError
from .models import ChangePage, ChangeRecord, CutoffExceeded, StopReason, ensure_utc
from .source import ChangeFeedSource

logger = logging.getLogger(__name__)

pages_read_total = Counter(
    'changefeed_pages_read_total',
    'Total change feed pages read',
    ['partition', 'status']
)

records_emitted_total = Counter(
    'changefeed_records_emitted_total',
    'Total change feed records emitted before the cutoff',
    ['partition']
)

read_retries_total = Counter(
    'changefeed_read_retries_total',
    'Total retried change feed reads',
    ['partition', 'error_type']
)

page_read_seconds = Histogram(
    'changefeed_page_read_seconds',
    'Time to read one change feed page',
    ['partition']
)


@dataclass
class ChangeFeedConfig:
    """Configuration for a change feed cursor."""
    feed_id: str = "default"
    start_time: Optional[datetime] = None  # None reads from the beginning of the feed
    max_item_count: Optional[int] = None  # None lets the source pick the page size
    max_retries: int = 3  # Extra attempts after a TransientReadError
    retry_backoff_multiplier: float = 1.0  # Exponential backoff: multiplier * 2^attempt seconds
    max_retry_delay: float = 30.0

    def __post_init__(self):
        """Validate configuration values."""
        if not self.feed_id:
            raise ValueError("feed_id must be non-empty")
        if self.max_item_count is not None and self.max_item_count <= 0:
            raise ValueError("max_item_count must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_multiplier < 0:
            raise ValueError("retry_backoff_multiplier must be non-negative")
        if self.max_retry_delay < 0:
            raise ValueError("max_retry_delay must be non-negative")
        self.start_time = ensure_utc(self.start_time)

    @classmethod
    def from_settings(cls, settings, start_time: Optional[datetime] = None) -> "ChangeFeedConfig":
        """Build from ``config.settings.ChangeFeedSettings``."""
        return cls(
            feed_id=settings.feed_id,
            start_time=start_time,
            max_item_count=settings.max_item_count,
            max_retries=settings.max_retries,
            retry_backoff_multiplier=settings.retry_backoff_multiplier,
            max_retry_delay=settings.max_retry_delay
        )


class PageIterator:
    """
    Read position over one partition.

    ``checkpoint`` is the last committed continuation; it only moves through
    ``ChangeFeedCursor.commit``. Owned by a single task.
    """

    def __init__(self, partition_id: str, start_time: Optional[datetime], checkpoint: Optional[str]):
        self.partition_id = partition_id
        self.start_time = start_time
        self.checkpoint = checkpoint
        self.has_more = True
        self.records_committed = 0
        self.stop_reason: Optional[StopReason] = None
        self.cutoff_exceeded: Optional[CutoffExceeded] = None

    def __repr__(self) -> str:
        return (
            f"PageIterator(partition_id={self.partition_id!r}, checkpoint={self.checkpoint!r}, "
            f"has_more={self.has_more}, stop_reason={self.stop_reason})"
        )


class ChangeFeedCursor:
    """
    Tracks a checkpoint per partition and drives bounded reads over a source.

    Thread Safety: YES for the checkpoint map. Each PageIterator must be
    driven by one task at a time.

    Example:
        >>> cursor = ChangeFeedCursor(source, ChangeFeedConfig(start_time=run_started))
        >>> iterator = cursor.open("0")
        >>> for record in cursor.advance_until_cutoff(iterator, cutoff):
        ...     handle(record)
        >>> iterator.stop_reason
        <StopReason.CUTOFF_EXCEEDED: 'cutoff_exceeded'>
    """

    def __init__(
        self,
        source: ChangeFeedSource,
        config: Optional[ChangeFeedConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None
    ):
        """
        Initialize cursor.

        Args:
            source: Change feed source to read from
            config: Cursor configuration
            checkpoint_store: Optional store; committed checkpoints are written
                through to it and loaded from it on construction

        Raises:
            TypeError: If source is not a ChangeFeedSource
            CheckpointError: If stored checkpoints cannot be loaded
        """
        if not isinstance(source, ChangeFeedSource):
            raise TypeError("source must be a ChangeFeedSource instance")

        self.source = source
        self.config = config or ChangeFeedConfig()
        self.checkpoint_store = checkpoint_store
        self._lock = threading.Lock()
        self._checkpoints: Dict[str, Optional[str]] = {}

        if checkpoint_store is not None:
            self._checkpoints.update(checkpoint_store.load_all(self.config.feed_id))

        logger.info(
            f"Initialized ChangeFeedCursor for feed {self.config.feed_id}",
            extra={
                "feed_id": self.config.feed_id,
                "start_time": self.config.start_time,
                "max_item_count": self.config.max_item_count,
                "resumed_partitions": sorted(self._checkpoints),
                "durable_checkpoints": checkpoint_store is not None
            }
        )

    def checkpoint(self, partition_id: str) -> Optional[str]:
        """Current committed checkpoint for a partition (None = feed origin)."""
        with self._lock:
            return self._checkpoints.get(partition_id)

    def checkpoints(self) -> Dict[str, Optional[str]]:
        """Copy of all committed checkpoints, for external persistence."""
        with self._lock:
            return dict(self._checkpoints)

    def forget(self, partition_id: str) -> None:
        """Drop a stale checkpoint, e.g. after the partition disappeared."""
        with self._lock:
            self._checkpoints.pop(partition_id, None)
        if self.checkpoint_store is not None:
            self.checkpoint_store.delete_checkpoint(self.config.feed_id, partition_id)
        logger.info(
            f"Forgot checkpoint for partition {partition_id}",
            extra={"feed_id": self.config.feed_id, "partition_id": partition_id}
        )

    def list_partitions(self) -> List[str]:
        """Partitions currently listed by the source, retrying transient failures."""
        return self._call_with_retry("*", self.source.list_partitions)

    def open(
        self,
        partition_id: str,
        start_time: Optional[datetime] = None,
        checkpoint: Optional[str] = None
    ) -> PageIterator:
        """
        Begin, or resume, a read over one partition.

        Args:
            partition_id: Partition to read
            start_time: Read changes modified at or after this time; defaults to
                the configured start time
            checkpoint: Resume position; defaults to the cursor's committed
                checkpoint for the partition

        Raises:
            PartitionGoneError: If the partition no longer exists
        """
        partitions = self.list_partitions()
        if partition_id not in partitions:
            logger.warning(
                f"Partition {partition_id} is not listed by the source",
                extra={"feed_id": self.config.feed_id, "partition_id": partition_id}
            )
            raise PartitionGoneError(partition_id)

        if checkpoint is None:
            checkpoint = self.checkpoint(partition_id)
        start_time = ensure_utc(start_time) if start_time is not None else self.config.start_time

        logger.debug(
            f"Opened partition {partition_id}",
            extra={
                "feed_id": self.config.feed_id,
                "partition_id": partition_id,
                "has_checkpoint": checkpoint is not None,
                "start_time": start_time
            }
        )
        return PageIterator(partition_id, start_time, checkpoint)

    def next_page(self, iterator: PageIterator) -> ChangePage:
        """
        Read the next page from the iterator's committed checkpoint.

        Does not advance anything: calling it again before ``commit`` returns
        the same records. An empty page keeps the checkpoint unchanged.

        Raises:
            PartitionGoneError: Immediately, without retrying
            TransientReadError: After the configured retries are exhausted
        """
        partition_id = iterator.partition_id
        started = time.monotonic()
        try:
            page = self._call_with_retry(
                partition_id,
                self.source.read_change_page,
                partition_id,
                iterator.start_time,
                iterator.checkpoint,
                self.config.max_item_count
            )
        except PartitionGoneError:
            pages_read_total.labels(partition=partition_id, status='partition_gone').inc()
            raise
        except Exception:
            pages_read_total.labels(partition=partition_id, status='error').inc()
            raise

        page_read_seconds.labels(partition=partition_id).observe(time.monotonic() - started)
        pages_read_total.labels(partition=partition_id, status='success').inc()

        if page.is_empty and page.continuation != iterator.checkpoint:
            page = ChangePage(records=[], continuation=iterator.checkpoint, has_more=page.has_more)

        logger.debug(
            f"Read page of {len(page.records)} records from partition {partition_id}",
            extra={
                "feed_id": self.config.feed_id,
                "partition_id": partition_id,
                "records": len(page.records),
                "has_more": page.has_more
            }
        )
        return page

    def commit(self, iterator: PageIterator, page: ChangePage) -> None:
        """
        Record a fully processed page's continuation as the partition checkpoint.

        Writes through to the checkpoint store first; if that fails the
        in-process checkpoint is left where it was.

        Raises:
            CheckpointError: If the durable store rejects the checkpoint
        """
        records_committed = iterator.records_committed + len(page.records)
        if page.continuation is not None and page.continuation != iterator.checkpoint:
            if self.checkpoint_store is not None:
                self.checkpoint_store.save_checkpoint(
                    feed_id=self.config.feed_id,
                    partition_id=iterator.partition_id,
                    continuation=page.continuation,
                    last_modified_at=page.records[-1].modified_at if page.records else None,
                    records_processed=records_committed
                )
            with self._lock:
                self._checkpoints[iterator.partition_id] = page.continuation
            iterator.checkpoint = page.continuation

        iterator.records_committed = records_committed
        iterator.has_more = page.has_more

    def advance_until_cutoff(self, iterator: PageIterator, cutoff: datetime) -> Iterator[ChangeRecord]:
        """
        Lazily emit records in received order until the cutoff or exhaustion.

        The first record modified strictly after ``cutoff`` is not emitted and
        ends the read; the rest of its page and the page's checkpoint are
        discarded. A page is committed only once the caller has consumed its
        last record, so closing the generator early never advances the
        checkpoint. ``iterator.stop_reason`` tells how the read ended.
        """
        cutoff = ensure_utc(cutoff)
        partition_id = iterator.partition_id
        iterator.stop_reason = None
        iterator.cutoff_exceeded = None
        # re-poll past a previous exhaustion
        iterator.has_more = True

        while iterator.has_more:
            page = self.next_page(iterator)

            for record in page.records:
                if record.modified_at > cutoff:
                    iterator.cutoff_exceeded = CutoffExceeded(
                        partition_id=partition_id,
                        cutoff=cutoff,
                        record_id=record.id,
                        modified_at=record.modified_at
                    )
                    iterator.stop_reason = StopReason.CUTOFF_EXCEEDED
                    logger.info(
                        f"Received record modified at {record.modified_at} > read cutoff {cutoff}, "
                        f"stopping partition {partition_id}",
                        extra={
                            "feed_id": self.config.feed_id,
                            "partition_id": partition_id,
                            "record_id": record.id
                        }
                    )
                    return

                records_emitted_total.labels(partition=partition_id).inc()
                yield record

            self.commit(iterator, page)

        iterator.stop_reason = StopReason.EXHAUSTED
        logger.debug(
            f"Partition {partition_id} exhausted",
            extra={
                "feed_id": self.config.feed_id,
                "partition_id": partition_id,
                "records_committed": iterator.records_committed
            }
        )

    def _call_with_retry(self, partition_id: str, fn, *args):
        """Call ``fn`` retrying TransientReadError with exponential backoff."""

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            read_retries_total.labels(
                partition=partition_id,
                error_type=type(error).__name__
            ).inc()
            logger.warning(
                f"Transient read error, retrying (attempt {retry_state.attempt_number}/"
                f"{self.config.max_retries + 1}): {error}",
                extra={
                    "feed_id": self.config.feed_id,
                    "partition_id": partition_id,
                    "attempt": retry_state.attempt_number,
                    "error_type": type(error).__name__
                }
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_multiplier,
                max=self.config.max_retry_delay
            ),
            retry=retry_if_exception_type(TransientReadError),
            before_sleep=before_sleep,
            reraise=True
        )
        return retrying(fn, *args)
