"""
Checkpoint stores for change feed continuation tokens.

InMemoryCheckpointStore keeps checkpoints for the life of the process.
SqlCheckpointStore persists them (PostgreSQL in production, SQLite for local
runs) so a restarted reader resumes where the last committed page ended.
"""

from abc import ABC, abstractmethod
from sqlalchemy import create_engine, Column, String, Text, DateTime, BigInteger, Integer, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, List
import logging
import threading
from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .errors import CheckpointError
from .models import ensure_utc

logger = logging.getLogger(__name__)

Base = declarative_base()

checkpoint_saves_total = Counter(
    'changefeed_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'changefeed_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Columns hold naive UTC so SQLite and PostgreSQL round-trip identically
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ChangeFeedCheckpoint(Base):
    """
    Change feed checkpoint model.

    Stores:
    - feed_id: Logical feed (one reader deployment)
    - partition_id: Partition within the feed
    - continuation: Opaque continuation token
    - last_modified_at: Modification time of the last committed record
    - records_processed: Total records committed for the partition
    - created_at: First checkpoint time
    - updated_at: Last update time
    """
    __tablename__ = "change_feed_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    feed_id = Column(String(255), nullable=False, index=True)
    partition_id = Column(String(255), nullable=False)
    continuation = Column(Text, nullable=False)
    last_modified_at = Column(DateTime, nullable=True)
    records_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=_utcnow_naive)
    updated_at = Column(DateTime, default=_utcnow_naive, onupdate=_utcnow_naive)

    __table_args__ = (
        UniqueConstraint('feed_id', 'partition_id', name='uq_change_feed_checkpoints_feed_partition'),
        Index('idx_change_feed_checkpoints_updated_at', 'updated_at'),
    )


@dataclass(frozen=True)
class StoredCheckpoint:
    """Detached view of a persisted checkpoint row."""
    feed_id: str
    partition_id: str
    continuation: str
    last_modified_at: Optional[datetime]
    records_processed: int


class CheckpointStore(ABC):
    """Persistence boundary for per-partition checkpoints."""

    @abstractmethod
    def save_checkpoint(
        self,
        feed_id: str,
        partition_id: str,
        continuation: str,
        last_modified_at: Optional[datetime] = None,
        records_processed: int = 0
    ) -> None:
        """Insert or update the checkpoint for ``(feed_id, partition_id)``."""

    @abstractmethod
    def load_checkpoint(self, feed_id: str, partition_id: str) -> Optional[str]:
        """Return the stored continuation, or None."""

    @abstractmethod
    def load_all(self, feed_id: str) -> Dict[str, str]:
        """Return ``{partition_id: continuation}`` for every partition of a feed."""

    @abstractmethod
    def delete_checkpoint(self, feed_id: str, partition_id: str) -> bool:
        """Delete a checkpoint. Returns False if there was none."""

    def close(self) -> None:
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """
    Process-local checkpoint store.

    Checkpoints are lost when the process exits; use SqlCheckpointStore when a
    crashed reader must resume without re-reading from the feed origin.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[tuple, StoredCheckpoint] = {}

    def save_checkpoint(
        self,
        feed_id: str,
        partition_id: str,
        continuation: str,
        last_modified_at: Optional[datetime] = None,
        records_processed: int = 0
    ) -> None:
        if not continuation:
            raise CheckpointError("Continuation token must be a non-empty string")
        with self._lock:
            previous = self._rows.get((feed_id, partition_id))
            if last_modified_at is None and previous is not None:
                last_modified_at = previous.last_modified_at
            self._rows[(feed_id, partition_id)] = StoredCheckpoint(
                feed_id=feed_id,
                partition_id=partition_id,
                continuation=continuation,
                last_modified_at=ensure_utc(last_modified_at),
                records_processed=records_processed
            )
        checkpoint_saves_total.labels(status='success').inc()

    def load_checkpoint(self, feed_id: str, partition_id: str) -> Optional[str]:
        with self._lock:
            row = self._rows.get((feed_id, partition_id))
        checkpoint_loads_total.labels(status='success' if row else 'not_found').inc()
        return row.continuation if row else None

    def load_all(self, feed_id: str) -> Dict[str, str]:
        with self._lock:
            return {
                row.partition_id: row.continuation
                for (fid, _), row in self._rows.items()
                if fid == feed_id
            }

    def delete_checkpoint(self, feed_id: str, partition_id: str) -> bool:
        with self._lock:
            return self._rows.pop((feed_id, partition_id), None) is not None

    def get_all_checkpoints(self) -> List[StoredCheckpoint]:
        with self._lock:
            return list(self._rows.values())


class SqlCheckpointStore(CheckpointStore):
    """
    SQL-backed checkpoint store.

    Features:
    - ACID transactions (PostgreSQL, or SQLite for local runs)
    - Automatic retry on transient failures
    - Connection pooling
    - Metrics instrumentation

    Thread Safety: YES (SQLAlchemy session per call)

    Example:
        >>> store = SqlCheckpointStore("sqlite:///checkpoints.db")
        >>> store.save_checkpoint("orders-feed", "0", "42")
        >>> store.load_checkpoint("orders-feed", "0")
        '42'
    """

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL
            pool_size: Connection pool size (ignored for SQLite)
            max_overflow: Max overflow connections (ignored for SQLite)

        Raises:
            CheckpointError: If database connection fails
        """
        try:
            engine_options = {"pool_pre_ping": True, "echo": False}
            if not database_url.startswith("sqlite"):
                engine_options.update(
                    pool_size=pool_size,
                    max_overflow=max_overflow,
                    pool_recycle=3600
                )
            self.engine = create_engine(database_url, **engine_options)

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False
            )

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("SqlCheckpointStore initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize SqlCheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _upsert(
        self,
        feed_id: str,
        partition_id: str,
        continuation: str,
        last_modified_at: Optional[datetime],
        records_processed: int
    ) -> None:
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(ChangeFeedCheckpoint).filter_by(
                    feed_id=feed_id,
                    partition_id=partition_id
                ).with_for_update().first()

                if checkpoint:
                    checkpoint.continuation = continuation
                    checkpoint.records_processed = records_processed
                    checkpoint.updated_at = _utcnow_naive()
                    if last_modified_at:
                        checkpoint.last_modified_at = _naive_utc(last_modified_at)
                else:
                    session.add(ChangeFeedCheckpoint(
                        feed_id=feed_id,
                        partition_id=partition_id,
                        continuation=continuation,
                        last_modified_at=_naive_utc(last_modified_at),
                        records_processed=records_processed
                    ))
        finally:
            session.close()

    def save_checkpoint(
        self,
        feed_id: str,
        partition_id: str,
        continuation: str,
        last_modified_at: Optional[datetime] = None,
        records_processed: int = 0
    ) -> None:
        """
        Save checkpoint (upsert).

        Args:
            feed_id: Feed identifier
            partition_id: Partition identifier
            continuation: Continuation token to resume from
            last_modified_at: Modification time of the last committed record
            records_processed: Total records committed so far

        Raises:
            CheckpointError: If save fails after retries
        """
        if not continuation:
            raise CheckpointError("Continuation token must be a non-empty string")

        try:
            self._upsert(feed_id, partition_id, continuation, last_modified_at, records_processed)
        except IntegrityError as e:
            logger.error(
                f"Integrity error saving checkpoint: {e}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Integrity error: {e}") from e
        except SQLAlchemyError as e:
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            checkpoint_saves_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint for feed {feed_id}, partition {partition_id}",
            extra={
                "feed_id": feed_id,
                "partition_id": partition_id,
                "records_processed": records_processed
            }
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError),
        reraise=True
    )
    def _query(self, feed_id: str, partition_id: Optional[str] = None) -> List[StoredCheckpoint]:
        session: Session = self.SessionLocal()
        try:
            query = session.query(ChangeFeedCheckpoint).filter_by(feed_id=feed_id)
            if partition_id is not None:
                query = query.filter_by(partition_id=partition_id)
            return [self._detach(row) for row in query.all()]
        finally:
            session.close()

    def load_checkpoint(self, feed_id: str, partition_id: str) -> Optional[str]:
        """
        Load checkpoint for feed+partition.

        Returns:
            Continuation token if one exists, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            rows = self._query(feed_id, partition_id)
        except SQLAlchemyError as e:
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        if not rows:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(
                f"No checkpoint found for feed {feed_id}, partition {partition_id}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            return None

        checkpoint_loads_total.labels(status='success').inc()
        return rows[0].continuation

    def load_all(self, feed_id: str) -> Dict[str, str]:
        try:
            rows = self._query(feed_id)
        except SQLAlchemyError as e:
            logger.error(f"Database error loading checkpoints: {e}", extra={"feed_id": feed_id})
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_loads_total.labels(status='success').inc()
        logger.info(
            f"Loaded {len(rows)} checkpoints for feed {feed_id}",
            extra={"feed_id": feed_id, "partitions": [row.partition_id for row in rows]}
        )
        return {row.partition_id: row.continuation for row in rows}

    def delete_checkpoint(self, feed_id: str, partition_id: str) -> bool:
        """
        Delete checkpoint (used when a partition disappears).

        Returns:
            True if a checkpoint was deleted, False if none existed
        """
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(ChangeFeedCheckpoint).filter_by(
                    feed_id=feed_id,
                    partition_id=partition_id
                ).first()

                if checkpoint is None:
                    logger.debug(
                        f"No checkpoint to delete for feed {feed_id}, partition {partition_id}",
                        extra={"feed_id": feed_id, "partition_id": partition_id}
                    )
                    return False

                session.delete(checkpoint)

            logger.info(
                f"Deleted checkpoint for feed {feed_id}, partition {partition_id}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            return True

        except SQLAlchemyError as e:
            logger.error(
                f"Database error deleting checkpoint: {e}",
                extra={"feed_id": feed_id, "partition_id": partition_id}
            )
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            session.close()

    def get_all_checkpoints(self) -> List[StoredCheckpoint]:
        """Get all checkpoints across feeds (for admin tooling)."""
        session: Session = self.SessionLocal()
        try:
            return [self._detach(row) for row in session.query(ChangeFeedCheckpoint).all()]
        except SQLAlchemyError as e:
            logger.error(f"Database error loading all checkpoints: {e}")
            raise CheckpointError(f"Database error: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _detach(row: ChangeFeedCheckpoint) -> StoredCheckpoint:
        return StoredCheckpoint(
            feed_id=row.feed_id,
            partition_id=row.partition_id,
            continuation=row.continuation,
            last_modified_at=ensure_utc(row.last_modified_at),
            records_processed=row.records_processed or 0
        )

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("SqlCheckpointStore connections closed")
