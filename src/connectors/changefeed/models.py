"""
Value types shared by change feed sources, the cursor and the reader.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeRecord:
    """One document change as delivered by the feed."""
    id: str
    modified_at: datetime
    partition_id: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "modified_at", ensure_utc(self.modified_at))


@dataclass(frozen=True)
class ChangePage:
    """
    One page of a partition's change feed.

    ``continuation`` is the resume position after the last record in the page.
    ``has_more=False`` means the currently available changes are exhausted;
    new changes may still appear later.
    """
    records: List[ChangeRecord]
    continuation: Optional[str]
    has_more: bool

    @property
    def is_empty(self) -> bool:
        return not self.records


class StopReason(str, Enum):
    """Why a partition read ended."""
    EXHAUSTED = "exhausted"
    CUTOFF_EXCEEDED = "cutoff_exceeded"
    PARTITION_GONE = "partition_gone"


@dataclass(frozen=True)
class CutoffExceeded:
    """Normal termination signal: a record past the cutoff was reached."""
    partition_id: str
    cutoff: datetime
    record_id: str
    modified_at: datetime
