from __future__ import annotations

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Optional


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class Granularity(str, Enum):
    FILE = "file"
    ITEM = "item"
    GROUP = "group"
    COLLECTION = "collection"


class Action(str, Enum):
    INDEX = "index"
    REINDEX = "reindex"
    DELETE = "delete"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # dead-lettered


@dataclass(frozen=True)
class ChangeEvent:
    """One coalesced filesystem change, mapped to logical identifiers."""
    kind: ChangeKind
    path: str
    collection_id: str
    group_id: Optional[str] = None
    item_id: Optional[str] = None
    observed_at: float = 0.0


@dataclass(frozen=True)
class IndexingJob:
    """Unit of work for the queue.

    `id`, `enqueued_at` and `delay_until` are assigned by the queue on enqueue.
    """
    granularity: Granularity
    action: Action
    collection_id: str
    group_id: Optional[str] = None
    item_id: Optional[str] = None
    file_path: Optional[str] = None
    priority: int = 0
    retry_attempt: int = 0
    id: Optional[int] = None
    enqueued_at: Optional[float] = None
    delay_until: Optional[float] = None

    @property
    def dedup_key(self) -> str:
        return "|".join((
            self.collection_id,
            self.granularity.value,
            self.action.value,
            self.file_path or "",
        ))

    def with_updates(self, **changes: Any) -> "IndexingJob":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["granularity"] = self.granularity.value
        d["action"] = self.action.value
        return d

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "IndexingJob":
        return IndexingJob(
            granularity=Granularity(data["granularity"]),
            action=Action(data["action"]),
            collection_id=data["collection_id"],
            group_id=data.get("group_id"),
            item_id=data.get("item_id"),
            file_path=data.get("file_path"),
            priority=int(data.get("priority", 0)),
            retry_attempt=int(data.get("retry_attempt", 0)),
            id=data.get("id"),
            enqueued_at=data.get("enqueued_at"),
            delay_until=data.get("delay_until"),
        )


@dataclass(frozen=True)
class ProgressRecord:
    job_id: int
    percent: float
    stage: str
    message: Optional[str] = None
    at: float = 0.0


@dataclass(frozen=True)
class DeadLetterEntry:
    original_job: IndexingJob
    error_message: str
    error_trace: Optional[str] = None
    failed_at: float = 0.0


@dataclass(frozen=True)
class VectorRecord:
    collection_id: str
    file_path: str
    chunk_index: int
    total_chunks: int
    content: str
    embedding: Any  # np.ndarray (float32)
    group_id: Optional[str] = None
    item_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    indexed_at: float = 0.0
    version: int = 1


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    @property
    def drained(self) -> bool:
        """True when nothing is waiting, delayed or running."""
        return self.waiting == 0 and self.active == 0 and self.delayed == 0


@dataclass
class IndexingResult:
    """Outcome of one orchestrated job."""
    success: bool = True
    documents_indexed: int = 0
    files_skipped: int = 0
    records_deleted: int = 0
    duration_seconds: float = 0.0
