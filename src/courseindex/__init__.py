"""courseindex: incremental vector indexing for course-content trees.

Watches a tree of collections (courses), groups (modules) and items
(lessons), and keeps a vector index in sync through a durable priority
job queue.

Public API:
- IndexConfig
- JobQueue
- ChangeWatcher
- IndexingOrchestrator
- IndexingService
"""

from .config import IndexConfig
from .indexer.change_detector import ChangeWatcher
from .indexer.orchestrator import IndexingOrchestrator
from .indexer.queue import JobHandle, JobQueue
from .models import Action, Granularity, IndexingJob, IndexingResult, JobState
from .service import IndexingService

__all__ = [
    "IndexConfig",
    "JobQueue",
    "JobHandle",
    "ChangeWatcher",
    "IndexingOrchestrator",
    "IndexingService",
    "IndexingJob",
    "IndexingResult",
    "Granularity",
    "Action",
    "JobState",
]
