"""Exception taxonomy for the indexing pipeline."""
from __future__ import annotations


class CourseIndexError(Exception):
    """Base class for all courseindex errors."""


class QueueUnavailableError(CourseIndexError):
    """The queue's backing store could not be reached or written."""


class JobNotFoundError(CourseIndexError):
    pass


class ContentParseError(CourseIndexError):
    """Structured content could not be normalized into text."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Could not parse {path}: {reason}")
        self.path = path
        self.reason = reason


class StoreError(CourseIndexError):
    """The vector store rejected a write or delete."""
