from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

import numpy as np

from ..chunking.base import Chunker
from ..chunking.recursive_chunker import RecursiveTextChunker
from ..config import IndexConfig
from ..embeddings.base import Embedder
from ..errors import ContentParseError, StoreError
from ..extractors.base import ExtractorRegistry
from ..extractors.lesson import JsonLessonExtractor
from ..extractors.markdown import MarkdownExtractor
from ..extractors.text import PlainTextExtractor
from ..hashing import hash_text
from ..layout import ContentLayout
from ..models import Action, Granularity, IndexingJob, IndexingResult, VectorRecord
from ..source import FileSystemSource
from ..store.base import VectorStore
from .ignore import matches_ignore_pattern

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def update_progress(self, job_id: int, percent: float, stage: str, message: Optional[str] = None) -> None:
        ...


def default_extractors() -> ExtractorRegistry:
    registry = ExtractorRegistry()
    registry.register(JsonLessonExtractor())
    registry.register(MarkdownExtractor())
    registry.register(PlainTextExtractor())
    return registry


@dataclass
class IndexingOrchestrator:
    """Turns queued jobs into vector store mutations.

    File jobs run read -> split -> embed -> store; Item, Group and Collection
    jobs resolve the files they cover and run each through the File path.
    Content that fails to parse is skipped with a warning. Store failures
    propagate so the queue can retry the job.
    """
    cfg: IndexConfig
    store: VectorStore
    embedder: Embedder
    progress: Optional[ProgressSink] = None
    source: Optional[FileSystemSource] = None
    layout: Optional[ContentLayout] = None
    extractors: ExtractorRegistry = field(default_factory=default_extractors)
    chunker: Optional[Chunker] = None
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        if self.source is None:
            self.source = FileSystemSource(self.cfg.content_root)
        if self.layout is None:
            self.layout = ContentLayout(self.cfg)
        if self.chunker is None:
            self.chunker = RecursiveTextChunker(
                chunk_size=self.cfg.chunk_size,
                chunk_overlap=self.cfg.chunk_overlap,
            )

    def __call__(self, job: IndexingJob) -> IndexingResult:
        return self.handle(job)

    def _report(self, job: IndexingJob, percent: float, stage: str, message: Optional[str] = None) -> None:
        if self.progress is not None and job.id is not None:
            self.progress.update_progress(job.id, percent, stage, message)

    # -- entry point -----------------------------------------------------------

    def handle(self, job: IndexingJob) -> IndexingResult:
        start = time.monotonic()
        logger.info(
            f"[index] {job.action.value} {job.granularity.value} job {job.id} "
            f"for {job.collection_id} ({job.file_path or job.group_id or job.item_id or '-'})"
        )
        self._report(job, 10, "Starting indexing")
        try:
            if job.action == Action.DELETE:
                result = self._delete(job)
            elif job.granularity == Granularity.FILE:
                result = self._index_file_job(job)
            elif job.granularity == Granularity.ITEM:
                result = self._index_item(job)
            elif job.granularity == Granularity.GROUP:
                result = self._index_group(job, job.group_id, span=(20, 80))
            elif job.granularity == Granularity.COLLECTION:
                result = self._index_collection(job)
            else:
                raise ValueError(f"Unknown granularity: {job.granularity}")
        except Exception as e:
            self._report(job, 0, "Failed", str(e))
            raise

        result.duration_seconds = time.monotonic() - start
        self._report(job, 100, "Completed")
        logger.info(
            f"[index] Job {job.id} done: {result.documents_indexed} chunks indexed, "
            f"{result.files_skipped} skipped, {result.records_deleted} deleted "
            f"in {result.duration_seconds:.2f}s"
        )
        return result

    # -- file level ------------------------------------------------------------

    def _index_file_job(self, job: IndexingJob) -> IndexingResult:
        if not job.file_path:
            raise ValueError("File path is required for file indexing")
        return self._index_file(job, job.file_path, report=True)

    def _index_file(self, job: IndexingJob, rel_path: str, report: bool = False) -> IndexingResult:
        assert self.source is not None and self.layout is not None and self.chunker is not None

        if report:
            self._report(job, 20, "Reading file")
        extractor = self.extractors.get(rel_path)
        if extractor is None:
            logger.warning(f"[index] No extractor for {rel_path}, skipping")
            return IndexingResult(files_skipped=1)
        try:
            raw = self.source.read_text(rel_path)
        except (OSError, ValueError) as e:
            logger.warning(f"[index] Could not read {rel_path}, skipping: {e}")
            return IndexingResult(files_skipped=1)
        try:
            extracted = extractor.extract(raw, rel_path)
        except ContentParseError as e:
            logger.warning(f"[index] {e}, skipping")
            return IndexingResult(files_skipped=1)

        if report:
            self._report(job, 40, "Splitting text")
        chunks = [c for c in self.chunker.chunk(extracted.text, extracted.metadata) if c.text.strip()]

        if report:
            self._report(job, 60, "Generating embeddings")
        vectors = self.embed([c.text for c in chunks])

        if report:
            self._report(job, 80, "Storing vectors")
        ref = self.layout.map_path(rel_path)
        group_id = job.group_id if job.group_id else (ref.group_id if ref else None)
        item_id = ref.item_id if ref and ref.item_id else job.item_id
        now = self.clock()
        records = []
        for i, c in enumerate(chunks):
            meta = dict(c.metadata or {})
            meta.update({
                "chunkIndex": i,
                "totalChunks": len(chunks),
                "contentHash": hash_text(c.text),
            })
            records.append(VectorRecord(
                collection_id=job.collection_id,
                group_id=group_id,
                item_id=item_id,
                file_path=rel_path,
                chunk_index=i,
                total_chunks=len(chunks),
                content=c.text,
                embedding=vectors[i],
                metadata=meta,
                indexed_at=now,
            ))
        self.store.replace_file(rel_path, records)
        logger.debug(f"[index] Indexed {rel_path}: {len(records)} chunks")
        return IndexingResult(documents_indexed=len(records))

    def embed(self, texts: list[str]) -> list[np.ndarray]:
        """Embed `texts` in batches, at most `embedding_concurrency` batches at a time.

        Output order matches input order.
        """
        if not texts:
            return []
        size = max(1, self.cfg.embedding_batch_size)
        batches = [texts[i:i + size] for i in range(0, len(texts), size)]
        if len(batches) == 1 or self.cfg.embedding_concurrency <= 1:
            results = [self.embedder.embed_texts(b) for b in batches]
        else:
            with ThreadPoolExecutor(max_workers=self.cfg.embedding_concurrency) as executor:
                results = list(executor.map(self.embedder.embed_texts, batches))
        out: list[np.ndarray] = []
        for batch, vecs in zip(batches, results):
            arr = np.asarray(vecs, dtype=np.float32)
            if arr.shape[0] != len(batch):
                raise RuntimeError(f"Embedder returned {arr.shape[0]} vectors for {len(batch)} texts")
            out.extend(arr)
        return out

    def _index_in_batch(self, job: IndexingJob, rel_path: str) -> IndexingResult:
        """Index one file inside a Group/Collection job; only store failures escape."""
        try:
            return self._index_file(job, rel_path)
        except StoreError:
            raise
        except Exception as e:
            logger.warning(f"[index] Failed to index {rel_path}, continuing: {e}")
            return IndexingResult(files_skipped=1)

    # -- item / group / collection ---------------------------------------------

    def resolve_item(self, collection_id: str, group_id: Optional[str], item_id: str) -> Optional[str]:
        assert self.source is not None and self.layout is not None
        for candidate in self.layout.item_candidates(collection_id, group_id, item_id):
            if self.source.exists(candidate):
                return candidate
        return None

    def _index_item(self, job: IndexingJob) -> IndexingResult:
        if not job.item_id:
            raise ValueError("Item id is required for item indexing")
        rel_path = job.file_path or self.resolve_item(job.collection_id, job.group_id, job.item_id)
        if rel_path is None:
            logger.warning(
                f"[index] Item {job.item_id} not found in {job.collection_id}/{job.group_id or ''}, skipping"
            )
            return IndexingResult(files_skipped=1)
        return self._index_file(job, rel_path, report=True)

    def group_items(self, collection_id: str, group_id: str) -> list[str]:
        assert self.source is not None and self.layout is not None
        base = f"{collection_id}/{group_id}"
        return [
            f"{base}/{name}" for name in self.source.list_dir(base)
            if self.layout.item_id_for(name) and self.source.exists(f"{base}/{name}")
            and not matches_ignore_pattern(f"{base}/{name}", self.cfg.ignore)
        ]

    def _index_group(
        self,
        job: IndexingJob,
        group_id: Optional[str],
        span: Optional[tuple[float, float]] = None,
    ) -> IndexingResult:
        """Index every item file of `group_id`.

        With `span`, per-item progress is reported proportionally within
        that percent range.
        """
        if not group_id:
            raise ValueError("Group id is required for group indexing")
        files = self.group_items(job.collection_id, group_id)
        result = IndexingResult()
        for i, rel_path in enumerate(files):
            if span is not None:
                lo, hi = span
                self._report(job, lo + (hi - lo) * i / len(files),
                             f"Indexing item {i + 1} of {len(files)}", group_id)
            sub = self._index_in_batch(job.with_updates(group_id=group_id), rel_path)
            result.documents_indexed += sub.documents_indexed
            result.files_skipped += sub.files_skipped
        return result

    def collection_groups(self, collection_id: str) -> list[str]:
        assert self.source is not None and self.layout is not None
        return [
            name for name in self.source.list_dir(collection_id)
            if self.layout.is_group_dir(name) and self.source.is_dir(f"{collection_id}/{name}")
            and not matches_ignore_pattern(f"{collection_id}/{name}", self.cfg.ignore)
        ]

    def _purge_missing(self, collection_id: str) -> int:
        """Delete records of files that are no longer in the content tree."""
        assert self.source is not None
        deleted = 0
        for rel_path in self.store.file_paths(collection_id):
            if not self.source.exists(rel_path):
                n = self.store.delete_by_filter({"file_path": rel_path})
                logger.info(f"[index] Removed {n} records of deleted file {rel_path}")
                deleted += n
        return deleted

    def _index_collection(self, job: IndexingJob) -> IndexingResult:
        assert self.source is not None
        result = IndexingResult()
        self._report(job, 10, "Scanning collection structure")
        if job.action == Action.REINDEX:
            result.records_deleted = self.store.delete_by_collection(job.collection_id)
            logger.info(f"[index] Cleared {result.records_deleted} records of {job.collection_id}")
        else:
            result.records_deleted = self._purge_missing(job.collection_id)

        if not self.source.is_dir(job.collection_id):
            logger.warning(f"[index] Collection directory not found: {job.collection_id}")
            return result

        groups = self.collection_groups(job.collection_id)
        for i, group_id in enumerate(groups):
            lo = 20 + 70 * i / len(groups)
            hi = 20 + 70 * (i + 1) / len(groups)
            sub = self._index_group(job, group_id, span=(lo, hi))
            result.documents_indexed += sub.documents_indexed
            result.files_skipped += sub.files_skipped

        for name in self.cfg.index_filenames:
            rel_path = f"{job.collection_id}/{name}"
            if self.source.exists(rel_path):
                sub = self._index_in_batch(job.with_updates(group_id=None), rel_path)
                result.documents_indexed += sub.documents_indexed
                result.files_skipped += sub.files_skipped
                break
        return result

    # -- delete ----------------------------------------------------------------

    def _delete(self, job: IndexingJob) -> IndexingResult:
        filter: dict[str, Any]
        if job.granularity == Granularity.COLLECTION:
            deleted = self.store.delete_by_collection(job.collection_id)
        elif job.granularity == Granularity.GROUP:
            if not job.group_id:
                raise ValueError("Group id is required for group deletion")
            deleted = self.store.delete_by_filter({"collection_id": job.collection_id, "group_id": job.group_id})
        elif job.file_path:
            deleted = self.store.delete_by_filter({"file_path": job.file_path})
        elif job.granularity == Granularity.ITEM and job.item_id:
            filter = {"collection_id": job.collection_id, "item_id": job.item_id}
            if job.group_id:
                filter["group_id"] = job.group_id
            deleted = self.store.delete_by_filter(filter)
        else:
            raise ValueError("File path is required for file deletion")
        logger.info(f"[index] Deleted {deleted} records ({job.granularity.value} {job.file_path or job.collection_id})")
        return IndexingResult(records_deleted=deleted)
