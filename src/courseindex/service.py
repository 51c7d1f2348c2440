"""Process host that wires the queue, orchestrator, watcher and maintenance together.

Everything is constructed explicitly and passed by reference; build one
`IndexingService` per process that should index a content tree.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from .config import IndexConfig
from .embeddings.base import Embedder
from .embeddings.factory import build_embedder
from .indexer.change_detector import ChangeWatcher
from .indexer.ignore import CollectionScanner
from .indexer.maintenance import MaintenanceTask
from .indexer.orchestrator import IndexingOrchestrator
from .indexer.queue import PAUSE_SERVICE_STOP, JobHandle, JobQueue
from .models import Action, Granularity, IndexingJob
from .source import FileSystemSource
from .store.base import VectorStore
from .store.sqlite_store import SqliteVectorStore

logger = logging.getLogger(__name__)


class IndexingService:
    def __init__(
        self,
        cfg: IndexConfig,
        *,
        queue: Optional[JobQueue] = None,
        store: Optional[VectorStore] = None,
        embedder: Optional[Embedder] = None,
    ) -> None:
        self.cfg = cfg
        self.queue = queue or JobQueue.from_config(cfg)
        self.queue.init()
        if store is None:
            store = SqliteVectorStore(cfg.store_path)
        store.init()
        self.store = store
        self.embedder = embedder or build_embedder(cfg)
        self.source = FileSystemSource(cfg.content_root)
        self.orchestrator = IndexingOrchestrator(
            cfg=cfg,
            store=self.store,
            embedder=self.embedder,
            progress=self.queue,
            source=self.source,
        )
        self.watcher = ChangeWatcher(cfg, self.queue)
        self.maintenance = MaintenanceTask(
            self.queue,
            interval_s=cfg.cleanup_interval_s,
            horizon_hours=cfg.cleanup_horizon_hours,
        )
        self.running = False

    def start(self, watch: bool = True) -> None:
        if self.running:
            logger.warning("Indexing service is already running")
            return
        logger.info("Starting indexing service...")
        self.queue.recover_stalled()
        reason = self.queue.pause_reason()
        if reason == PAUSE_SERVICE_STOP:
            self.queue.resume()
        elif reason is not None:
            logger.warning(f"Queue is paused ({reason}); jobs will not run until it is resumed")
        self.queue.start_workers(self.cfg.queue_concurrency, self.orchestrator.handle)
        self.running = True
        if self.cfg.reconcile_on_start:
            self.seed_collections()
        if watch:
            self.watcher.start()
        self.maintenance.start()
        logger.info("Indexing service started")

    def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping indexing service...")
        self.running = False
        self.watcher.stop()
        self.maintenance.stop()
        self.queue.pause(reason=PAUSE_SERVICE_STOP)
        self.queue.stop_workers()
        logger.info("Indexing service stopped")

    def close(self) -> None:
        self.stop()
        self.queue.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    def seed_collections(self) -> list[JobHandle]:
        """Queue a Collection index job for every collection in the content tree."""
        collections = CollectionScanner(self.source, list(self.cfg.ignore)).collections()
        if not collections:
            logger.info("No collections found under content root")
            return []
        jobs = [
            IndexingJob(
                granularity=Granularity.COLLECTION,
                action=Action.INDEX,
                collection_id=collection_id,
                priority=self.cfg.priority_other,
            )
            for collection_id in collections
        ]
        handles = self.queue.enqueue_batch(jobs)
        logger.info(f"Queued {len(handles)} collections for indexing")
        return handles

    def reindex_collection(self, collection_id: str) -> JobHandle:
        return self.watcher.force_reindex(collection_id)

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "watcher": self.watcher.status() if self.watcher.is_watching else None,
            "queue": self.queue.stats(),
        }
