from __future__ import annotations

import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..config import IndexConfig
from ..errors import QueueUnavailableError
from ..events import EventChannel
from ..layout import ContentLayout, ContentRef, is_within, relpath
from ..models import Action, ChangeEvent, ChangeKind, Granularity, IndexingJob
from .ignore import matches_ignore_pattern
from .queue import JobHandle, JobQueue

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]


@dataclass
class _Pending:
    event: ChangeEvent
    ref: ContentRef
    timer: Any
    seq: int


@dataclass
class ChangeWatcher:
    """Filesystem change watcher using watchdog.

    Raw events are coalesced per path: every event restarts that path's
    debounce timer and replaces the buffered event, so a burst of edits
    results in a single job describing the file's final state. When the
    timer fires the buffered event becomes a File job on the queue.
    """
    cfg: IndexConfig
    queue: JobQueue
    layout: Optional[ContentLayout] = None
    events: EventChannel = field(default_factory=lambda: EventChannel("watch"))
    timer_factory: TimerFactory = threading.Timer
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        # Resolve symlinks to match watchdog's resolved paths (e.g., /tmp -> /private/tmp on macOS)
        self.root = Path(self.cfg.content_root).resolve()
        if self.layout is None:
            self.layout = ContentLayout(self.cfg)
        self._pending: dict[str, _Pending] = {}
        self._lock = threading.Lock()
        self._seq = 0
        self._stopped = False
        self._observer: Any = None

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._observer is not None:
            logger.warning("[watch] Watcher is already running")
            return
        if not self.root.is_dir():
            raise FileNotFoundError(f"Content root does not exist: {self.root}")

        logger.info(f"[watch] Starting file watcher on: {self.root}")
        if self.cfg.ignore:
            logger.info(f"[watch] Ignore patterns: {self.cfg.ignore}")
        logger.debug(f"[watch] Debounce interval: {self.cfg.debounce_ms}ms")

        with self._lock:
            self._stopped = False
        observer = Observer()
        observer.schedule(_Handler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("[watch] File watcher started - monitoring for changes")
        self.events.publish("ready", root=str(self.root))

    def stop(self) -> None:
        """Stop watching, then cancel pending timers without emitting their events.

        Changes observed after this call are ignored until `start()` is
        called again.
        """
        with self._lock:
            self._stopped = True
            observer, self._observer = self._observer, None

        if observer is not None:
            logger.info("[watch] Stopping file watcher...")
            observer.stop()
            observer.join()

        with self._lock:
            for pending in self._pending.values():
                pending.timer.cancel()
            dropped = len(self._pending)
            self._pending.clear()

        if dropped:
            logger.info(f"[watch] Discarded {dropped} pending changes")
        if observer is None:
            return
        logger.info("[watch] File watcher stopped")
        self.events.publish("stopped")

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def status(self) -> dict[str, Any]:
        with self._lock:
            pending = len(self._pending)
        return {
            "watching": self.is_watching,
            "pending_changes": pending,
            "watched_path": str(self.root),
        }

    # -- raw event intake ------------------------------------------------------

    def accepts(self, rel: str) -> bool:
        """True if a root-relative path is a watched content file."""
        if Path(rel).suffix.lower() not in self.cfg.extensions:
            return False
        if rel.count("/") > self.cfg.max_depth:
            return False
        return not matches_ignore_pattern(rel, self.cfg.ignore)

    def observe(self, kind: ChangeKind, path: str | Path) -> bool:
        """Buffer one raw change for `path` and (re)start its debounce timer.

        Returns False when the path is filtered out or cannot be mapped to a
        collection.
        """
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        p = p.resolve()
        if not is_within(self.root, p):
            logger.debug(f"[watch] Ignoring path outside content root: {p}")
            return False
        rel = relpath(self.root, p)
        if not self.accepts(rel):
            logger.debug(f"[watch] Ignoring {kind.value} event: {rel}")
            return False

        assert self.layout is not None
        ref = self.layout.map_path(rel)
        if ref is None:
            logger.warning(f"[watch] Could not extract collection from path: {rel}")
            return False

        event = ChangeEvent(
            kind=kind,
            path=rel,
            collection_id=ref.collection_id,
            group_id=ref.group_id,
            item_id=ref.item_id,
            observed_at=self.clock(),
        )
        key = str(p)
        with self._lock:
            if self._stopped:
                logger.debug(f"[watch] Watcher stopped, ignoring {kind.value}: {rel}")
                return False
            existing = self._pending.get(key)
            if existing is not None:
                existing.timer.cancel()
            self._seq += 1
            timer = self.timer_factory(
                self.cfg.debounce_ms / 1000.0, functools.partial(self._fire, key, self._seq)
            )
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._pending[key] = _Pending(event=event, ref=ref, timer=timer, seq=self._seq)
            timer.start()
        logger.debug(f"[watch] Buffered {kind.value}: {rel}")
        return True

    def scan_directory(self, dir_path: Path) -> int:
        """Buffer an Added event for every file in a newly created directory.

        When a folder is copied in with files inside, watchdog may only fire
        the directory event.
        """
        count = 0
        try:
            for file_path in sorted(Path(dir_path).rglob("*")):
                if file_path.is_file() and self.observe(ChangeKind.ADDED, file_path):
                    count += 1
        except OSError as e:
            logger.error(f"[watch] Error scanning new directory {dir_path}: {e}")
            self.events.publish("error", error=str(e), path=str(dir_path))
        logger.info(f"[watch] Directory scan complete: {Path(dir_path).name} - buffered {count} files")
        return count

    # -- dispatch ---------------------------------------------------------------

    def job_for(self, event: ChangeEvent, ref: ContentRef) -> IndexingJob:
        assert self.layout is not None
        return IndexingJob(
            granularity=Granularity.FILE,
            action=Action.DELETE if event.kind == ChangeKind.REMOVED else Action.INDEX,
            collection_id=event.collection_id,
            group_id=event.group_id,
            item_id=event.item_id,
            file_path=event.path,
            priority=self.layout.priority_for(ref),
        )

    def _fire(self, key: str, seq: int) -> None:
        with self._lock:
            pending = self._pending.get(key)
            # A newer event re-armed this path after our timer started firing.
            if self._stopped or pending is None or pending.seq != seq:
                return
            del self._pending[key]

        event = pending.event
        try:
            handle = self.queue.enqueue(self.job_for(event, pending.ref))
        except QueueUnavailableError as e:
            logger.error(f"[watch] Failed to queue indexing job for {event.path}: {e}")
            self.events.publish("error", error=str(e), event=event)
            return
        logger.info(f"[watch] Queued indexing job {handle.job_id} for {event.kind.value} on {event.path}")
        self.events.publish("queued", event=event, job_id=handle.job_id)

    def flush(self) -> int:
        """Fire every pending change now instead of waiting for its timer."""
        with self._lock:
            items = [(key, p.seq) for key, p in self._pending.items()]
            for key, _ in items:
                self._pending[key].timer.cancel()
        for key, seq in items:
            self._fire(key, seq)
        return len(items)

    def force_reindex(self, collection_id: str) -> JobHandle:
        """Enqueue a Collection reindex at manual priority, bypassing debounce."""
        job = IndexingJob(
            granularity=Granularity.COLLECTION,
            action=Action.REINDEX,
            collection_id=collection_id,
            priority=self.cfg.priority_manual,
        )
        try:
            handle = self.queue.enqueue(job)
        except QueueUnavailableError as e:
            logger.error(f"[watch] Failed to queue collection reindex for {collection_id}: {e}")
            self.events.publish("error", error=str(e), collection_id=collection_id)
            raise
        logger.info(f"[watch] Queued full collection reindex job {handle.job_id} for {collection_id}")
        self.events.publish("reindex-queued", collection_id=collection_id, job_id=handle.job_id)
        return handle


class _Handler(FileSystemEventHandler):
    """Translates watchdog callbacks into buffered change events."""

    def __init__(self, outer: ChangeWatcher) -> None:
        super().__init__()
        self.outer = outer

    def on_created(self, event):  # noqa
        if event.is_directory:
            logger.info(f"[watch] Directory created: {event.src_path}")
            self.outer.scan_directory(Path(event.src_path))
            return
        self.outer.observe(ChangeKind.ADDED, event.src_path)

    def on_modified(self, event):  # noqa
        if event.is_directory:
            return
        self.outer.observe(ChangeKind.MODIFIED, event.src_path)

    def on_deleted(self, event):  # noqa
        if event.is_directory:
            logger.info(f"[watch] Directory deleted: {event.src_path}")
            return
        self.outer.observe(ChangeKind.REMOVED, event.src_path)

    def on_moved(self, event):  # noqa
        if event.is_directory:
            logger.info(f"[watch] Directory moved: {event.src_path} -> {event.dest_path}")
            self.outer.scan_directory(Path(event.dest_path))
            return
        self.outer.observe(ChangeKind.REMOVED, event.src_path)
        self.outer.observe(ChangeKind.ADDED, event.dest_path)
