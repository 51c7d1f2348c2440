from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib


def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


DEFAULT_IGNORE = [
    ".git/**",
    "**/.git/**",
    "**/node_modules/**",
    "**/*.test.*",
    "**/*.spec.*",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class IndexConfig:
    """Configuration for a content tree and its indexing pipeline.

    Paths given as strings are expanded (~ and environment variables).
    """

    content_root: Path
    index_dir: Path

    ignore: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    max_depth: int = 5
    extensions: tuple[str, ...] = (".md", ".json", ".txt")

    def __post_init__(self):
        if isinstance(self.content_root, str):
            object.__setattr__(self, "content_root", Path(_expand(self.content_root)))
        if isinstance(self.index_dir, str):
            object.__setattr__(self, "index_dir", Path(_expand(self.index_dir)))
        object.__setattr__(self, "extensions", tuple(e.lower() for e in self.extensions))

    # Layout conventions
    group_pattern: str = r"^module-[\w.-]+$"
    item_pattern: str = r"^lesson-(\d+-\d+)\.(?:md|json|txt)$"
    item_filename: str = "lesson-{item_id}"
    item_suffixes: tuple[str, ...] = (".json", ".md", ".txt")
    index_filenames: tuple[str, ...] = ("index.json", "index.md")

    # Priorities (higher runs first)
    priority_index: int = 10
    priority_item: int = 5
    priority_other: int = 1
    priority_manual: int = 20
    priority_replay: int = 15

    # Watcher
    debounce_ms: int = 5000

    # Queue
    queue_concurrency: int = 3
    max_attempts: int = 3
    collection_max_attempts: int = 5
    backoff_base_ms: int = 5000
    backoff_jitter: float = 0.1
    immediate_priority_threshold: int = 10
    default_delay_ms: int = 1000
    collection_reindex_delay_ms: int = 10000
    dead_letter_cap: int = 1000
    progress_ttl_s: int = 300
    poll_interval_s: float = 0.5

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Embeddings
    embedding_provider: str = "sentence_transformers"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_device: str = "cpu"  # cpu|cuda|mps
    embedding_batch_size: int = 16
    embedding_concurrency: int = 2
    ollama_endpoint: str = "http://127.0.0.1:11434/api/embed"

    # Maintenance
    cleanup_interval_s: float = 3600.0
    cleanup_horizon_hours: float = 24.0
    reconcile_on_start: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def queue_path(self) -> Path:
        return self.index_dir / "queue.sqlite"

    @property
    def store_path(self) -> Path:
        return self.index_dir / "vectors.sqlite"

    @staticmethod
    def from_toml(path: str | Path) -> "IndexConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        content = data.get("content", {})
        index = data.get("index", {})
        layout = data.get("layout", {})
        prio = data.get("priority", {})
        watcher = data.get("watcher", {})
        queue = data.get("queue", {})
        chunking = data.get("chunking", {})
        emb = data.get("embeddings", {})
        maint = data.get("maintenance", {})
        log = data.get("logging", {})

        content_root = Path(_expand(content["root"])).resolve()
        index_dir = Path(_expand(index["dir"])).resolve()

        debounce_ms = int(watcher.get("debounce_ms", 5000))
        if debounce_ms < 0 or debounce_ms > 600_000:
            raise ValueError(f"Invalid debounce_ms: {debounce_ms}. Must be between 0 and 600000.")

        max_depth = int(content.get("max_depth", 5))
        if max_depth < 1 or max_depth > 64:
            raise ValueError(f"Invalid max_depth: {max_depth}. Must be between 1 and 64.")

        concurrency = int(queue.get("concurrency", 3))
        if concurrency <= 0 or concurrency > 64:
            raise ValueError(f"Invalid concurrency: {concurrency}. Must be between 1 and 64.")

        max_attempts = int(queue.get("max_attempts", 3))
        collection_max_attempts = int(queue.get("collection_max_attempts", 5))
        for name, value in (("max_attempts", max_attempts), ("collection_max_attempts", collection_max_attempts)):
            if value < 1 or value > 100:
                raise ValueError(f"Invalid {name}: {value}. Must be between 1 and 100.")

        chunk_size = int(chunking.get("chunk_size", 1000))
        chunk_overlap = int(chunking.get("chunk_overlap", 200))
        if chunk_size < 50 or chunk_size > 50000:
            raise ValueError(f"Invalid chunk_size: {chunk_size}. Must be between 50 and 50000.")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(f"Invalid chunk_overlap: {chunk_overlap}. Must be between 0 and chunk_size - 1.")

        batch_size = int(emb.get("batch_size", 16))
        if batch_size <= 0 or batch_size > 10000:
            raise ValueError(f"Invalid batch_size: {batch_size}. Must be between 1 and 10000.")

        device = emb.get("device", "cpu")
        valid_devices = ("cpu", "cuda", "mps")
        if device not in valid_devices:
            raise ValueError(f"Invalid device: {device}. Must be one of {valid_devices}.")

        log_level = str(log.get("level", "INFO")).upper()

        return IndexConfig(
            content_root=content_root,
            index_dir=index_dir,
            ignore=list(content.get("ignore", DEFAULT_IGNORE)),
            max_depth=max_depth,
            extensions=tuple(content.get("extensions", (".md", ".json", ".txt"))),
            group_pattern=layout.get("group_pattern", r"^module-[\w.-]+$"),
            item_pattern=layout.get("item_pattern", r"^lesson-(\d+-\d+)\.(?:md|json|txt)$"),
            item_filename=layout.get("item_filename", "lesson-{item_id}"),
            item_suffixes=tuple(layout.get("item_suffixes", (".json", ".md", ".txt"))),
            index_filenames=tuple(layout.get("index_filenames", ("index.json", "index.md"))),
            priority_index=int(prio.get("index", 10)),
            priority_item=int(prio.get("item", 5)),
            priority_other=int(prio.get("other", 1)),
            priority_manual=int(prio.get("manual", 20)),
            priority_replay=int(prio.get("replay", 15)),
            debounce_ms=debounce_ms,
            queue_concurrency=concurrency,
            max_attempts=max_attempts,
            collection_max_attempts=collection_max_attempts,
            backoff_base_ms=int(queue.get("backoff_base_ms", 5000)),
            backoff_jitter=float(queue.get("backoff_jitter", 0.1)),
            immediate_priority_threshold=int(queue.get("immediate_priority_threshold", 10)),
            default_delay_ms=int(queue.get("default_delay_ms", 1000)),
            collection_reindex_delay_ms=int(queue.get("collection_reindex_delay_ms", 10000)),
            dead_letter_cap=int(queue.get("dead_letter_cap", 1000)),
            progress_ttl_s=int(queue.get("progress_ttl_s", 300)),
            poll_interval_s=float(queue.get("poll_interval_s", 0.5)),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            embedding_provider=emb.get("provider", "sentence_transformers"),
            embedding_model=emb.get("model", "BAAI/bge-small-en-v1.5"),
            embedding_device=device,
            embedding_batch_size=batch_size,
            embedding_concurrency=int(emb.get("concurrency", 2)),
            ollama_endpoint=emb.get("ollama_endpoint", "http://127.0.0.1:11434/api/embed"),
            cleanup_interval_s=float(maint.get("cleanup_interval_s", 3600.0)),
            cleanup_horizon_hours=float(maint.get("cleanup_horizon_hours", 24.0)),
            reconcile_on_start=bool(maint.get("reconcile_on_start", True)),
            log_level=log_level,
            log_file=log.get("file"),
        )
