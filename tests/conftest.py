from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from courseindex.config import IndexConfig
from courseindex.indexer.queue import JobQueue
from courseindex.store.sqlite_store import SqliteVectorStore


class HashEmbedder:
    """Deterministic embedder: each text maps to a normalized hash vector."""
    model_id = "hash-test"

    def __init__(self, dims: int = 16) -> None:
        self.dims = dims
        self.calls = 0
        self._lock = threading.Lock()

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        with self._lock:
            self.calls += 1
        rows = []
        for t in texts:
            digest = hashlib.blake2b(t.encode("utf-8"), digest_size=self.dims).digest()
            v = np.frombuffer(digest, dtype=np.uint8).astype(np.float32) + 1.0
            rows.append(v / np.linalg.norm(v))
        return np.vstack(rows) if rows else np.zeros((0, self.dims), dtype=np.float32)

    def embed_text(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


LESSON_1_1 = {
    "title": "Variables",
    "description": "Naming and storing values",
    "content": "A variable is a name bound to a value. " * 20,
    "codeExample": {"code": "x = 1\nprint(x)", "explanation": "Binds x and prints it"},
    "keyTakeaways": ["names point to objects", "rebinding is cheap"],
    "type": "theory",
    "duration": 10,
}

LESSON_1_2_MD = """---
title: Loops
type: practice
duration: 15
---
Use for loops to iterate over sequences. A while loop repeats until its condition is false.
"""

LESSON_2_1 = {
    "title": "Decorators",
    "content": "Decorators wrap functions to add behaviour.",
    "type": "theory",
}

COURSE_INDEX = {
    "title": "Intro to Python",
    "description": "A first course",
    "modules": [{"id": "module-1-basics", "title": "Basics"}, {"id": "module-2-advanced", "title": "Advanced"}],
}


def write_course(root: Path, collection: str = "intro") -> Path:
    """Create a small course tree under `root` and return the collection dir."""
    course = root / collection
    (course / "module-1-basics").mkdir(parents=True, exist_ok=True)
    (course / "module-2-advanced").mkdir(parents=True, exist_ok=True)
    (course / "index.json").write_text(json.dumps(COURSE_INDEX), encoding="utf-8")
    (course / "module-1-basics" / "lesson-1-1.json").write_text(json.dumps(LESSON_1_1), encoding="utf-8")
    (course / "module-1-basics" / "lesson-1-2.md").write_text(LESSON_1_2_MD, encoding="utf-8")
    (course / "module-2-advanced" / "lesson-2-1.json").write_text(json.dumps(LESSON_2_1), encoding="utf-8")
    return course


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cfg(tmp_path: Path) -> IndexConfig:
    content = tmp_path / "content"
    content.mkdir()
    return IndexConfig(
        content_root=content,
        index_dir=tmp_path / "index",
        debounce_ms=50,
        default_delay_ms=0,
        collection_reindex_delay_ms=0,
        backoff_base_ms=10,
        backoff_jitter=0.0,
        poll_interval_s=0.02,
        chunk_size=200,
        chunk_overlap=40,
        embedding_batch_size=4,
        embedding_concurrency=2,
    )


@pytest.fixture
def queue(cfg: IndexConfig, clock: FakeClock):
    """Queue on a fake clock; drive it with claim/complete/fail."""
    q = JobQueue.from_config(cfg, default_delay_ms=1000, collection_reindex_delay_ms=10000,
                             backoff_base_ms=5000, clock=clock)
    q.init()
    yield q
    q.close()


@pytest.fixture
def live_queue(cfg: IndexConfig):
    """Queue on the real clock with short delays, for worker tests."""
    q = JobQueue.from_config(cfg)
    q.init()
    yield q
    q.close()


@pytest.fixture
def store(cfg: IndexConfig):
    s = SqliteVectorStore(cfg.store_path)
    s.init()
    yield s
    s.close()


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()
