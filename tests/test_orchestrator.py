"""Tests for job dispatch, chunk/embed/store and delete semantics."""
from __future__ import annotations

import numpy as np
import pytest

from conftest import HashEmbedder, write_course
from courseindex.errors import StoreError
from courseindex.indexer.orchestrator import IndexingOrchestrator
from courseindex.models import Action, Granularity, IndexingJob


class RecordingProgress:
    def __init__(self) -> None:
        self.updates = []

    def update_progress(self, job_id, percent, stage, message=None):
        self.updates.append((job_id, percent, stage, message))

    @property
    def percents(self):
        return [u[1] for u in self.updates]


class BrokenStore:
    def replace_file(self, file_path, records):
        raise StoreError("disk full")

    def delete_by_collection(self, collection_id):
        return 0

    def delete_by_filter(self, filter):
        raise StoreError("disk full")


def job(granularity, action=Action.INDEX, collection="intro", job_id=1, **kw) -> IndexingJob:
    return IndexingJob(granularity=granularity, action=action, collection_id=collection, id=job_id, **kw)


@pytest.fixture
def progress():
    return RecordingProgress()


@pytest.fixture
def orch(cfg, store, embedder, progress):
    write_course(cfg.content_root)
    return IndexingOrchestrator(cfg=cfg, store=store, embedder=embedder, progress=progress)


LESSON = "intro/module-1-basics/lesson-1-1.json"


class TestFileJobs:
    def test_index_structured_lesson(self, orch, store):
        result = orch.handle(job(Granularity.FILE, file_path=LESSON))

        records = store.records_for(file_path=LESSON)
        assert result.success
        assert result.documents_indexed == len(records) > 1
        assert records[0].content.startswith("Title: Variables")
        assert all(r.group_id == "module-1-basics" and r.item_id == "1-1" for r in records)
        meta = records[0].metadata
        assert meta["title"] == "Variables"
        assert meta["type"] == "theory"
        assert meta["duration"] == 10
        assert meta["chunkIndex"] == 0
        assert meta["totalChunks"] == len(records)
        assert [r.chunk_index for r in records] == list(range(len(records)))
        assert all(len(r.content) <= 200 for r in records)

    def test_progress_phases(self, orch, progress):
        orch.handle(job(Granularity.FILE, file_path=LESSON, job_id=42))
        assert progress.percents == [10, 20, 40, 60, 80, 100]
        assert {u[0] for u in progress.updates} == {42}
        assert progress.updates[-1][2] == "Completed"

    def test_markdown_frontmatter_metadata(self, orch, store):
        orch.handle(job(Granularity.FILE, file_path="intro/module-1-basics/lesson-1-2.md"))
        records = store.records_for(file_path="intro/module-1-basics/lesson-1-2.md")
        assert records
        assert records[0].metadata["title"] == "Loops"
        assert "for loops" in records[0].content

    def test_reindex_replaces_and_bumps_version(self, orch, store, cfg):
        orch.handle(job(Granularity.FILE, file_path=LESSON))
        before = store.records_for(file_path=LESSON)
        assert {r.version for r in before} == {1}

        (cfg.content_root / LESSON).write_text('{"title": "Short", "content": "Tiny now."}')
        orch.handle(job(Granularity.FILE, action=Action.REINDEX, file_path=LESSON))

        after = store.records_for(file_path=LESSON)
        assert len(after) == 1
        assert after[0].version == 2
        assert "Tiny now." in after[0].content

    def test_malformed_content_is_skipped(self, orch, store, cfg):
        (cfg.content_root / LESSON).write_text("{not json")
        result = orch.handle(job(Granularity.FILE, file_path=LESSON))
        assert result.success
        assert result.documents_indexed == 0
        assert result.files_skipped == 1
        assert store.records_for(file_path=LESSON) == []

    def test_missing_file_is_skipped(self, orch):
        result = orch.handle(job(Granularity.FILE, file_path="intro/module-1-basics/lesson-9-9.json"))
        assert result.files_skipped == 1

    def test_store_failure_propagates(self, cfg, embedder, progress):
        write_course(cfg.content_root)
        broken = IndexingOrchestrator(cfg=cfg, store=BrokenStore(), embedder=embedder, progress=progress)
        with pytest.raises(StoreError):
            broken.handle(job(Granularity.FILE, file_path=LESSON))
        assert progress.updates[-1][1:3] == (0, "Failed")

    def test_file_job_requires_path(self, orch):
        with pytest.raises(ValueError):
            orch.handle(job(Granularity.FILE))


class TestAggregateJobs:
    def test_item_resolves_canonical_file(self, orch, store):
        result = orch.handle(job(Granularity.ITEM, group_id="module-1-basics", item_id="1-2"))
        assert result.documents_indexed > 0
        assert store.file_paths("intro") == ["intro/module-1-basics/lesson-1-2.md"]

    def test_unknown_item_is_skipped(self, orch):
        result = orch.handle(job(Granularity.ITEM, group_id="module-1-basics", item_id="7-7"))
        assert result.files_skipped == 1

    def test_group_indexes_every_item(self, orch, store, progress):
        result = orch.handle(job(Granularity.GROUP, group_id="module-1-basics"))
        assert store.file_paths("intro") == [
            "intro/module-1-basics/lesson-1-1.json",
            "intro/module-1-basics/lesson-1-2.md",
        ]
        assert result.documents_indexed == store.count("intro")
        assert progress.percents == [10, 20, 50, 100]

    def test_group_continues_past_bad_item(self, orch, store, cfg):
        (cfg.content_root / LESSON).write_text("[1, 2, 3]")
        result = orch.handle(job(Granularity.GROUP, group_id="module-1-basics"))
        assert result.success
        assert result.files_skipped == 1
        assert store.file_paths("intro") == ["intro/module-1-basics/lesson-1-2.md"]

    def test_group_store_failure_fails_job(self, cfg, embedder):
        write_course(cfg.content_root)
        broken = IndexingOrchestrator(cfg=cfg, store=BrokenStore(), embedder=embedder)
        with pytest.raises(StoreError):
            broken.handle(job(Granularity.GROUP, group_id="module-1-basics"))

    def test_collection_index_covers_groups_and_index_file(self, orch, store, progress):
        result = orch.handle(job(Granularity.COLLECTION))
        assert store.file_paths("intro") == [
            "intro/index.json",
            "intro/module-1-basics/lesson-1-1.json",
            "intro/module-1-basics/lesson-1-2.md",
            "intro/module-2-advanced/lesson-2-1.json",
        ]
        assert result.documents_indexed == store.count("intro")
        assert progress.percents == [10, 10, 20, 37.5, 55, 100]
        assert progress.updates[3][2:] == ("Indexing item 2 of 2", "module-1-basics")
        index_records = store.records_for(file_path="intro/index.json")
        assert index_records[0].group_id is None
        assert "Modules: Basics, Advanced" in " ".join(r.content for r in index_records)

    def test_collection_reindex_drops_renamed_files(self, orch, store, cfg):
        old = "intro/module-2-advanced/lesson-2-1.json"
        orch.handle(job(Granularity.FILE, file_path=old))
        assert store.file_paths("intro") == [old]

        module = cfg.content_root / "intro" / "module-2-advanced"
        (module / "lesson-2-1.json").rename(module / "lesson-2-5.json")
        result = orch.handle(job(Granularity.COLLECTION, action=Action.REINDEX))

        paths = store.file_paths("intro")
        assert "intro/module-2-advanced/lesson-2-5.json" in paths
        assert old not in paths
        assert result.records_deleted > 0

    def test_collection_index_drops_deleted_files(self, orch, store, cfg):
        orch.handle(job(Granularity.COLLECTION))
        gone = cfg.content_root / "intro" / "module-2-advanced" / "lesson-2-1.json"
        n = len(store.records_for(file_path="intro/module-2-advanced/lesson-2-1.json"))
        gone.unlink()

        result = orch.handle(job(Granularity.COLLECTION))

        assert "intro/module-2-advanced/lesson-2-1.json" not in store.file_paths("intro")
        assert len(store.file_paths("intro")) == 3
        assert result.records_deleted == n

    def test_missing_collection_directory(self, orch):
        result = orch.handle(job(Granularity.COLLECTION, collection="ghost"))
        assert result.success
        assert result.documents_indexed == 0


class TestDelete:
    def test_delete_absent_file_is_idempotent(self, orch, store):
        for _ in range(2):
            result = orch.handle(job(Granularity.FILE, action=Action.DELETE, file_path="intro/nothing.md"))
            assert result.success
            assert result.records_deleted == 0
        assert store.count() == 0

    def test_delete_file_removes_all_chunks(self, orch, store):
        orch.handle(job(Granularity.FILE, file_path=LESSON))
        n = store.count("intro")
        result = orch.handle(job(Granularity.FILE, action=Action.DELETE, file_path=LESSON))
        assert result.records_deleted == n
        assert store.records_for(file_path=LESSON) == []

    def test_delete_group(self, orch, store):
        orch.handle(job(Granularity.COLLECTION))
        orch.handle(job(Granularity.GROUP, action=Action.DELETE, group_id="module-1-basics"))
        assert store.file_paths("intro") == [
            "intro/index.json",
            "intro/module-2-advanced/lesson-2-1.json",
        ]

    def test_delete_collection(self, orch, store):
        orch.handle(job(Granularity.COLLECTION))
        orch.handle(job(Granularity.COLLECTION, action=Action.DELETE))
        assert store.count("intro") == 0


class TestEmbedding:
    def test_batches_preserve_order(self, cfg, store):
        embedder = HashEmbedder()
        o = IndexingOrchestrator(cfg=cfg, store=store, embedder=embedder)
        texts = [f"chunk number {i}" for i in range(10)]

        vectors = o.embed(texts)

        assert embedder.calls == 3
        for text, vec in zip(texts, vectors):
            np.testing.assert_allclose(vec, embedder.embed_text(text))

    def test_empty_input(self, cfg, store, embedder):
        o = IndexingOrchestrator(cfg=cfg, store=store, embedder=embedder)
        assert o.embed([]) == []
        assert embedder.calls == 0
