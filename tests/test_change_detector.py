"""Tests for the debounced change watcher."""
from __future__ import annotations

import dataclasses
import time
from pathlib import Path

import pytest

from courseindex.errors import QueueUnavailableError
from courseindex.indexer.change_detector import ChangeWatcher
from courseindex.indexer.queue import JobHandle
from courseindex.models import Action, ChangeKind, Granularity


class FakeTimer:
    def __init__(self, interval: float, fn) -> None:
        self.interval = interval
        self.fn = fn
        self.cancelled = False
        self.started = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fn()


class RecordingQueue:
    def __init__(self) -> None:
        self.jobs = []

    def enqueue(self, job, delay_ms=None):
        self.jobs.append(job)
        return JobHandle(self, len(self.jobs))


class FailingQueue:
    def enqueue(self, job, delay_ms=None):
        raise QueueUnavailableError("queue store unavailable")


@pytest.fixture
def timers():
    return []


@pytest.fixture
def make_watcher(cfg, timers):
    def factory(queue=None, **overrides):
        c = dataclasses.replace(cfg, **overrides) if overrides else cfg
        def timer_factory(interval, fn):
            t = FakeTimer(interval, fn)
            timers.append(t)
            return t
        return ChangeWatcher(c, queue if queue is not None else RecordingQueue(), timer_factory=timer_factory)
    return factory


def fire_all(timers) -> None:
    for t in list(timers):
        t.fire()


class TestDebounce:
    def test_burst_produces_one_enqueue(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        path = cfg.content_root / "intro" / "module-1-basics" / "lesson-1-1.json"
        for _ in range(5):
            assert w.observe(ChangeKind.MODIFIED, path)

        assert w.status()["pending_changes"] == 1
        assert sum(1 for t in timers if not t.cancelled) == 1
        assert timers[0].interval == pytest.approx(0.05)

        fire_all(timers)
        assert len(q.jobs) == 1
        assert w.status()["pending_changes"] == 0

    def test_spaced_events_produce_one_enqueue_each(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        path = cfg.content_root / "intro" / "notes.md"
        for _ in range(3):
            w.observe(ChangeKind.MODIFIED, path)
            fire_all(timers)
        assert len(q.jobs) == 3

    def test_final_state_wins(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        path = cfg.content_root / "intro" / "notes.md"
        w.observe(ChangeKind.ADDED, path)
        w.observe(ChangeKind.MODIFIED, path)
        w.observe(ChangeKind.REMOVED, path)
        fire_all(timers)

        assert len(q.jobs) == 1
        assert q.jobs[0].action == Action.DELETE

    def test_paths_are_debounced_independently(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md")
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "b.md")
        w.observe(ChangeKind.MODIFIED, "intro/a.md")
        fire_all(timers)
        assert sorted(j.file_path for j in q.jobs) == ["intro/a.md", "intro/b.md"]

    def test_stale_timer_does_not_fire_newer_event(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        path = cfg.content_root / "intro" / "a.md"
        w.observe(ChangeKind.MODIFIED, path)
        first = timers[0]
        w.observe(ChangeKind.MODIFIED, path)
        first.fn()  # fires even though cancelled, as a racing Timer thread could
        assert q.jobs == []
        fire_all(timers)
        assert len(q.jobs) == 1

    def test_real_timers_coalesce(self, cfg):
        q = RecordingQueue()
        w = ChangeWatcher(cfg, q)
        path = cfg.content_root / "intro" / "a.md"
        for _ in range(5):
            w.observe(ChangeKind.MODIFIED, path)
        time.sleep(0.4)
        assert len(q.jobs) == 1

        w.observe(ChangeKind.MODIFIED, path)
        time.sleep(0.4)
        w.observe(ChangeKind.MODIFIED, path)
        time.sleep(0.4)
        assert len(q.jobs) == 3

    def test_flush_fires_pending_now(self, make_watcher, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.ADDED, cfg.content_root / "intro" / "a.md")
        w.observe(ChangeKind.ADDED, cfg.content_root / "intro" / "b.md")
        assert w.flush() == 2
        assert len(q.jobs) == 2


class TestMapping:
    def test_item_file_maps_to_group_and_item(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.ADDED, cfg.content_root / "intro" / "module-1-basics" / "lesson-1-2.md")
        fire_all(timers)

        job = q.jobs[0]
        assert job.granularity == Granularity.FILE
        assert job.action == Action.INDEX
        assert job.collection_id == "intro"
        assert job.group_id == "module-1-basics"
        assert job.item_id == "1-2"
        assert job.file_path == "intro/module-1-basics/lesson-1-2.md"
        assert job.priority == 5

    def test_priorities(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "index.json")
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "notes.txt")
        fire_all(timers)
        by_path = {j.file_path: j.priority for j in q.jobs}
        assert by_path == {"intro/index.json": 10, "intro/notes.txt": 1}

    def test_unmappable_path_is_dropped(self, make_watcher, timers, cfg):
        w = make_watcher()
        assert w.observe(ChangeKind.ADDED, cfg.content_root / "README.md") is False
        assert timers == []

    @pytest.mark.parametrize("rel", [
        "intro/script.py",
        "intro/node_modules/pkg/readme.md",
        "intro/.git/notes.md",
        "intro/module-1-basics/lesson-1-1.test.json",
        "a/b/c/d/e/f/g.md",
    ])
    def test_filtered_paths_are_dropped(self, make_watcher, timers, cfg, rel):
        w = make_watcher()
        assert w.observe(ChangeKind.ADDED, cfg.content_root / rel) is False
        assert timers == []

    def test_path_outside_root_is_dropped(self, make_watcher, timers, tmp_path):
        w = make_watcher()
        assert w.observe(ChangeKind.ADDED, tmp_path / "elsewhere" / "x" / "a.md") is False


class TestLifecycle:
    def test_stop_cancels_pending_without_emitting(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md")
        w.stop()
        fire_all(timers)
        assert q.jobs == []
        assert w.status()["pending_changes"] == 0
        w.stop()  # idempotent

    def test_events_after_stop_are_ignored(self, cfg):
        q = RecordingQueue()
        w = ChangeWatcher(cfg, q)
        w.start()
        w.stop()
        assert w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md") is False
        time.sleep(0.2)
        assert q.jobs == []
        assert w.status()["pending_changes"] == 0

    def test_timer_racing_stop_does_not_enqueue(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md")
        w.stop()
        timers[0].fn()  # a Timer thread already past cancel()
        assert q.jobs == []

    def test_restart_accepts_events_again(self, cfg):
        q = RecordingQueue()
        w = ChangeWatcher(cfg, q)
        w.start()
        w.stop()
        w.start()
        try:
            assert w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md") is True
            assert w.flush() == 1
        finally:
            w.stop()
        assert len(q.jobs) == 1

    def test_start_requires_existing_root(self, cfg, tmp_path):
        missing = dataclasses.replace(cfg, content_root=tmp_path / "missing")
        w = ChangeWatcher(missing, RecordingQueue())
        with pytest.raises(FileNotFoundError):
            w.start()

    def test_start_and_stop_emit_events(self, cfg):
        w = ChangeWatcher(cfg, RecordingQueue())
        sub = w.events.subscribe()
        w.start()
        try:
            assert w.status()["watching"] is True
        finally:
            w.stop()
        assert w.status()["watching"] is False
        kinds = [e.kind for e in sub.drain()]
        assert kinds[0] == "ready"
        assert kinds[-1] == "stopped"

    def test_scan_directory_buffers_content_files(self, make_watcher, timers, cfg):
        q = RecordingQueue()
        w = make_watcher(q)
        module = cfg.content_root / "intro" / "module-3-new"
        module.mkdir(parents=True)
        (module / "lesson-3-1.json").write_text("{}")
        (module / "lesson-3-2.md").write_text("# Hi")
        (module / "helper.py").write_text("x = 1")

        assert w.scan_directory(module) == 2
        fire_all(timers)
        assert sorted(j.item_id for j in q.jobs) == ["3-1", "3-2"]


class TestFailures:
    def test_enqueue_failure_emits_error_event(self, make_watcher, timers, cfg):
        w = make_watcher(FailingQueue())
        sub = w.events.subscribe()
        w.observe(ChangeKind.MODIFIED, cfg.content_root / "intro" / "a.md")
        fire_all(timers)

        events = sub.drain()
        assert [e.kind for e in events] == ["error"]
        assert "unavailable" in events[0].payload["error"]

    def test_force_reindex_enqueues_manual_collection_job(self, make_watcher):
        q = RecordingQueue()
        w = make_watcher(q)
        sub = w.events.subscribe()
        handle = w.force_reindex("intro")

        assert handle.job_id == 1
        job = q.jobs[0]
        assert job.granularity == Granularity.COLLECTION
        assert job.action == Action.REINDEX
        assert job.priority == 20
        assert [e.kind for e in sub.drain()] == ["reindex-queued"]

    def test_force_reindex_failure_is_raised_and_emitted(self, make_watcher):
        w = make_watcher(FailingQueue())
        sub = w.events.subscribe()
        with pytest.raises(QueueUnavailableError):
            w.force_reindex("intro")
        assert [e.kind for e in sub.drain()] == ["error"]
