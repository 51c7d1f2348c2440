"""Durable priority job queue backed by SQLite.

Jobs move through ``queued -> active -> completed``; a failed attempt puts
the job back to ``queued`` with an exponential backoff delay until its
attempts are exhausted, at which point it is parked in the dead-letter list
(state ``failed``). Only an explicit replay brings a dead letter back.

All state lives in the database. Each mutation (enqueue with duplicate
supersession, claim, complete, fail, dead-letter, progress) is a single
``BEGIN IMMEDIATE`` transaction, so two workers can never claim the same
job and a job key never has two active instances.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import random
import sqlite3
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from ..config import IndexConfig
from ..errors import JobNotFoundError, QueueUnavailableError
from ..events import EventChannel
from ..models import (
    Action,
    DeadLetterEntry,
    Granularity,
    IndexingJob,
    JobState,
    ProgressRecord,
    QueueStats,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS jobs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  dedup_key TEXT NOT NULL,
  data_json TEXT NOT NULL,
  priority INTEGER NOT NULL,
  state TEXT NOT NULL,
  attempts_made INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL,
  enqueued_at REAL NOT NULL,
  available_at REAL NOT NULL,
  started_at REAL,
  finished_at REAL,
  last_error TEXT,
  result_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(state, priority DESC, id);
CREATE INDEX IF NOT EXISTS idx_jobs_key ON jobs(dedup_key, state);

CREATE TABLE IF NOT EXISTS dead_letters (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_json TEXT NOT NULL,
  error_message TEXT NOT NULL,
  error_trace TEXT,
  failed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS progress (
  job_id INTEGER PRIMARY KEY,
  percent REAL NOT NULL,
  stage TEXT NOT NULL,
  message TEXT,
  at REAL NOT NULL,
  expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS queue_meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""

CLAIM_SQL = """
SELECT j.* FROM jobs j
WHERE j.state='queued' AND j.available_at<=?
  AND NOT EXISTS (
    SELECT 1 FROM jobs a WHERE a.state='active' AND a.dedup_key=j.dedup_key
  )
ORDER BY j.priority DESC, j.id ASC
LIMIT 1
"""

JobHandler = Callable[[IndexingJob], Any]

PAUSE_MANUAL = "manual"
PAUSE_SERVICE_STOP = "service-stop"


@dataclass(frozen=True)
class JobInfo:
    job: IndexingJob
    state: JobState
    attempts_made: int
    max_attempts: int
    available_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class JobHandle:
    """Reference to a queued job. Status is always read from the store."""
    queue: "JobQueue"
    job_id: int

    def info(self) -> JobInfo:
        return self.queue.get_job(self.job_id)

    def status(self) -> JobState:
        return self.info().state

    def result(self) -> Optional[dict[str, Any]]:
        return self.info().result

    def progress(self) -> Optional[ProgressRecord]:
        return self.queue.get_progress(self.job_id)

    def wait(self, timeout: float = 30.0, poll_s: float = 0.05) -> JobState:
        """Poll until the job reaches a terminal state or `timeout` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            state = self.status()
            if state in (JobState.COMPLETED, JobState.FAILED) or time.monotonic() >= deadline:
                return state
            time.sleep(poll_s)


def _result_to_dict(result: Any) -> Optional[dict[str, Any]]:
    if result is None:
        return None
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.asdict(result)
    if isinstance(result, dict):
        return result
    return {"value": str(result)}


class JobQueue:
    """Priority-ordered, delayable job queue with retry, backoff and dead-lettering."""

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        collection_max_attempts: int = 5,
        backoff_base_ms: int = 5000,
        backoff_jitter: float = 0.1,
        immediate_priority_threshold: int = 10,
        default_delay_ms: int = 1000,
        collection_reindex_delay_ms: int = 10000,
        dead_letter_cap: int = 1000,
        progress_ttl_s: int = 300,
        poll_interval_s: float = 0.5,
        replay_priority: int = 15,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts
        self.collection_max_attempts = collection_max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_jitter = backoff_jitter
        self.immediate_priority_threshold = immediate_priority_threshold
        self.default_delay_ms = default_delay_ms
        self.collection_reindex_delay_ms = collection_reindex_delay_ms
        self.dead_letter_cap = dead_letter_cap
        self.progress_ttl_s = progress_ttl_s
        self.poll_interval_s = poll_interval_s
        self.replay_priority = replay_priority
        self._clock = clock
        self._rng = rng or random.Random()

        self.events = EventChannel("queue")

        # Thread-local storage for per-thread connections
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []

    @staticmethod
    def from_config(cfg: IndexConfig, **overrides: Any) -> "JobQueue":
        kwargs: dict[str, Any] = dict(
            max_attempts=cfg.max_attempts,
            collection_max_attempts=cfg.collection_max_attempts,
            backoff_base_ms=cfg.backoff_base_ms,
            backoff_jitter=cfg.backoff_jitter,
            immediate_priority_threshold=cfg.immediate_priority_threshold,
            default_delay_ms=cfg.default_delay_ms,
            collection_reindex_delay_ms=cfg.collection_reindex_delay_ms,
            dead_letter_cap=cfg.dead_letter_cap,
            progress_ttl_s=cfg.progress_ttl_s,
            poll_interval_s=cfg.poll_interval_s,
            replay_priority=cfg.priority_replay,
        )
        kwargs.update(overrides)
        return JobQueue(cfg.queue_path, **kwargs)

    # -- connection handling -------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(str(self.db_path), isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA busy_timeout=5000")
            except sqlite3.Error as e:
                raise QueueUnavailableError(f"Cannot open queue store {self.db_path}: {e}") from e
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Queue store unavailable: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise QueueUnavailableError(f"Queue store write failed: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Queue store read failed: {e}") from e

    def init(self) -> None:
        try:
            self._get_conn().executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Cannot initialize queue store {self.db_path}: {e}") from e

    def close(self) -> None:
        """Stop workers and close all thread-local connections."""
        self.stop_workers()
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"[queue] Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    def _notify(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # -- policy ----------------------------------------------------------------

    def compute_delay_ms(self, job: IndexingJob) -> int:
        if job.action == Action.DELETE or job.priority > self.immediate_priority_threshold:
            return 0
        if job.granularity == Granularity.COLLECTION and job.action == Action.REINDEX:
            return self.collection_reindex_delay_ms
        return self.default_delay_ms

    def max_attempts_for(self, job: IndexingJob) -> int:
        if job.granularity == Granularity.COLLECTION:
            return self.collection_max_attempts
        return self.max_attempts

    def backoff_seconds(self, attempts_made: int) -> float:
        base = self.backoff_base_ms / 1000.0 * (2 ** max(attempts_made - 1, 0))
        return base * (1.0 + self._rng.uniform(0.0, self.backoff_jitter))

    # -- enqueue ---------------------------------------------------------------

    def _enqueue_locked(
        self, conn: sqlite3.Connection, job: IndexingJob, now: float, delay_ms: Optional[int]
    ) -> tuple[int, str]:
        """Insert `job` unless a queued duplicate outranks it.

        Returns (job_id, outcome) where outcome is "enqueued", "superseded"
        (older duplicates removed) or "dropped" (existing job id returned).
        """
        delay = (self.compute_delay_ms(job) if delay_ms is None else delay_ms) / 1000.0
        key = job.dedup_key
        existing = conn.execute(
            "SELECT id, priority FROM jobs WHERE dedup_key=? AND state='queued' "
            "ORDER BY priority DESC, id ASC LIMIT 1",
            (key,),
        ).fetchone()
        if existing is not None and job.priority < existing["priority"]:
            return existing["id"], "dropped"

        outcome = "enqueued"
        if existing is not None:
            stale = [r["id"] for r in conn.execute(
                "SELECT id FROM jobs WHERE dedup_key=? AND state='queued'", (key,)
            ).fetchall()]
            placeholders = ",".join("?" * len(stale))
            conn.execute(f"DELETE FROM jobs WHERE id IN ({placeholders})", stale)
            conn.execute(f"DELETE FROM progress WHERE job_id IN ({placeholders})", stale)
            outcome = "superseded"

        stored = job.with_updates(
            id=None,
            enqueued_at=now,
            delay_until=now + delay if delay > 0 else None,
        )
        cur = conn.execute(
            """INSERT INTO jobs(dedup_key, data_json, priority, state, attempts_made, max_attempts,
                 enqueued_at, available_at)
               VALUES(?,?,?,?,?,?,?,?)""",
            (key, json.dumps(stored.to_dict()), job.priority, JobState.QUEUED.value, 0,
             self.max_attempts_for(job), now, now + delay),
        )
        return int(cur.lastrowid), outcome

    def _announce(self, job: IndexingJob, job_id: int, outcome: str) -> None:
        if outcome == "dropped":
            logger.info(
                f"[queue] Skipping duplicate {job.granularity.value}/{job.action.value} job for "
                f"{job.collection_id} ({job.file_path or '-'}): job {job_id} has higher priority"
            )
        elif outcome == "superseded":
            logger.debug(f"[queue] Job {job_id} superseded a queued duplicate ({job.dedup_key})")
        self.events.publish(outcome, job_id=job_id, key=job.dedup_key, priority=job.priority)

    def enqueue(self, job: IndexingJob, delay_ms: Optional[int] = None) -> JobHandle:
        """Queue `job`; a queued duplicate with lower or equal priority is replaced.

        `delay_ms` overrides the computed delay. Raises QueueUnavailableError
        when the backing store cannot be written.
        """
        now = self._clock()
        with self._transaction() as conn:
            job_id, outcome = self._enqueue_locked(conn, job, now, delay_ms)
        self._announce(job, job_id, outcome)
        self._notify()
        return JobHandle(self, job_id)

    def enqueue_batch(self, jobs: Sequence[IndexingJob], delay_ms: Optional[int] = None) -> list[JobHandle]:
        """Queue many jobs in one transaction with the same duplicate rules."""
        now = self._clock()
        results: list[tuple[IndexingJob, int, str]] = []
        with self._transaction() as conn:
            for job in jobs:
                job_id, outcome = self._enqueue_locked(conn, job, now, delay_ms)
                results.append((job, job_id, outcome))
        for job, job_id, outcome in results:
            self._announce(job, job_id, outcome)
        self._notify()
        logger.info(f"[queue] Batch of {len(jobs)} jobs submitted")
        return [JobHandle(self, job_id) for _, job_id, _ in results]

    # -- lifecycle transitions -------------------------------------------------

    def _row_to_job(self, row: sqlite3.Row) -> IndexingJob:
        return IndexingJob.from_dict(json.loads(row["data_json"])).with_updates(id=int(row["id"]))

    def claim(self) -> Optional[IndexingJob]:
        """Atomically take the next runnable job, or None.

        Runnable: queued, delay elapsed, and no active job with the same key.
        Highest priority first; ties go to the oldest job.
        """
        now = self._clock()
        with self._transaction() as conn:
            if self._is_paused_locked(conn):
                return None
            row = conn.execute(CLAIM_SQL, (now,)).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE jobs SET state=?, attempts_made=attempts_made+1, started_at=? WHERE id=?",
                (JobState.ACTIVE.value, now, row["id"]),
            )
        return self._row_to_job(row)

    def complete(self, job_id: int, result: Any = None) -> None:
        now = self._clock()
        payload = _result_to_dict(result)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET state=?, finished_at=?, result_json=?, last_error=NULL WHERE id=?",
                (JobState.COMPLETED.value, now, json.dumps(payload) if payload is not None else None, job_id),
            )
        logger.info(f"[queue] Job {job_id} completed")
        self.events.publish("completed", job_id=job_id, result=payload)
        self._notify()

    def fail(self, job_id: int, error: BaseException) -> JobState:
        """Record a failed attempt. Returns QUEUED (will retry) or FAILED (dead-lettered)."""
        now = self._clock()
        message = str(error) or type(error).__name__
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            attempts = int(row["attempts_made"])
            if attempts < int(row["max_attempts"]):
                wait = self.backoff_seconds(attempts)
                conn.execute(
                    "UPDATE jobs SET state=?, available_at=?, started_at=NULL, last_error=? WHERE id=?",
                    (JobState.QUEUED.value, now + wait, message, job_id),
                )
                state = JobState.QUEUED
            else:
                conn.execute(
                    "UPDATE jobs SET state=?, finished_at=?, last_error=? WHERE id=?",
                    (JobState.FAILED.value, now, message, job_id),
                )
                job = self._row_to_job(row)
                conn.execute(
                    "INSERT INTO dead_letters(job_json, error_message, error_trace, failed_at) VALUES(?,?,?,?)",
                    (json.dumps(job.to_dict()), message, trace, now),
                )
                conn.execute(
                    "DELETE FROM dead_letters WHERE id NOT IN "
                    "(SELECT id FROM dead_letters ORDER BY id DESC LIMIT ?)",
                    (self.dead_letter_cap,),
                )
                state = JobState.FAILED

        if state == JobState.QUEUED:
            logger.warning(
                f"[queue] Job {job_id} failed (attempt {attempts}/{row['max_attempts']}), "
                f"retrying in {wait:.2f}s: {message}"
            )
            self.events.publish("retrying", job_id=job_id, attempt=attempts, delay_s=wait, error=message)
        else:
            logger.error(f"[queue] Job {job_id} exhausted {attempts} attempts, moved to dead-letter: {message}")
            self.events.publish("dead-lettered", job_id=job_id, error=message)
        self._notify()
        return state

    def recover_stalled(self) -> int:
        """Return jobs left active by a previous process to the queue."""
        now = self._clock()
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET state=?, available_at=?, started_at=NULL WHERE state=?",
                (JobState.QUEUED.value, now, JobState.ACTIVE.value),
            )
            recovered = cur.rowcount
        if recovered:
            logger.warning(f"[queue] Recovered {recovered} stalled jobs")
            self._notify()
        return recovered

    # -- introspection ---------------------------------------------------------

    def get_job(self, job_id: int) -> JobInfo:
        rows = self._query("SELECT * FROM jobs WHERE id=?", (job_id,))
        if not rows:
            raise JobNotFoundError(f"Job {job_id} not found")
        row = rows[0]
        return JobInfo(
            job=self._row_to_job(row),
            state=JobState(row["state"]),
            attempts_made=int(row["attempts_made"]),
            max_attempts=int(row["max_attempts"]),
            available_at=float(row["available_at"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_error=row["last_error"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
        )

    def update_progress(self, job_id: int, percent: float, stage: str, message: Optional[str] = None) -> None:
        """Overwrite the job's progress record. Observability only."""
        now = self._clock()
        percent = max(0.0, min(100.0, float(percent)))
        try:
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO progress(job_id, percent, stage, message, at, expires_at)
                       VALUES(?,?,?,?,?,?)
                       ON CONFLICT(job_id) DO UPDATE SET percent=excluded.percent, stage=excluded.stage,
                         message=excluded.message, at=excluded.at, expires_at=excluded.expires_at""",
                    (job_id, percent, stage, message, now, now + self.progress_ttl_s),
                )
        except QueueUnavailableError as e:
            logger.warning(f"[queue] Could not record progress for job {job_id}: {e}")
            return
        self.events.publish("progress", job_id=job_id, percent=percent, stage=stage, message=message)

    def get_progress(self, job_id: int) -> Optional[ProgressRecord]:
        rows = self._query(
            "SELECT * FROM progress WHERE job_id=? AND expires_at>?", (job_id, self._clock())
        )
        if not rows:
            return None
        r = rows[0]
        return ProgressRecord(job_id=r["job_id"], percent=r["percent"], stage=r["stage"],
                              message=r["message"], at=r["at"])

    def stats(self) -> QueueStats:
        now = self._clock()
        rows = self._query(
            """SELECT
                 SUM(CASE WHEN state='queued' AND available_at<=? THEN 1 ELSE 0 END) AS waiting,
                 SUM(CASE WHEN state='queued' AND available_at>? THEN 1 ELSE 0 END) AS delayed,
                 SUM(CASE WHEN state='active' THEN 1 ELSE 0 END) AS active,
                 SUM(CASE WHEN state='completed' THEN 1 ELSE 0 END) AS completed,
                 SUM(CASE WHEN state='failed' THEN 1 ELSE 0 END) AS failed
               FROM jobs""",
            (now, now),
        )
        r = rows[0]
        return QueueStats(
            waiting=int(r["waiting"] or 0),
            active=int(r["active"] or 0),
            completed=int(r["completed"] or 0),
            failed=int(r["failed"] or 0),
            delayed=int(r["delayed"] or 0),
            paused=self.is_paused(),
        )

    def wait_until_drained(self, timeout: float = 30.0, poll_s: float = 0.05) -> bool:
        """Block until nothing is waiting, delayed or active."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.stats().drained:
                return True
            time.sleep(poll_s)
        return self.stats().drained

    # -- pause / resume --------------------------------------------------------

    def _meta_locked(self, conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM queue_meta WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def _is_paused_locked(self, conn: sqlite3.Connection) -> bool:
        return self._meta_locked(conn, "paused") == "1"

    def is_paused(self) -> bool:
        rows = self._query("SELECT value FROM queue_meta WHERE key='paused'")
        return bool(rows and rows[0]["value"] == "1")

    def pause_reason(self) -> Optional[str]:
        """Reason given to the `pause()` that is in effect, or None when running."""
        rows = self._query("SELECT key, value FROM queue_meta WHERE key IN ('paused', 'pause_reason')")
        meta = {r["key"]: r["value"] for r in rows}
        if meta.get("paused") != "1":
            return None
        return meta.get("pause_reason", PAUSE_MANUAL)

    def _set_paused(self, paused: bool, reason: str) -> None:
        with self._transaction() as conn:
            conn.executemany(
                """INSERT INTO queue_meta(key, value) VALUES(?, ?)
                   ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
                [("paused", "1" if paused else "0"), ("pause_reason", reason)],
            )

    def pause(self, reason: str = PAUSE_MANUAL) -> None:
        """Stop new claims. Jobs already running are allowed to finish.

        The pause is persisted together with `reason`, so it outlives this
        process.
        """
        self._set_paused(True, reason)
        logger.info(f"[queue] Paused ({reason})")
        self.events.publish("paused", reason=reason)

    def resume(self) -> None:
        self._set_paused(False, "")
        logger.info("[queue] Resumed")
        self.events.publish("resumed")
        self._notify()

    # -- dead letters ----------------------------------------------------------

    def list_dead_letters(self, limit: int = 10) -> list[DeadLetterEntry]:
        """Most recent dead letters first."""
        rows = self._query("SELECT * FROM dead_letters ORDER BY id DESC LIMIT ?", (limit,))
        return [
            DeadLetterEntry(
                original_job=IndexingJob.from_dict(json.loads(r["job_json"])),
                error_message=r["error_message"],
                error_trace=r["error_trace"],
                failed_at=r["failed_at"],
            )
            for r in rows
        ]

    def replay_dead_letter(self, index: int) -> Optional[JobHandle]:
        """Re-enqueue the dead letter at `index` (0 = newest) with a boosted priority.

        Returns None when no entry exists at `index`.
        """
        if index < 0:
            return None
        now = self._clock()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM dead_letters ORDER BY id DESC LIMIT 1 OFFSET ?", (index,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM dead_letters WHERE id=?", (row["id"],))
            original = IndexingJob.from_dict(json.loads(row["job_json"]))
            job = original.with_updates(
                retry_attempt=original.retry_attempt + 1,
                priority=self.replay_priority,
            )
            job_id, outcome = self._enqueue_locked(conn, job, now, None)
        logger.info(f"[queue] Replayed dead letter {index} as job {job_id} (retry attempt {job.retry_attempt})")
        self._announce(job, job_id, outcome)
        self._notify()
        return JobHandle(self, job_id)

    # -- maintenance -----------------------------------------------------------

    def clean_completed(self, older_than_hours: float = 24.0) -> int:
        """Delete terminal job records finished before the horizon, plus expired progress."""
        now = self._clock()
        cutoff = now - older_than_hours * 3600.0
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM jobs WHERE state IN (?, ?) AND finished_at IS NOT NULL AND finished_at<?",
                (JobState.COMPLETED.value, JobState.FAILED.value, cutoff),
            )
            removed = cur.rowcount
            conn.execute("DELETE FROM progress WHERE expires_at<=?", (now,))
        logger.info(f"[queue] Cleaned {removed} old jobs")
        return removed

    # -- workers ---------------------------------------------------------------

    def start_workers(self, concurrency: int, handler: JobHandler) -> None:
        """Run `concurrency` worker threads that claim jobs and call `handler(job)`.

        A handler exception is a failed attempt; its return value is stored
        as the job result. Raises QueueUnavailableError if the store cannot
        be reached.
        """
        if self._workers:
            raise RuntimeError("Workers are already running")
        if concurrency < 1:
            raise ValueError(f"Invalid concurrency: {concurrency}")
        self._query("SELECT 1")
        self._stop.clear()
        for i in range(concurrency):
            t = threading.Thread(
                target=self._worker_loop,
                args=(handler,),
                name=f"courseindex-worker-{i}",
                daemon=True,
            )
            t.start()
            self._workers.append(t)
        logger.info(f"[queue] Started {concurrency} workers")

    def stop_workers(self, timeout: float | None = 10.0) -> None:
        if not self._workers:
            return
        self._stop.set()
        self._notify()
        for t in self._workers:
            t.join(timeout=timeout)
        self._workers = []
        logger.info("[queue] Workers stopped")

    def _wait_for_work(self) -> None:
        with self._cond:
            if not self._stop.is_set():
                self._cond.wait(timeout=self.poll_interval_s)

    def _worker_loop(self, handler: JobHandler) -> None:
        while not self._stop.is_set():
            try:
                job = self.claim()
            except QueueUnavailableError as e:
                logger.error(f"[queue] Claim failed: {e}")
                self.events.publish("error", error=str(e))
                self._wait_for_work()
                continue
            if job is None:
                self._wait_for_work()
                continue
            self._run(job, handler)

    def _run(self, job: IndexingJob, handler: JobHandler) -> None:
        assert job.id is not None
        logger.info(
            f"[queue] Processing job {job.id}: {job.granularity.value}/{job.action.value} "
            f"for {job.collection_id}"
        )
        try:
            try:
                result = handler(job)
            except Exception as e:
                logger.debug(f"[queue] Handler raised for job {job.id}", exc_info=True)
                self.fail(job.id, e)
                return
            self.complete(job.id, result)
        except QueueUnavailableError as e:
            # The job stays active and is recovered on the next start.
            logger.error(f"[queue] Could not record outcome of job {job.id}: {e}")
            self.events.publish("error", job_id=job.id, error=str(e))
