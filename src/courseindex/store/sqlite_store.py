from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, date
from pathlib import Path
from typing import Any, Iterator, Sequence

import numpy as np

from ..errors import StoreError
from ..hashing import record_id
from ..models import VectorRecord

logger = logging.getLogger(__name__)


class _JSONEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles datetime and date objects."""
    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, date):
            return obj.isoformat()
        return super().default(obj)


def _json_dumps(obj: Any) -> str:
    """JSON serialize with datetime support."""
    return json.dumps(obj, cls=_JSONEncoder)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS vector_records (
  record_id TEXT PRIMARY KEY,
  collection_id TEXT NOT NULL,
  group_id TEXT,
  item_id TEXT,
  file_path TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  total_chunks INTEGER NOT NULL,
  content TEXT NOT NULL,
  dims INTEGER NOT NULL,
  embedding BLOB NOT NULL,
  metadata_json TEXT,
  indexed_at REAL NOT NULL,
  version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_records_file ON vector_records(file_path);
CREATE INDEX IF NOT EXISTS idx_records_collection ON vector_records(collection_id);

CREATE TABLE IF NOT EXISTS file_versions (
  file_path TEXT PRIMARY KEY,
  version INTEGER NOT NULL
);
"""

FILTER_COLUMNS = ("collection_id", "group_id", "item_id", "file_path")


def _vec_to_blob(vec: np.ndarray) -> bytes:
    vec = np.asarray(vec, dtype=np.float32).ravel()
    return vec.tobytes()

def _blob_to_vec(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _where(filter: dict[str, Any]) -> tuple[str, list[Any]]:
    unknown = set(filter) - set(FILTER_COLUMNS)
    if unknown:
        raise ValueError(f"Unsupported filter fields: {sorted(unknown)}")
    if not filter:
        raise ValueError("Refusing to match every record with an empty filter")
    clauses = [f"{col}=?" for col in filter]
    return " AND ".join(clauses), list(filter.values())


class SqliteVectorStore:
    """SQLite-backed vector record store.

    Every write runs in one `BEGIN IMMEDIATE` transaction, so a file's batch
    of records is either fully visible or not at all.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Thread-local storage for per-thread connections
        self._local = threading.local()
        # Track all connections for cleanup
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a thread-local SQLite connection.

        Each thread gets its own autocommit connection with WAL mode and busy
        timeout; transactions are opened explicitly.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close all thread-local connections."""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError(f"Could not open transaction on {self.db_path}: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StoreError(f"Vector store write failed: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    def init(self) -> None:
        try:
            self._get_conn().executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreError(f"Could not initialize vector store at {self.db_path}: {e}") from e

    def _write_locked(self, conn: sqlite3.Connection, file_path: str, records: Sequence[VectorRecord]) -> int:
        conn.execute("DELETE FROM vector_records WHERE file_path=?", (file_path,))
        row = conn.execute("SELECT version FROM file_versions WHERE file_path=?", (file_path,)).fetchone()
        version = (row["version"] + 1) if row else 1
        conn.execute(
            """INSERT INTO file_versions(file_path, version) VALUES(?,?)
               ON CONFLICT(file_path) DO UPDATE SET version=excluded.version""",
            (file_path, version),
        )

        rows = []
        for r in records:
            vec = np.asarray(r.embedding, dtype=np.float32).ravel()
            rows.append((
                record_id(file_path, r.chunk_index),
                r.collection_id, r.group_id, r.item_id, file_path,
                r.chunk_index, r.total_chunks, r.content,
                int(vec.size), _vec_to_blob(vec),
                _json_dumps(r.metadata or {}),
                r.indexed_at or time.time(),
                version,
            ))
        conn.executemany(
            """INSERT INTO vector_records(record_id, collection_id, group_id, item_id, file_path,
                 chunk_index, total_chunks, content, dims, embedding, metadata_json, indexed_at, version)
               VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            rows,
        )
        return len(rows)

    def replace_file(self, file_path: str, records: Sequence[VectorRecord]) -> int:
        """Atomically replace every record of `file_path` with `records`."""
        with self._transaction() as conn:
            return self._write_locked(conn, file_path, records)

    def upsert_batch(self, records: Sequence[VectorRecord]) -> int:
        """Write records, replacing prior records of each file in the batch."""
        by_path: dict[str, list[VectorRecord]] = {}
        for r in records:
            by_path.setdefault(r.file_path, []).append(r)
        written = 0
        with self._transaction() as conn:
            for file_path, group in by_path.items():
                written += self._write_locked(conn, file_path, group)
        return written

    def delete_by_filter(self, filter: dict[str, Any]) -> int:
        clause, params = _where(filter)
        with self._transaction() as conn:
            cur = conn.execute(f"DELETE FROM vector_records WHERE {clause}", params)
            return cur.rowcount

    def delete_by_collection(self, collection_id: str) -> int:
        return self.delete_by_filter({"collection_id": collection_id})

    def records_for(self, **filter: Any) -> list[VectorRecord]:
        clause, params = _where(filter)
        try:
            rows = self._get_conn().execute(
                f"SELECT * FROM vector_records WHERE {clause} ORDER BY file_path, chunk_index", params
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Vector store read failed: {e}") from e
        return [
            VectorRecord(
                collection_id=r["collection_id"],
                group_id=r["group_id"],
                item_id=r["item_id"],
                file_path=r["file_path"],
                chunk_index=r["chunk_index"],
                total_chunks=r["total_chunks"],
                content=r["content"],
                embedding=_blob_to_vec(r["embedding"]),
                metadata=json.loads(r["metadata_json"] or "{}"),
                indexed_at=r["indexed_at"],
                version=r["version"],
            )
            for r in rows
        ]

    def file_paths(self, collection_id: str) -> list[str]:
        rows = self._get_conn().execute(
            "SELECT DISTINCT file_path FROM vector_records WHERE collection_id=? ORDER BY file_path",
            (collection_id,),
        ).fetchall()
        return [r["file_path"] for r in rows]

    def count(self, collection_id: str | None = None) -> int:
        if collection_id is None:
            row = self._get_conn().execute("SELECT COUNT(*) AS n FROM vector_records").fetchone()
        else:
            row = self._get_conn().execute(
                "SELECT COUNT(*) AS n FROM vector_records WHERE collection_id=?", (collection_id,)
            ).fetchone()
        return int(row["n"])

    def status(self, collection_id: str) -> dict[str, Any]:
        files = self._get_conn().execute(
            "SELECT COUNT(DISTINCT file_path) AS n FROM vector_records WHERE collection_id=?", (collection_id,)
        ).fetchone()["n"]
        return {
            "collection_id": collection_id,
            "indexed_files": int(files),
            "indexed_chunks": self.count(collection_id),
        }
