"""
SQLite storage layer for the sync engine.

Handles persistence of cache entries, background job records, the bulk-run
status record, and the per-run resolved revision side-cache.
"""
import sqlite3
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from contextlib import contextmanager

from relsync.cache.core import CacheEntry
from relsync.errors import ParseFailure, StorageUnavailable
from relsync.sync.models import JobStatus, SyncJob

logger = logging.getLogger("relsync.storage")

# Default database path
DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "relsync.db"


SCHEMA = """
-- One snapshot per key
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    revision TEXT,
    fetched_at INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0
);

-- One job per queued key
CREATE TABLE IF NOT EXISTS sync_jobs (
    target_key TEXT PRIMARY KEY,
    priority INTEGER NOT NULL,
    queued_at INTEGER NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    available_at INTEGER NOT NULL DEFAULT 0
);

-- Single bulk-run status record
CREATE TABLE IF NOT EXISTS bulk_status (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    status TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

-- Remote revisions resolved during a bulk run
CREATE TABLE IF NOT EXISTS resolved_revisions (
    run_id TEXT NOT NULL,
    key TEXT NOT NULL,
    revision TEXT,
    resolved_at INTEGER NOT NULL,
    PRIMARY KEY (run_id, key)
);

CREATE TABLE IF NOT EXISTS meta (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_cache_fetched ON cache_entries(fetched_at, key);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON sync_jobs(status, priority, queued_at);
"""


class SyncStorage:
    """
    SQLite-based storage for the sync engine.

    All writes are serialized through one lock so the store behaves as a
    single-writer key/value store. Any sqlite failure surfaces as
    StorageUnavailable.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._write_lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create storage directory: {e}") from e
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Storage operation failed: {e}") from e
        finally:
            conn.close()

    # =========================================================================
    # Cache entries
    # =========================================================================

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            return self._row_to_entry(row)

    def save_entry(self, entry: CacheEntry):
        """
        Insert or overwrite the entry for entry.key.

        Raises:
            ParseFailure: the payload is not JSON-serializable
        """
        try:
            payload = json.dumps(entry.payload)
        except (TypeError, ValueError) as e:
            raise ParseFailure(f"Payload for {entry.key} is not JSON-serializable: {e}") from e
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (
                    key, payload, revision, fetched_at, size_bytes
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (entry.key, payload, entry.revision, entry.fetched_at, entry.size_bytes),
            )
            conn.commit()

    def get_fetched_at(self, key: str) -> Optional[int]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT fetched_at FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            return row["fetched_at"] if row else None

    def update_fetched_at(self, key: str, fetched_at: int) -> bool:
        """Move fetched_at forward for an existing entry. Returns False if absent."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE cache_entries
                SET fetched_at = MAX(fetched_at, ?)
                WHERE key = ?
                """,
                (fetched_at, key),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_entries(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.executemany(
                "DELETE FROM cache_entries WHERE key = ?", [(k,) for k in keys]
            )
            conn.commit()
            return cursor.rowcount

    def oldest_keys(self, limit: int) -> List[str]:
        """Keys with the smallest fetched_at, ties broken by key."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT key FROM cache_entries ORDER BY fetched_at ASC, key ASC LIMIT ?",
                (limit,),
            ).fetchall()
            return [row["key"] for row in rows]

    def total_size(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) AS total FROM cache_entries"
            ).fetchone()
            return int(row["total"])

    def count_entries(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM cache_entries").fetchone()
            return int(row["n"])

    def list_keys(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM cache_entries ORDER BY key").fetchall()
            return [row["key"] for row in rows]

    def clear_entries(self) -> int:
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries")
            conn.commit()
            return cursor.rowcount

    def _row_to_entry(self, row: sqlite3.Row) -> CacheEntry:
        """Convert a database row to CacheEntry."""
        return CacheEntry(
            key=row["key"],
            payload=json.loads(row["payload"]),
            revision=row["revision"],
            fetched_at=row["fetched_at"],
            size_bytes=row["size_bytes"] or 0,
        )

    # =========================================================================
    # Sync jobs
    # =========================================================================

    def get_job(self, target_key: str) -> Optional[SyncJob]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_jobs WHERE target_key = ?", (target_key,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def save_job(self, job: SyncJob):
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_jobs (
                    target_key, priority, queued_at, status,
                    retry_count, last_error, available_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.target_key,
                    job.priority,
                    job.queued_at,
                    job.status.value,
                    job.retry_count,
                    job.last_error,
                    job.available_at,
                ),
            )
            conn.commit()

    def insert_job_if_absent(self, job: SyncJob) -> bool:
        """
        Store `job` unless a pending or in-progress job exists for its key.

        Returns True if the job was written.
        """
        with self._write_lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT status FROM sync_jobs WHERE target_key = ?", (job.target_key,)
            ).fetchone()
            if row is not None and row["status"] in (
                JobStatus.PENDING.value,
                JobStatus.IN_PROGRESS.value,
            ):
                return False
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_jobs (
                    target_key, priority, queued_at, status,
                    retry_count, last_error, available_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.target_key,
                    job.priority,
                    job.queued_at,
                    job.status.value,
                    job.retry_count,
                    job.last_error,
                    job.available_at,
                ),
            )
            conn.commit()
            return True

    def claim_pending_jobs(self, limit: int, now_ms: int) -> List[SyncJob]:
        """
        Atomically move up to `limit` due pending jobs to in_progress.

        Ordered by priority (lower first), then queued_at (older first).
        """
        with self._write_lock, self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_jobs
                WHERE status = ? AND available_at <= ?
                ORDER BY priority ASC, queued_at ASC, target_key ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, now_ms, limit),
            ).fetchall()
            jobs = [self._row_to_job(row) for row in rows]
            conn.executemany(
                "UPDATE sync_jobs SET status = ? WHERE target_key = ?",
                [(JobStatus.IN_PROGRESS.value, job.target_key) for job in jobs],
            )
            conn.commit()
        for job in jobs:
            job.status = JobStatus.IN_PROGRESS
        return jobs

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[SyncJob]:
        with self._get_connection() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM sync_jobs ORDER BY priority ASC, queued_at ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM sync_jobs WHERE status = ?
                    ORDER BY priority ASC, queued_at ASC
                    """,
                    (status.value,),
                ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def count_jobs_by_status(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_jobs GROUP BY status"
            ).fetchall()
            counts = {status.value: 0 for status in JobStatus}
            for row in rows:
                counts[row["status"]] = row["n"]
            return counts

    def delete_jobs(self, statuses: Iterable[JobStatus]) -> int:
        values = [s.value for s in statuses]
        if not values:
            return 0
        placeholders = ", ".join("?" for _ in values)
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM sync_jobs WHERE status IN ({placeholders})", values
            )
            conn.commit()
            return cursor.rowcount

    def clear_jobs(self) -> int:
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM sync_jobs")
            conn.commit()
            return cursor.rowcount

    def _row_to_job(self, row: sqlite3.Row) -> SyncJob:
        """Convert a database row to SyncJob."""
        return SyncJob(
            target_key=row["target_key"],
            priority=row["priority"],
            queued_at=row["queued_at"],
            status=JobStatus(row["status"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            available_at=row["available_at"] or 0,
        )

    # =========================================================================
    # Bulk status
    # =========================================================================

    def load_bulk_status(self) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT status FROM bulk_status WHERE id = 1").fetchone()
            return json.loads(row["status"]) if row else None

    def save_bulk_status(self, status: Dict[str, Any], updated_at: int):
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO bulk_status (id, status, updated_at) VALUES (1, ?, ?)",
                (json.dumps(status), updated_at),
            )
            conn.commit()

    def clear_bulk_status(self):
        with self._write_lock, self._get_connection() as conn:
            conn.execute("DELETE FROM bulk_status")
            conn.commit()

    # =========================================================================
    # Resolved revisions
    # =========================================================================

    def get_resolved_revision(self, run_id: str, key: str) -> Tuple[bool, Optional[str]]:
        """Returns (found, revision); revision may be None when the remote had none."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT revision FROM resolved_revisions WHERE run_id = ? AND key = ?",
                (run_id, key),
            ).fetchone()
            if row is None:
                return False, None
            return True, row["revision"]

    def save_resolved_revision(
        self, run_id: str, key: str, revision: Optional[str], resolved_at: int
    ):
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO resolved_revisions (run_id, key, revision, resolved_at)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, key, revision, resolved_at),
            )
            conn.commit()

    def clear_resolved_revisions(self, run_id: Optional[str] = None) -> int:
        with self._write_lock, self._get_connection() as conn:
            if run_id is None:
                cursor = conn.execute("DELETE FROM resolved_revisions")
            else:
                cursor = conn.execute(
                    "DELETE FROM resolved_revisions WHERE run_id = ?", (run_id,)
                )
            conn.commit()
            return cursor.rowcount

    # =========================================================================
    # Meta
    # =========================================================================

    def get_meta(self, name: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM meta WHERE name = ?", (name,)).fetchone()
            return row["value"] if row else None

    def set_meta(self, name: str, value: str):
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta (name, value) VALUES (?, ?)", (name, value)
            )
            conn.commit()
