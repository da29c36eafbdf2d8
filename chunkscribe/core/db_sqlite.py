"""
SQLite task store for chunkscribe.
Thread-safe via check_same_thread=False + explicit locking; WAL mode lets
several worker processes share one database file.
"""

import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from pathlib import Path

from chunkscribe.core.constants import DB_PATH, TaskStatus
from chunkscribe.core.models_sqlite import TranscriptionTask, ChunkFile, ProcessingAttempt

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    language TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    progress TEXT,
    result_ref TEXT,
    processing_correlation_id TEXT,
    claimed_by TEXT,
    claimed_at TEXT,
    lease_expires_at TEXT,
    attempt_count INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_result_ref ON tasks(result_ref);

CREATE TABLE IF NOT EXISTS chunk_files (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    media_ref TEXT,
    chunk_index INTEGER,
    total_chunks TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_chunk_files_task ON chunk_files(task_id, chunk_index);

CREATE TABLE IF NOT EXISTS segment_transcripts (
    task_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    total INTEGER NOT NULL,
    text TEXT NOT NULL,
    PRIMARY KEY (task_id, idx)
);
"""

# A task is claimable when it has no published result and either nobody
# holds it or the holder's lease has run out.
_UNCLAIMED_PREDICATE = """
    (result_ref IS NULL OR result_ref = '')
    AND status != ?
    AND (claimed_by IS NULL
         OR (lease_expires_at IS NOT NULL AND lease_expires_at < ?))
"""

InsertListener = Callable[[str], None]


class Database:
    """SQLite database wrapper for transcription tasks and chunk files."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self._insert_listeners: list[InsertListener] = []
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=30,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> TranscriptionTask:
        return TranscriptionTask(**dict(row))

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> ChunkFile:
        return ChunkFile(**dict(row))

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cur

    # ── Insert notifications ──────────────────────────────────────────

    def subscribe_inserts(self, listener: InsertListener):
        """Register a callable invoked with the id of every inserted task."""
        with self._lock:
            self._insert_listeners.append(listener)

    def unsubscribe_inserts(self, listener: InsertListener):
        with self._lock:
            if listener in self._insert_listeners:
                self._insert_listeners.remove(listener)

    def notify_insert(self, task_id: str):
        """Fan an insertion out to subscribers (also used by external change feeds)."""
        with self._lock:
            listeners = list(self._insert_listeners)
        for listener in listeners:
            try:
                listener(task_id)
            except Exception as e:
                logger.warning("Insert listener failed for task %s: %s", task_id, e)

    # ── Task CRUD ─────────────────────────────────────────────────────

    def create_task(self, language: str | None = None,
                    chunks: Iterable[dict] = (),
                    task_id: str | None = None) -> TranscriptionTask:
        """
        Insert a task together with its chunk rows in one transaction,
        then notify insert listeners.
        Each chunk dict carries media_ref and optionally chunk_index,
        total_chunks, created_at.
        """
        task_id = task_id or str(uuid.uuid4())
        now = self._now()
        task = TranscriptionTask(
            id=task_id,
            language=language,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO tasks
                   (id, language, status, attempt_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (task.id, task.language, task.status, task.attempt_count,
                 task.created_at, task.updated_at),
            )
            for chunk in chunks:
                self._insert_chunk(task_id, **chunk)
            self.conn.commit()
        self.notify_insert(task_id)
        return task

    def get_task(self, task_id: str) -> TranscriptionTask | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def update_task(self, task_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [task_id]
        self._execute(f"UPDATE tasks SET {sets} WHERE id = ?", vals)

    def list_claimable_tasks(self, limit: int = 5, now: str | None = None,
                             max_attempts: int = 0) -> list[TranscriptionTask]:
        """Unpublished, unclaimed (or lease-expired) tasks with at least one chunk."""
        now = now or self._now()
        sql = f"""
            SELECT * FROM tasks
            WHERE {_UNCLAIMED_PREDICATE}
              AND EXISTS (SELECT 1 FROM chunk_files c WHERE c.task_id = tasks.id)
        """
        params: list = [TaskStatus.COMPLETED, now]
        if max_attempts > 0:
            sql += " AND attempt_count < ?"
            params.append(max_attempts)
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    # ── Claims ────────────────────────────────────────────────────────

    def try_claim(self, task_id: str, worker_id: str, correlation_id: str,
                  now: str | None = None,
                  lease_expires_at: str | None = None) -> bool:
        """
        Single conditional UPDATE; succeeds only if exactly one row changed.
        """
        now = now or self._now()
        cur = self._execute(
            f"""UPDATE tasks
                SET claimed_by = ?, claimed_at = ?, lease_expires_at = ?,
                    processing_correlation_id = ?, status = ?,
                    attempt_count = attempt_count + 1,
                    error_code = NULL, error_message = NULL, updated_at = ?
                WHERE id = ? AND {_UNCLAIMED_PREDICATE}""",
            (worker_id, now, lease_expires_at, correlation_id,
             TaskStatus.PROCESSING, now, task_id, TaskStatus.COMPLETED, now),
        )
        return cur.rowcount == 1

    def update_claimed_task(self, task_id: str, worker_id: str,
                            correlation_id: str | None, **kwargs) -> bool:
        """
        Update a task only while ``worker_id`` still holds it for the run
        ``correlation_id``. Returns False if the claim has moved on.
        """
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [task_id, worker_id, correlation_id]
        cur = self._execute(
            f"""UPDATE tasks SET {sets}
                WHERE id = ? AND claimed_by = ? AND processing_correlation_id IS ?""",
            vals,
        )
        return cur.rowcount == 1

    def release_claim(self, task_id: str, worker_id: str, correlation_id: str | None,
                      status: str, **extra) -> bool:
        """Clear the lock columns and move the task to ``status``, if still held."""
        return self.update_claimed_task(
            task_id, worker_id, correlation_id,
            status=status, claimed_by=None, claimed_at=None,
            lease_expires_at=None, processing_correlation_id=None, **extra,
        )

    def renew_lease(self, task_id: str, worker_id: str, correlation_id: str | None,
                    lease_expires_at: str) -> bool:
        return self.update_claimed_task(task_id, worker_id, correlation_id,
                                        lease_expires_at=lease_expires_at)

    def is_run_active(self, task_id: str, correlation_id: str, now: str | None = None) -> bool:
        """True while the run ``correlation_id`` holds an unexpired claim on the task."""
        now = now or self._now()
        with self._lock:
            row = self.conn.execute(
                """SELECT 1 FROM tasks
                   WHERE id = ? AND processing_correlation_id = ?
                     AND claimed_by IS NOT NULL
                     AND (lease_expires_at IS NULL OR lease_expires_at >= ?)""",
                (task_id, correlation_id, now),
            ).fetchone()
        return row is not None

    def get_attempt(self, task_id: str) -> ProcessingAttempt | None:
        task = self.get_task(task_id)
        if not task or not task.claimed_by:
            return None
        return ProcessingAttempt(
            task_id=task.id,
            worker_id=task.claimed_by,
            correlation_id=task.processing_correlation_id,
            claimed_at=task.claimed_at,
            lease_expires_at=task.lease_expires_at,
        )

    # ── Chunk files ───────────────────────────────────────────────────

    def _insert_chunk(self, task_id: str, media_ref: str | None,
                      chunk_index: int | None = None,
                      total_chunks: str | int | None = None,
                      created_at: str | None = None,
                      id: str | None = None) -> ChunkFile:
        chunk = ChunkFile(
            id=id or str(uuid.uuid4()),
            task_id=task_id,
            media_ref=media_ref,
            chunk_index=chunk_index,
            total_chunks=str(total_chunks) if total_chunks is not None else None,
            created_at=created_at or self._now(),
        )
        self.conn.execute(
            """INSERT INTO chunk_files
               (id, task_id, media_ref, chunk_index, total_chunks, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (chunk.id, chunk.task_id, chunk.media_ref, chunk.chunk_index,
             chunk.total_chunks, chunk.created_at),
        )
        return chunk

    def add_chunk_file(self, task_id: str, media_ref: str | None, **kwargs) -> ChunkFile:
        with self._lock:
            chunk = self._insert_chunk(task_id, media_ref, **kwargs)
            self.conn.commit()
        return chunk

    def get_chunk_files(self, task_id: str) -> list[ChunkFile]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM chunk_files WHERE task_id = ?
                   ORDER BY chunk_index IS NULL, chunk_index, created_at""",
                (task_id,),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def count_chunk_files(self, task_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM chunk_files WHERE task_id = ?", (task_id,)
            ).fetchone()
        return row[0]

    def delete_chunk_files(self, task_id: str, chunk_ids: Optional[list[str]] = None):
        if chunk_ids is None:
            self._execute("DELETE FROM chunk_files WHERE task_id = ?", (task_id,))
            return
        with self._lock:
            self.conn.executemany(
                "DELETE FROM chunk_files WHERE task_id = ? AND id = ?",
                [(task_id, cid) for cid in chunk_ids],
            )
            self.conn.commit()

    # ── Segment transcripts (resume state) ────────────────────────────

    def save_segment_transcript(self, task_id: str, idx: int, total: int, text: str):
        self._execute(
            """INSERT OR REPLACE INTO segment_transcripts (task_id, idx, total, text)
               VALUES (?, ?, ?, ?)""",
            (task_id, idx, total, text),
        )

    def get_segment_transcripts(self, task_id: str, total: int) -> dict[int, str]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT idx, text FROM segment_transcripts
                   WHERE task_id = ? AND total = ? ORDER BY idx""",
                (task_id, total),
            ).fetchall()
        return {r['idx']: r['text'] for r in rows}

    def clear_segment_transcripts(self, task_id: str):
        self._execute("DELETE FROM segment_transcripts WHERE task_id = ?", (task_id,))
