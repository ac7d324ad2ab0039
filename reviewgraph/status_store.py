"""SQLite-backed job status, cancellation flags and durable job queue.

Status rows are keyed by job id and hold the fixed :class:`IndexStatus`
field set. Once a job reaches a terminal phase its row is frozen: later
writes are ignored. Every accepted write is published to in-process
subscribers (the job event channel).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .models import IndexJob, IndexStatus

logger = logging.getLogger(__name__)

CANCEL_TTL_SECONDS = 3600

StatusListener = Callable[[IndexStatus], None]


class StatusStore:
    """Persist job statuses, cancellation flags and queued jobs."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._listeners: List[StatusListener] = []
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("""
                CREATE TABLE IF NOT EXISTS job_status (
                    id         TEXT PRIMARY KEY,
                    phase      TEXT NOT NULL,
                    payload    TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS cancellations (
                    job_id     TEXT PRIMARY KEY,
                    expires_at REAL NOT NULL
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS job_queue (
                    id           TEXT PRIMARY KEY,
                    payload      TEXT NOT NULL,
                    state        TEXT NOT NULL,
                    attempts     INTEGER NOT NULL DEFAULT 0,
                    available_at REAL NOT NULL,
                    created_at   REAL NOT NULL
                )
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_queue_state ON job_queue(state, available_at)"
            )
            self.conn.commit()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener* for every accepted status write. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def save_status(self, status: IndexStatus) -> bool:
        """Persist *status*. Returns False when the stored row is already terminal."""
        with self._lock:
            existing = self.get_status(status.id)
            if existing is not None and existing.phase.is_terminal:
                logger.debug(
                    "Ignoring status write for %s: already %s",
                    status.id, existing.phase.value,
                )
                return False
            self.conn.execute(
                """
                INSERT INTO job_status (id, phase, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    phase = excluded.phase,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (status.id, status.phase.value, json.dumps(status.to_dict()), time.time()),
            )
            self.conn.commit()

        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.warning("Status listener failed for job %s: %s", status.id, exc)
        return True

    def get_status(self, job_id: str) -> Optional[IndexStatus]:
        with self._lock:
            row = self.conn.execute(
                "SELECT payload FROM job_status WHERE id = ?", (job_id,),
            ).fetchone()
        if row is None:
            return None
        return IndexStatus.from_dict(json.loads(row["payload"]))

    def list_statuses(self, limit: int = 50) -> List[IndexStatus]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT payload FROM job_status ORDER BY updated_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [IndexStatus.from_dict(json.loads(r["payload"])) for r in rows]

    # ------------------------------------------------------------------
    # Cancellation flags
    # ------------------------------------------------------------------

    def mark_cancelled(self, job_id: str, ttl: float = CANCEL_TTL_SECONDS) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO cancellations (job_id, expires_at) VALUES (?, ?)
                ON CONFLICT(job_id) DO UPDATE SET expires_at = excluded.expires_at
                """,
                (job_id, time.time() + ttl),
            )
            self.conn.commit()
        logger.info("Job %s marked for cancellation", job_id)

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT expires_at FROM cancellations WHERE job_id = ?", (job_id,),
            ).fetchone()
        return row is not None and row["expires_at"] > time.time()

    def clear_cancelled(self, job_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM cancellations WHERE job_id = ?", (job_id,))
            self.conn.commit()

    # ------------------------------------------------------------------
    # Durable queue
    # ------------------------------------------------------------------

    def enqueue(self, job: IndexJob) -> None:
        now = time.time()
        with self._lock:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO job_queue (id, payload, state, attempts, available_at, created_at)
                VALUES (?, ?, 'queued', 0, ?, ?)
                """,
                (job.id, json.dumps(job.to_dict()), now, now),
            )
            self.conn.commit()

    def claim_next(self) -> Optional[Dict[str, Any]]:
        """Atomically move the oldest available queued job to ``running``."""
        with self._lock:
            row = self.conn.execute(
                """
                SELECT id, payload, attempts FROM job_queue
                WHERE state = 'queued' AND available_at <= ?
                ORDER BY created_at, rowid LIMIT 1
                """,
                (time.time(),),
            ).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE job_queue SET state = 'running', attempts = attempts + 1 WHERE id = ?",
                (row["id"],),
            )
            self.conn.commit()
        return {
            "job": IndexJob(**json.loads(row["payload"])),
            "attempts": row["attempts"] + 1,
        }

    def requeue(self, job_id: str, delay: float) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE job_queue SET state = 'queued', available_at = ? WHERE id = ?",
                (time.time() + delay, job_id),
            )
            self.conn.commit()

    def finish(self, job_id: str, state: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE job_queue SET state = ? WHERE id = ?", (state, job_id),
            )
            self.conn.commit()

    def queue_depth(self) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM job_queue WHERE state = 'queued'"
            ).fetchone()
        return int(row[0])
