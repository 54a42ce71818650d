"""
Inbox queue for externally submitted captures, using SQLite.

Share sheets, widgets and the CLI drop captures here; the processing
manager drains them one at a time through the pipeline. A capture may
carry attachments (extra images taken in the same moment), stored in a
side table and turned into child records when the capture is drained.

Dequeue is atomic: entries transition from 'pending' to 'processing'
with a PID claim inside a single IMMEDIATE transaction. Stale claims
left by a crashed process are recovered automatically.

Failed entries are retried with exponential backoff (30s, 60s, 120s, ...
up to 1h). Entries that exhaust MAX_ATTEMPTS are moved to 'failed'
(dead letter) and kept with their error until retried explicitly.
"""

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .types import CaptureInput, ItemDescriptor

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (processor crashed)
STALE_CLAIM_SECONDS = 600

MAX_ATTEMPTS = 3

RETRY_BACKOFF_BASE = 30
RETRY_BACKOFF_MAX = 3600


@dataclass
class QueuedCapture:
    """A capture waiting in the inbox."""
    capture: CaptureInput
    descriptor: Optional[ItemDescriptor] = None
    attachments: list[bytes] = field(default_factory=list)
    queued_at: str = ""
    attempts: int = 0

    @property
    def id(self) -> str:
        return self.capture.id


class CaptureQueue:
    """SQLite-backed inbox of captures awaiting processing."""

    def __init__(self, queue_path: Path):
        """
        Args:
            queue_path: Path to SQLite database file
        """
        self._queue_path = queue_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        # Manual transaction control for BEGIN IMMEDIATE on dequeue
        self._conn = sqlite3.connect(
            str(self._queue_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS inbox (
                id TEXT PRIMARY KEY,
                capture TEXT NOT NULL,
                descriptor TEXT,
                payload BLOB,
                queued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                last_error TEXT,
                retry_after TEXT
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS attachments (
                capture_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload BLOB NOT NULL,
                PRIMARY KEY (capture_id, position)
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_inbox_queued ON inbox(queued_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_inbox_status ON inbox(status)")

    def _recover_stale_claims(self) -> int:
        """Reset entries claimed by crashed processors back to pending."""
        now = datetime.now(timezone.utc).isoformat()
        cursor = self._conn.execute("""
            UPDATE inbox
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL
            WHERE status = 'processing'
              AND claimed_at IS NOT NULL
              AND julianday(?) - julianday(claimed_at) > ? / 86400.0
        """, (now, STALE_CLAIM_SECONDS))
        if cursor.rowcount:
            logger.info("Recovered %d stale inbox claims", cursor.rowcount)
        return cursor.rowcount

    def enqueue(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
        attachments: Optional[list[bytes]] = None,
    ) -> None:
        """
        Add a capture to the inbox.

        Re-enqueueing the same capture id replaces the entry and resets
        it to pending.
        """
        now = datetime.now(timezone.utc).isoformat()
        desc = json.dumps(descriptor.to_dict()) if descriptor else None
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute("""
                    INSERT OR REPLACE INTO inbox
                    (id, capture, descriptor, payload, queued_at, attempts, status,
                     claimed_by, claimed_at, last_error, retry_after)
                    VALUES (?, ?, ?, ?, ?, 0, 'pending', NULL, NULL, NULL, NULL)
                """, (capture.id, json.dumps(capture.to_dict()), desc, capture.payload, now))
                self._conn.execute("DELETE FROM attachments WHERE capture_id = ?", (capture.id,))
                self._conn.executemany(
                    "INSERT INTO attachments (capture_id, position, payload) VALUES (?, ?, ?)",
                    [(capture.id, i, data) for i, data in enumerate(attachments or [])],
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        logger.debug("Queued capture %s", capture.id)

    def _attachments(self, capture_id: str) -> list[bytes]:
        cursor = self._conn.execute(
            "SELECT payload FROM attachments WHERE capture_id = ? ORDER BY position",
            (capture_id,),
        )
        return [row[0] for row in cursor.fetchall()]

    def dequeue(self, limit: int = 1) -> list[QueuedCapture]:
        """
        Atomically claim the oldest pending captures.

        Entries move from 'pending' to 'processing'. Call complete()
        after success or fail() to release them.
        """
        pid = str(os.getpid())
        now = datetime.now(timezone.utc).isoformat()

        with self._lock:
            self._recover_stale_claims()
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = self._conn.execute("""
                    SELECT id, capture, descriptor, payload, queued_at, attempts
                    FROM inbox
                    WHERE status = 'pending'
                      AND (retry_after IS NULL OR retry_after <= ?)
                    ORDER BY queued_at ASC
                    LIMIT ?
                """, (now, limit))
                entries = []
                for row in cursor.fetchall():
                    descriptor = ItemDescriptor.from_dict(json.loads(row[2])) if row[2] else None
                    entries.append(QueuedCapture(
                        capture=CaptureInput.from_dict(json.loads(row[1]), payload=row[3]),
                        descriptor=descriptor,
                        attachments=self._attachments(row[0]),
                        queued_at=row[4],
                        attempts=row[5] + 1,
                    ))
                if entries:
                    self._conn.executemany("""
                        UPDATE inbox
                        SET status = 'processing', claimed_by = ?, claimed_at = ?,
                            attempts = attempts + 1
                        WHERE id = ?
                    """, [(pid, now, e.id) for e in entries])
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return entries

    def complete(self, capture_id: str) -> None:
        """Remove a capture from the inbox after it was handed to the pipeline."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute("DELETE FROM inbox WHERE id = ?", (capture_id,))
                self._conn.execute("DELETE FROM attachments WHERE capture_id = ?", (capture_id,))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def fail(self, capture_id: str, error: Optional[str] = None) -> bool:
        """
        Release a claimed capture after a failed attempt.

        Goes back to pending with exponential backoff, or to the dead
        letter once MAX_ATTEMPTS is reached.

        Returns:
            True if the capture was moved to the dead letter
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts FROM inbox WHERE id = ?", (capture_id,)
            ).fetchone()
            attempts = row[0] if row else 1

            if attempts >= MAX_ATTEMPTS:
                self._conn.execute("""
                    UPDATE inbox
                    SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                        last_error = ?
                    WHERE id = ?
                """, (error, capture_id))
                logger.warning("Abandoned capture %s after %d attempts: %s",
                               capture_id, attempts, error or "unknown")
                return True

            delay = min(RETRY_BACKOFF_BASE * (2 ** (attempts - 1)), RETRY_BACKOFF_MAX)
            retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()
            self._conn.execute("""
                UPDATE inbox
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?, retry_after = ?
                WHERE id = ?
            """, (error, retry_at, capture_id))
            logger.info("Capture %s failed (attempt %d), retry after %ds: %s",
                        capture_id, attempts, delay, error or "unknown")
            return False

    def release(self, capture_id: str) -> None:
        """Return an interrupted claim to pending without counting the attempt."""
        with self._lock:
            self._conn.execute("""
                UPDATE inbox
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    attempts = MAX(attempts - 1, 0)
                WHERE id = ? AND status = 'processing'
            """, (capture_id,))

    def count(self) -> int:
        """Pending captures (excludes processing and failed)."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM inbox WHERE status = 'pending'"
        ).fetchone()[0]

    def stats(self) -> dict:
        cursor = self._conn.execute("SELECT status, COUNT(*) FROM inbox GROUP BY status")
        by_status = {row[0] or "pending": row[1] for row in cursor.fetchall()}
        oldest = self._conn.execute("SELECT MIN(queued_at) FROM inbox").fetchone()[0]
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "failed": by_status.get("failed", 0),
            "total": sum(by_status.values()),
            "oldest": oldest,
            "queue_path": str(self._queue_path),
        }

    def list_failed(self) -> list[dict]:
        """Dead-letter entries with their last error."""
        cursor = self._conn.execute("""
            SELECT id, attempts, last_error, queued_at
            FROM inbox
            WHERE status = 'failed'
            ORDER BY queued_at ASC
        """)
        return [
            {"id": row[0], "attempts": row[1], "last_error": row[2], "queued_at": row[3]}
            for row in cursor.fetchall()
        ]

    def retry_failed(self) -> int:
        """Reset dead-letter entries to pending. Returns the count moved."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE inbox
                SET status = 'pending', attempts = 0, claimed_by = NULL,
                    claimed_at = NULL, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
            if cursor.rowcount:
                logger.info("Reset %d failed captures back to pending", cursor.rowcount)
            return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
