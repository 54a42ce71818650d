"""
SQLite-backed store for processed items, sessions and raw captures.

This is the only shared mutable resource in the pipeline. Items and
sessions are stored as JSON documents with a few indexed columns for
the queries the pipeline needs (status, session, creation time).

Raw captures are kept until the item they feed has been processed
successfully; their presence after a crash is what lets recovery
re-run interrupted work.

Writers retry on "database is locked" with increasing backoff before
giving up with StoreBusyError. Calls are synchronous: when made from the
event loop, a busy retry blocks it for at most 0.3s in total.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .errors import StoreBusyError
from .types import CaptureInput, ItemDescriptor, ItemStatus, ProcessedItem, Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Busy retry: attempts and initial backoff (doubles each attempt)
BUSY_MAX_ATTEMPTS = 3
BUSY_BACKOFF_BASE = 0.1  # seconds


def _is_busy_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class CaptureStore:
    """
    Persistent storage for the capture pipeline.

    Thread-safe for individual calls. Read-modify-write cycles across
    several calls must be serialized by the caller (the pipeline holds
    a single writer lock for that).
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                session_id TEXT,
                master_capture_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);
            CREATE INDEX IF NOT EXISTS idx_items_session ON items(session_id);
            CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);

            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS captures (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL,
                descriptor TEXT,
                payload BLOB
            );
            CREATE INDEX IF NOT EXISTS idx_captures_created ON captures(created_at);
        """)
        self._conn.commit()

    def _with_retry(self, operation: Callable[[], T]) -> T:
        """Run a write, retrying while the database is busy."""
        delay = BUSY_BACKOFF_BASE
        for attempt in range(1, BUSY_MAX_ATTEMPTS + 1):
            try:
                with self._lock:
                    result = operation()
                    self._conn.commit()
                    return result
            except sqlite3.OperationalError as e:
                with self._lock:
                    self._conn.rollback()
                if not _is_busy_error(e):
                    raise
                if attempt == BUSY_MAX_ATTEMPTS:
                    raise StoreBusyError(
                        f"Store busy after {BUSY_MAX_ATTEMPTS} attempts: {e}"
                    ) from e
                logger.info("Store busy, retrying in %.1fs (attempt %d)", delay, attempt)
                time.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def save_item(self, item: ProcessedItem) -> None:
        """Insert or replace an item."""
        data = json.dumps(item.to_dict())

        def op():
            self._conn.execute("""
                INSERT OR REPLACE INTO items
                (id, status, session_id, master_capture_id, created_at, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (item.id, item.status.value, item.session_id, item.master_capture_id,
                  item.created_at, item.updated_at, data))

        self._with_retry(op)

    def get_item(self, item_id: str) -> Optional[ProcessedItem]:
        rows = self._query("SELECT data FROM items WHERE id = ?", (item_id,))
        if not rows:
            return None
        return ProcessedItem.from_dict(json.loads(rows[0]["data"]))

    def delete_item(self, item_id: str) -> bool:
        """Delete an item. Returns True if it existed."""
        def op():
            return self._conn.execute(
                "DELETE FROM items WHERE id = ?", (item_id,)
            ).rowcount > 0

        return self._with_retry(op)

    def list_items(
        self,
        status: Optional[ItemStatus] = None,
        session_id: Optional[str] = None,
        created_after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ProcessedItem]:
        """Items matching all given filters, oldest first."""
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(created_after)
        sql = "SELECT data FROM items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [ProcessedItem.from_dict(json.loads(r["data"]))
                for r in self._query(sql, tuple(params))]

    def items_in_session(self, session_id: str) -> list[ProcessedItem]:
        return self.list_items(session_id=session_id)

    def session_ids_in_use(self) -> list[str]:
        rows = self._query(
            "SELECT DISTINCT session_id FROM items WHERE session_id IS NOT NULL"
        )
        return [r["session_id"] for r in rows]

    def repoint_items(self, from_session: str, to_session: str) -> int:
        """Move every item of one session to another. Returns count moved."""
        def op():
            rows = self._conn.execute(
                "SELECT id, data FROM items WHERE session_id = ?", (from_session,)
            ).fetchall()
            for row in rows:
                data = json.loads(row["data"])
                data["session_id"] = to_session
                self._conn.execute(
                    "UPDATE items SET session_id = ?, data = ? WHERE id = ?",
                    (to_session, json.dumps(data), row["id"]),
                )
            return len(rows)

        return self._with_retry(op)

    def count_items(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM items")[0]["n"]

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def save_session(self, session: Session) -> None:
        data = json.dumps(session.to_dict())

        def op():
            self._conn.execute("""
                INSERT OR REPLACE INTO sessions (session_id, created_at, data)
                VALUES (?, ?, ?)
            """, (session.session_id, session.created_at, data))

        self._with_retry(op)

    def get_session(self, session_id: str) -> Optional[Session]:
        rows = self._query("SELECT data FROM sessions WHERE session_id = ?", (session_id,))
        if not rows:
            return None
        return Session.from_dict(json.loads(rows[0]["data"]))

    def delete_session(self, session_id: str) -> bool:
        def op():
            return self._conn.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            ).rowcount > 0

        return self._with_retry(op)

    def list_sessions(self) -> list[Session]:
        """All sessions ordered by creation time."""
        rows = self._query("SELECT data FROM sessions ORDER BY created_at, session_id")
        return [Session.from_dict(json.loads(r["data"])) for r in rows]

    # -------------------------------------------------------------------------
    # Raw captures
    # -------------------------------------------------------------------------

    def save_capture(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
    ) -> None:
        """Persist a raw capture until its processing succeeds."""
        data = json.dumps(capture.to_dict())
        desc = json.dumps(descriptor.to_dict()) if descriptor else None

        def op():
            self._conn.execute("""
                INSERT OR REPLACE INTO captures (id, created_at, data, descriptor, payload)
                VALUES (?, ?, ?, ?, ?)
            """, (capture.id, capture.created_at, data, desc, capture.payload))

        self._with_retry(op)

    def _row_to_capture(self, row) -> tuple[CaptureInput, Optional[ItemDescriptor]]:
        capture = CaptureInput.from_dict(json.loads(row["data"]), payload=row["payload"])
        descriptor = None
        if row["descriptor"]:
            descriptor = ItemDescriptor.from_dict(json.loads(row["descriptor"]))
        return capture, descriptor

    def get_capture(self, capture_id: str) -> Optional[tuple[CaptureInput, Optional[ItemDescriptor]]]:
        rows = self._query(
            "SELECT data, descriptor, payload FROM captures WHERE id = ?", (capture_id,)
        )
        return self._row_to_capture(rows[0]) if rows else None

    def delete_capture(self, capture_id: str) -> bool:
        """Delete a raw capture. A missing capture is not an error."""
        def op():
            return self._conn.execute(
                "DELETE FROM captures WHERE id = ?", (capture_id,)
            ).rowcount > 0

        return self._with_retry(op)

    def list_captures(self) -> list[tuple[CaptureInput, Optional[ItemDescriptor]]]:
        """All pending raw captures, oldest first."""
        rows = self._query(
            "SELECT data, descriptor, payload FROM captures ORDER BY created_at, id"
        )
        return [self._row_to_capture(r) for r in rows]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

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
