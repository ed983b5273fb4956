"""SQLite-based bookkeeping for ingestion runs and per-message state."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from gmail_archiver.core.models import MessageState, ScanSummary

logger = logging.getLogger(__name__)


class RunTracker:
    """Tracks ingestion state in SQLite.

    Tables:
    - messages: last known state of every scanned message
    - ingestion_runs: audit log of runs with their summary counts
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> RunTracker:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL,
                attachments_stored INTEGER NOT NULL DEFAULT 0,
                error_message TEXT DEFAULT '',
                run_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_state ON messages(state);

            CREATE TABLE IF NOT EXISTS ingestion_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                messages_scanned INTEGER DEFAULT 0,
                attachments_stored INTEGER DEFAULT 0,
                messages_marked_read INTEGER DEFAULT 0,
                messages_failed INTEGER DEFAULT 0,
                aborted_reason TEXT DEFAULT ''
            );
        """)

    def start_run(self, query: str) -> int:
        """Record the start of an ingestion run. Returns the run_id."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO ingestion_runs (query, started_at) VALUES (?, ?)",
                (query, now),
            )
            self.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(self, run_id: int, summary: ScanSummary) -> None:
        """Record the completion of a run with its summary counts."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self.conn.execute(
                """UPDATE ingestion_runs SET
                   completed_at = ?, messages_scanned = ?, attachments_stored = ?,
                   messages_marked_read = ?, messages_failed = ?, aborted_reason = ?
                   WHERE run_id = ?""",
                (
                    now,
                    summary.messages_scanned,
                    summary.attachments_stored,
                    summary.messages_marked_read,
                    summary.messages_failed,
                    summary.aborted_reason or "",
                    run_id,
                ),
            )
            self.conn.commit()

    def record_state(
        self,
        message_id: str,
        state: MessageState,
        *,
        thread_id: str = "",
        run_id: int | None = None,
        attachments_stored: int | None = None,
        error_message: str = "",
    ) -> None:
        """Upsert the state of a message.

        The error message is cleared whenever a message moves to a non-failed state.
        """
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self.conn.execute(
                """INSERT INTO messages
                   (message_id, thread_id, state, attachments_stored, error_message,
                    run_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(message_id) DO UPDATE SET
                       thread_id = CASE WHEN excluded.thread_id != ''
                                   THEN excluded.thread_id ELSE messages.thread_id END,
                       state = excluded.state,
                       attachments_stored = COALESCE(?, messages.attachments_stored),
                       error_message = excluded.error_message,
                       run_id = COALESCE(excluded.run_id, messages.run_id),
                       updated_at = excluded.updated_at""",
                (
                    message_id,
                    thread_id,
                    state.value,
                    attachments_stored or 0,
                    error_message,
                    run_id,
                    now,
                    now,
                    attachments_stored,
                ),
            )
            self.conn.commit()

    def get_message(self, message_id: str) -> dict | None:
        """Get full message record by ID."""
        row = self.conn.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        ).fetchone()
        return dict(row) if row else None

    def count_by_state(self) -> dict[str, int]:
        """Get count of messages grouped by state."""
        rows = self.conn.execute(
            "SELECT state, COUNT(*) as cnt FROM messages GROUP BY state"
        ).fetchall()
        return {row["state"]: row["cnt"] for row in rows}

    def recent_runs(self, limit: int = 10) -> list[dict]:
        """Get the most recent runs, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM ingestion_runs ORDER BY run_id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(row) for row in rows]
