"""Content-addressable attachment store: blobs on disk, metadata in SQLite."""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import tempfile
import threading
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from gmail_archiver.core.exceptions import NotFoundError, StorageError
from gmail_archiver.core.models import AttachmentMetadata, StoredAttachment

logger = logging.getLogger(__name__)


class ContentStore:
    """Durable attachment store.

    Blob files are named by their SHA-256 digest under ``blob_dir``. A blob
    becomes visible only once its metadata row is committed, and rows are
    only committed after the blob has been fsynced and renamed into place.

    Tables:
    - attachments: one row per storage id
    - attachment_refs: every (storage id, message) origin of a record
    """

    def __init__(
        self,
        db_path: Path,
        blob_dir: Path,
        *,
        dedupe: bool = True,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._db_path = db_path
        self._blob_dir = blob_dir
        self._dedupe = dedupe
        self._chunk_size = chunk_size
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._blob_dir.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> ContentStore:
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
            CREATE TABLE IF NOT EXISTS attachments (
                storage_id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                sha256 TEXT NOT NULL,
                uploaded_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_attachments_content
                ON attachments(sha256, filename);

            CREATE TABLE IF NOT EXISTS attachment_refs (
                storage_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                sender TEXT NOT NULL DEFAULT '',
                recorded_at TEXT NOT NULL,
                PRIMARY KEY (storage_id, message_id),
                FOREIGN KEY (storage_id) REFERENCES attachments(storage_id)
            );
        """)

    def put(self, filename: str, data: bytes, metadata: AttachmentMetadata) -> str:
        """Durably store an attachment and return its storage id.

        With deduplication enabled, identical bytes under the same filename
        return the existing storage id and record ``metadata`` as an
        additional reference.

        Args:
            filename: Original attachment filename.
            data: Raw attachment bytes.
            metadata: Originating message and sender.

        Returns:
            The storage id of the record holding these bytes.

        Raises:
            StorageError: If the blob or its metadata could not be written.
        """
        digest = hashlib.sha256(data).hexdigest()

        try:
            self._write_blob(digest, data)
        except OSError as e:
            raise StorageError(f"Failed to write blob for {filename}: {e}") from e

        now = datetime.now(UTC).isoformat()
        try:
            with self._lock:
                if self._dedupe:
                    row = self.conn.execute(
                        "SELECT storage_id FROM attachments WHERE sha256 = ? AND filename = ? "
                        "ORDER BY uploaded_at LIMIT 1",
                        (digest, filename),
                    ).fetchone()
                    if row is not None:
                        with self.conn:
                            self._insert_ref(row["storage_id"], metadata, now)
                        logger.debug("Deduplicated %s -> %s", filename, row["storage_id"])
                        return row["storage_id"]

                storage_id = uuid.uuid4().hex
                with self.conn:
                    self.conn.execute(
                        """INSERT INTO attachments
                           (storage_id, filename, size_bytes, sha256, uploaded_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (storage_id, filename, len(data), digest, now),
                    )
                    self._insert_ref(storage_id, metadata, now)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record {filename}: {e}") from e

        logger.info("Stored %s (%d bytes) as %s", filename, len(data), storage_id)
        return storage_id

    def _insert_ref(self, storage_id: str, metadata: AttachmentMetadata, now: str) -> None:
        self.conn.execute(
            """INSERT OR IGNORE INTO attachment_refs
               (storage_id, message_id, sender, recorded_at)
               VALUES (?, ?, ?, ?)""",
            (storage_id, metadata.message_id, metadata.sender, now),
        )

    def _blob_path(self, digest: str) -> Path:
        return self._blob_dir / digest[:2] / digest

    def _write_blob(self, digest: str, data: bytes) -> None:
        """Write a blob via temp file + fsync + atomic rename. No-op if present."""
        path = self._blob_path(digest)
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list(self) -> list[StoredAttachment]:
        """List metadata of every stored attachment."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM attachments ORDER BY uploaded_at, storage_id"
            ).fetchall()
            refs = self._load_refs()
        return [self._to_record(row, refs.get(row["storage_id"], ())) for row in rows]

    def get_record(self, storage_id: str) -> StoredAttachment:
        """Get the metadata record for a storage id.

        Raises:
            NotFoundError: If the storage id is unknown.
        """
        with self._lock:
            row = self._get_row(storage_id)
            refs = self._load_refs(storage_id)
        return self._to_record(row, refs.get(storage_id, ()))

    def get(self, storage_id: str) -> Iterator[bytes]:
        """Open a stored attachment for streaming.

        Lookup happens before the iterator is returned, so an unknown id
        fails without producing any bytes.

        Raises:
            NotFoundError: If the storage id is unknown or its blob is missing.
        """
        with self._lock:
            row = self._get_row(storage_id)
        path = self._blob_path(row["sha256"])
        try:
            handle = path.open("rb")
        except FileNotFoundError as e:
            logger.error("Blob missing for %s at %s", storage_id, path)
            raise NotFoundError(f"Blob for {storage_id} is missing") from e
        return self._iter_chunks(handle)

    def _iter_chunks(self, handle: BinaryIO) -> Iterator[bytes]:
        with handle:
            while chunk := handle.read(self._chunk_size):
                yield chunk

    def _get_row(self, storage_id: str) -> sqlite3.Row:
        row = self.conn.execute(
            "SELECT * FROM attachments WHERE storage_id = ?", (storage_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"No stored attachment with id {storage_id}")
        return row

    def _load_refs(
        self, storage_id: str | None = None
    ) -> dict[str, tuple[AttachmentMetadata, ...]]:
        sql = "SELECT storage_id, message_id, sender FROM attachment_refs"
        params: tuple[str, ...] = ()
        if storage_id is not None:
            sql += " WHERE storage_id = ?"
            params = (storage_id,)
        sql += " ORDER BY recorded_at, rowid"

        grouped: dict[str, list[AttachmentMetadata]] = {}
        for row in self.conn.execute(sql, params).fetchall():
            grouped.setdefault(row["storage_id"], []).append(
                AttachmentMetadata(message_id=row["message_id"], sender=row["sender"])
            )
        return {key: tuple(value) for key, value in grouped.items()}

    @staticmethod
    def _to_record(
        row: sqlite3.Row, refs: tuple[AttachmentMetadata, ...]
    ) -> StoredAttachment:
        metadata = refs[0] if refs else AttachmentMetadata(message_id="", sender="")
        return StoredAttachment(
            storage_id=row["storage_id"],
            filename=row["filename"],
            size_bytes=row["size_bytes"],
            uploaded_at=datetime.fromisoformat(row["uploaded_at"]),
            metadata=metadata,
            references=refs,
        )
