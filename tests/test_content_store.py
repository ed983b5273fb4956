"""Tests for ContentStore — SQLite metadata plus content-addressed blobs."""

from __future__ import annotations

import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import pytest

from gmail_archiver.core.exceptions import NotFoundError, StorageError
from gmail_archiver.core.models import AttachmentMetadata
from gmail_archiver.storage.content_store import ContentStore

META_A = AttachmentMetadata(message_id="msgA", sender="alice@example.com")
META_B = AttachmentMetadata(message_id="msgB", sender="bob@example.com")


def _read_all(store: ContentStore, storage_id: str) -> bytes:
    return b"".join(store.get(storage_id))


class TestConnect:
    """ContentStore.connect() initialises schema and directories."""

    def test_creates_tables(self, content_store: ContentStore) -> None:
        """Connecting creates the attachments and attachment_refs tables."""
        tables = {
            row["name"]
            for row in content_store.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"attachments", "attachment_refs"} <= tables

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Missing parent directories for the database are created on connect."""
        db = tmp_path / "a" / "b" / "store.db"
        blobs = tmp_path / "c" / "blobs"
        with ContentStore(db, blobs):
            pass
        assert db.exists()
        assert blobs.is_dir()

    def test_conn_requires_connect(self, tmp_path: Path) -> None:
        """Accessing conn before connect() raises RuntimeError."""
        store = ContentStore(tmp_path / "x.db", tmp_path / "blobs")
        with pytest.raises(RuntimeError, match="not connected"):
            store.list()


class TestPut:
    """put() durability and identifiers."""

    def test_returns_unique_ids_for_different_content(self, content_store: ContentStore) -> None:
        """Distinct content gets distinct storage ids."""
        first = content_store.put("a.pdf", b"alpha", META_A)
        second = content_store.put("b.pdf", b"beta", META_A)

        assert first != second

    def test_record_visible_after_put(self, content_store: ContentStore) -> None:
        """A record is listed as soon as put() returns."""
        storage_id = content_store.put("a.pdf", b"0123456789", META_A)

        record = content_store.get_record(storage_id)
        assert record.filename == "a.pdf"
        assert record.size_bytes == 10
        assert record.metadata == META_A
        assert record.references == (META_A,)

    def test_blob_write_failure_raises_storage_error(self, content_store: ContentStore) -> None:
        """OSError while writing the blob surfaces as StorageError."""
        with patch("gmail_archiver.storage.content_store.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(StorageError, match="disk full"):
                content_store.put("a.pdf", b"data", META_A)

        assert content_store.list() == []

    def test_failed_blob_write_leaves_no_temp_files(
        self, content_store: ContentStore, tmp_path: Path
    ) -> None:
        """A failed blob write cleans up its temporary file."""
        with patch("gmail_archiver.storage.content_store.os.replace", side_effect=OSError("io")):
            with pytest.raises(StorageError):
                content_store.put("a.pdf", b"data", META_A)

        leftovers = [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()]
        assert leftovers == []

    def test_metadata_failure_leaves_record_invisible(self, content_store: ContentStore) -> None:
        """A failing metadata insert commits neither the record nor its reference."""
        content_store.conn.execute("DROP TABLE attachment_refs")

        with pytest.raises(StorageError, match="no such table"):
            content_store.put("a.pdf", b"data", META_A)

        assert content_store.conn.execute("SELECT COUNT(*) FROM attachments").fetchone()[0] == 0

    def test_concurrent_puts(self, content_store: ContentStore) -> None:
        """Concurrent puts of distinct payloads get distinct storage ids."""
        payloads = [f"payload-{i}".encode() for i in range(20)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(
                pool.map(lambda p: content_store.put(f"{p.decode()}.bin", p, META_A), payloads)
            )

        assert len(set(ids)) == 20
        for storage_id, payload in zip(ids, payloads):
            assert _read_all(content_store, storage_id) == payload


class TestDeduplication:
    """Identical bytes and filename share one record when dedupe is on."""

    def test_same_content_same_filename_returns_existing_id(self, content_store: ContentStore) -> None:
        """Identical bytes under the same name reuse the stored record."""
        first = content_store.put("a.pdf", b"same bytes", META_A)
        second = content_store.put("a.pdf", b"same bytes", META_B)

        assert first == second
        records = content_store.list()
        assert len(records) == 1
        assert records[0].metadata == META_A
        assert records[0].references == (META_A, META_B)
        assert _read_all(content_store, first) == b"same bytes"

    def test_repeat_from_same_message_adds_no_reference(self, content_store: ContentStore) -> None:
        """Storing the same attachment twice from one message adds no extra reference."""
        content_store.put("a.pdf", b"same", META_A)
        storage_id = content_store.put("a.pdf", b"same", META_A)

        assert content_store.get_record(storage_id).references == (META_A,)

    def test_same_content_different_filename_is_new_record(self, content_store: ContentStore) -> None:
        """Identical bytes under a new name get their own record."""
        first = content_store.put("a.pdf", b"same bytes", META_A)
        second = content_store.put("copy.pdf", b"same bytes", META_A)

        assert first != second
        assert {r.filename for r in content_store.list()} == {"a.pdf", "copy.pdf"}

    def test_dedupe_disabled_keeps_independent_records(self, tmp_path: Path) -> None:
        """With dedupe off every put creates a new record."""
        with ContentStore(tmp_path / "s.db", tmp_path / "blobs", dedupe=False) as store:
            first = store.put("a.pdf", b"same bytes", META_A)
            second = store.put("a.pdf", b"same bytes", META_A)

            assert first != second
            assert len(store.list()) == 2
            assert _read_all(store, first) == b"same bytes"
            assert _read_all(store, second) == b"same bytes"

    def test_blob_files_are_content_addressed(self, content_store: ContentStore, tmp_path: Path) -> None:
        """Blobs are stored under their sha256 digest."""
        content_store.put("a.pdf", b"same bytes", META_A)
        content_store.put("b.pdf", b"same bytes", META_A)

        blobs = [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()]
        assert len(blobs) == 1


class TestGet:
    """get() streaming and not-found handling."""

    @pytest.mark.parametrize("size", [0, 1, 1024, 1025, 3 * 1024 * 1024 + 7])
    def test_round_trips_bytes_exactly(self, content_store: ContentStore, size: int) -> None:
        """get() yields exactly the bytes that were stored."""
        payload = os.urandom(size)
        storage_id = content_store.put("blob.bin", payload, META_A)

        assert _read_all(content_store, storage_id) == payload

    def test_streams_in_chunks(self, content_store: ContentStore) -> None:
        """Large blobs are streamed in chunk_size pieces."""
        storage_id = content_store.put("blob.bin", b"x" * 2500, META_A)

        chunks = list(content_store.get(storage_id))

        assert [len(c) for c in chunks] == [1024, 1024, 452]

    def test_unknown_id_raises_before_streaming(self, content_store: ContentStore) -> None:
        """get() raises NotFoundError eagerly for unknown ids."""
        with pytest.raises(NotFoundError):
            content_store.get("does-not-exist")

    def test_unknown_record_raises(self, content_store: ContentStore) -> None:
        """get_record() raises NotFoundError for unknown ids."""
        with pytest.raises(NotFoundError):
            content_store.get_record("does-not-exist")

    def test_missing_blob_raises_not_found(self, content_store: ContentStore, tmp_path: Path) -> None:
        """A record whose blob file vanished raises NotFoundError."""
        storage_id = content_store.put("a.pdf", b"data", META_A)
        for blob in (tmp_path / "blobs").rglob("*"):
            if blob.is_file():
                blob.unlink()

        with pytest.raises(NotFoundError, match="missing"):
            content_store.get(storage_id)


class TestList:
    """list() returns every record with its metadata."""

    def test_empty_store(self, content_store: ContentStore) -> None:
        """A fresh store lists nothing."""
        assert content_store.list() == []

    def test_lists_all_records(self, content_store: ContentStore) -> None:
        """list() returns every stored record."""
        content_store.put("a.pdf", b"a" * 10, META_A)
        content_store.put("b1.png", b"b" * 5, META_B)

        records = {r.filename: r for r in content_store.list()}

        assert set(records) == {"a.pdf", "b1.png"}
        assert records["a.pdf"].size_bytes == 10
        assert records["b1.png"].metadata.sender == "bob@example.com"

    def test_persists_across_connections(self, tmp_path: Path) -> None:
        """Records survive closing and reopening the store."""
        with ContentStore(tmp_path / "s.db", tmp_path / "blobs") as store:
            storage_id = store.put("a.pdf", b"data", META_A)

        with ContentStore(tmp_path / "s.db", tmp_path / "blobs") as store:
            assert [r.storage_id for r in store.list()] == [storage_id]
            assert _read_all(store, storage_id) == b"data"

    def test_sqlite_errors_are_storage_errors(self, content_store: ContentStore) -> None:
        """SQLite failures while recording surface as StorageError."""
        with patch.object(content_store, "_insert_ref", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(StorageError, match="locked"):
                content_store.put("a.pdf", b"data", META_A)
