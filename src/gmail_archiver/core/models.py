"""Dataclasses for the Gmail Archiver domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class Credential:
    """Snapshot of the OAuth token pair."""

    access_token: str
    refresh_token: str | None
    expiry: datetime | None = None


@dataclass(frozen=True)
class MessageRef:
    """Lightweight message reference from the Gmail list API."""

    message_id: str
    thread_id: str


@dataclass(frozen=True)
class AttachmentDescriptor:
    """An extracted attachment, held only until it is stored."""

    filename: str
    data: bytes = field(repr=False)
    source_message_id: str
    sender: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class AttachmentMetadata:
    """Origin of a stored attachment."""

    message_id: str
    sender: str


@dataclass(frozen=True)
class StoredAttachment:
    """Durable record of an archived attachment.

    ``metadata`` is the first origin recorded; ``references`` lists every
    message that stored the same content under the same filename.
    """

    storage_id: str
    filename: str
    size_bytes: int
    uploaded_at: datetime
    metadata: AttachmentMetadata
    references: tuple[AttachmentMetadata, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SavedFile:
    """An attachment stored during a run."""

    storage_id: str
    filename: str
    size_bytes: int
    message_id: str


@dataclass(frozen=True)
class MessageError:
    """A failure or note isolated to one message."""

    message_id: str
    reason: str


class MessageState(str, Enum):
    """Per-message states of an ingestion run."""

    SCANNED = "scanned"
    EXTRACTING = "extracting"
    STORING = "storing"
    MARK_READ = "mark_read"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ScanSummary:
    """Mutable result of one ingestion run."""

    messages_scanned: int = 0
    attachments_stored: int = 0
    messages_marked_read: int = 0
    per_message_errors: list[MessageError] = field(default_factory=list)
    notes: list[MessageError] = field(default_factory=list)
    files_saved: list[SavedFile] = field(default_factory=list)
    aborted_reason: str | None = None

    @property
    def messages_failed(self) -> int:
        return len({err.message_id for err in self.per_message_errors})
