"""Gmail Archiver - Archive Gmail attachments to a content-addressable store."""

from gmail_archiver.core.models import (
    AttachmentDescriptor,
    AttachmentMetadata,
    Credential,
    MessageError,
    MessageRef,
    SavedFile,
    ScanSummary,
    StoredAttachment,
)
from gmail_archiver.pipeline.coordinator import IngestionCoordinator

__all__ = [
    "AttachmentDescriptor",
    "AttachmentMetadata",
    "Credential",
    "IngestionCoordinator",
    "MessageError",
    "MessageRef",
    "SavedFile",
    "ScanSummary",
    "StoredAttachment",
]
