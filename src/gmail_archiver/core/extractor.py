"""Attachment extraction: MIME part tree walking and sender header lookup."""

from __future__ import annotations

import logging
from collections.abc import Generator
from typing import Any

from gmail_archiver.core.exceptions import MalformedMessageError
from gmail_archiver.core.gmail_client import GmailClient
from gmail_archiver.core.models import AttachmentDescriptor

logger = logging.getLogger(__name__)


class AttachmentExtractor:
    """Walks a raw Gmail message and fetches the bodies of its attachments."""

    def __init__(self, client: GmailClient) -> None:
        self._client = client

    def extract(self, raw_message: dict[str, Any]) -> list[AttachmentDescriptor]:
        """Extract every attachment of a message, in part-tree order."""
        return list(self.iter_attachments(raw_message))

    def iter_attachments(
        self, raw_message: dict[str, Any]
    ) -> Generator[AttachmentDescriptor, None, None]:
        """Yield attachments one at a time, fetching each body lazily.

        A part is an attachment when it has a non-empty filename and an
        attachment body id. The message is validated before the first
        attachment is fetched.

        Args:
            raw_message: Full message dict from Gmail API (format=full).

        Yields:
            AttachmentDescriptor with decoded bytes.

        Raises:
            MalformedMessageError: If the payload or the From header is missing.
        """
        message_id = raw_message.get("id", "")
        payload = raw_message.get("payload")
        if not isinstance(payload, dict):
            raise MalformedMessageError(f"Message {message_id or '?'} has no payload")

        sender = self._extract_sender(message_id, payload)

        for filename, attachment_id in self._walk_parts(payload):
            data = self._client.get_attachment(message_id, attachment_id)
            logger.debug("Fetched attachment %s (%d bytes) from %s", filename, len(data), message_id)
            yield AttachmentDescriptor(
                filename=filename,
                data=data,
                source_message_id=message_id,
                sender=sender,
            )

    @staticmethod
    def _extract_sender(message_id: str, payload: dict[str, Any]) -> str:
        """Return the From header value, matched case-insensitively."""
        for header in payload.get("headers") or []:
            if header.get("name", "").lower() == "from":
                return header.get("value", "")
        raise MalformedMessageError(f"Message {message_id or '?'} has no From header")

    def _walk_parts(self, part: dict[str, Any]) -> Generator[tuple[str, str], None, None]:
        """Recursively walk MIME parts depth-first, yielding (filename, attachment_id)."""
        filename = part.get("filename") or ""
        attachment_id = (part.get("body") or {}).get("attachmentId")
        if filename and attachment_id:
            yield filename, attachment_id

        for sub_part in part.get("parts") or []:
            yield from self._walk_parts(sub_part)
