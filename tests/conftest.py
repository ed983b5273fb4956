"""Shared fixtures for Gmail Archiver tests."""

from __future__ import annotations

import base64
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gmail_archiver.core.auth import CredentialStore
from gmail_archiver.storage.content_store import ContentStore
from gmail_archiver.storage.tracker import RunTracker


def encode_base64url(data: bytes) -> str:
    """Encode bytes the way the Gmail API does (base64url, no padding)."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def attachment_part(filename: str, attachment_id: str, mime_type: str = "application/pdf") -> dict[str, Any]:
    """A Gmail API MIME part carrying an attachment body reference."""
    return {
        "partId": attachment_id,
        "mimeType": mime_type,
        "filename": filename,
        "headers": [{"name": "Content-Disposition", "value": f'attachment; filename="{filename}"'}],
        "body": {"attachmentId": attachment_id, "size": 10},
    }


def text_part(text: str = "Please find attached.") -> dict[str, Any]:
    return {
        "partId": "0",
        "mimeType": "text/plain",
        "filename": "",
        "body": {"size": len(text), "data": encode_base64url(text.encode())},
    }


def raw_message(
    message_id: str,
    parts: list[dict[str, Any]],
    *,
    sender: str | None = "sender@example.com",
    sender_header_name: str = "From",
) -> dict[str, Any]:
    """A format=full Gmail API message with a multipart/mixed payload."""
    headers = [{"name": "Subject", "value": f"Message {message_id}"}]
    if sender is not None:
        headers.append({"name": sender_header_name, "value": sender})
    return {
        "id": message_id,
        "threadId": f"thread_{message_id}",
        "labelIds": ["INBOX", "UNREAD"],
        "payload": {
            "mimeType": "multipart/mixed",
            "filename": "",
            "headers": headers,
            "body": {"size": 0},
            "parts": parts,
        },
    }


class FakeCredentials:
    """Stand-in for google.oauth2.credentials.Credentials."""

    def __init__(
        self,
        token: str | None = "access-token",
        refresh_token: str | None = "refresh-token",
        *,
        valid: bool = True,
    ) -> None:
        self.token = token
        self.refresh_token = refresh_token
        self.expiry = datetime(2030, 1, 1) if valid else datetime(2020, 1, 1)
        self.valid = valid
        self.refresh_calls = 0

    def refresh(self, request: Any) -> None:
        self.refresh_calls += 1
        self.token = f"refreshed-token-{self.refresh_calls}"
        self.expiry = datetime.now() + timedelta(hours=1)
        self.valid = True


@pytest.fixture
def fake_credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def credential_store(fake_credentials: FakeCredentials) -> CredentialStore:
    """CredentialStore holding a valid fake credential."""
    return CredentialStore(fake_credentials, request_factory=MagicMock)  # type: ignore[arg-type]


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def content_store(tmp_path: Path, tmp_db_path: Path) -> ContentStore:
    """Connected ContentStore with deduplication enabled."""
    store = ContentStore(tmp_db_path, tmp_path / "blobs", chunk_size=1024)
    store.connect()
    yield store
    store.close()


@pytest.fixture
def tracker(tmp_db_path: Path) -> RunTracker:
    """Connected RunTracker."""
    tracker = RunTracker(tmp_db_path)
    tracker.connect()
    yield tracker
    tracker.close()
