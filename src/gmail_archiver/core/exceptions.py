"""Custom exceptions for the Gmail Archiver."""

from __future__ import annotations


class GmailArchiverError(Exception):
    """Base exception for all Gmail Archiver errors."""


class AuthError(GmailArchiverError):
    """No usable credential, or the provider rejected the token refresh."""


class RateLimitError(GmailArchiverError):
    """Gmail API rate limit exceeded.

    ``retry_after`` carries the provider's hint in seconds, when it sent one.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RequestTimeoutError(GmailArchiverError, TimeoutError):
    """A provider or store call did not finish before its deadline."""


class MalformedMessageError(GmailArchiverError):
    """A message lacks a header or part structure the extractor needs."""


class StorageError(GmailArchiverError):
    """Failed to durably write an attachment to the content store."""


class NotFoundError(GmailArchiverError):
    """No stored attachment exists for the requested storage id."""


class RunInProgressError(GmailArchiverError):
    """An ingestion run is already active."""
