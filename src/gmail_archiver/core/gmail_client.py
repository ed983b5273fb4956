"""Gmail API client for scanning, message/attachment fetch, and read-state updates."""

from __future__ import annotations

import base64
import logging
import random
import time
from collections.abc import Generator
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from gmail_archiver.core.auth import CredentialStore
from gmail_archiver.core.exceptions import (
    AuthError,
    GmailArchiverError,
    RateLimitError,
    RequestTimeoutError,
)
from gmail_archiver.core.models import MessageRef

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API rate limit."""
    if isinstance(exc, HttpError):
        if exc.status_code == 429:
            return True
        if exc.status_code == 403:
            content = exc.content if isinstance(exc.content, bytes) else b""
            details = f"{exc} {content.decode('utf-8', errors='replace')}"
            return any(reason in details for reason in _RATE_LIMIT_REASONS)
        return False
    error_str = str(exc)
    return "429" in error_str or any(reason in error_str for reason in _RATE_LIMIT_REASONS)


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, HttpError) and exc.status_code == 401


def _retry_after(exc: Exception) -> float | None:
    """Extract the Retry-After hint (seconds) from an HttpError, if any."""
    if not isinstance(exc, HttpError):
        return None
    value = exc.resp.get("retry-after") if exc.resp is not None else None
    if not isinstance(value, str):
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def decode_base64url(data: str) -> bytes:
    """Decode base64url-encoded body data (RFC 4648 §5), tolerating missing padding."""
    padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
    return base64.urlsafe_b64decode(padded)


class GmailClient:
    """Thin wrapper around the Gmail API with bearer-token injection and bounded retries."""

    def __init__(
        self,
        service: Resource,
        credentials: CredentialStore,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._credentials = credentials
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._inter_page_delay = inter_page_delay_seconds
        self._num_retries = num_retries

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on 429s and timeouts.

        A fresh bearer token is attached before every attempt.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list messages").

        Returns:
            The API response dict.

        Raises:
            AuthError: When no valid credential is available or the token is rejected.
            RateLimitError: When retries are exhausted on rate limit errors.
            RequestTimeoutError: When retries are exhausted on timeouts.
            GmailArchiverError: On any other API error.
        """
        backoff = self._initial_backoff
        retry_after: float | None = None

        for attempt in range(self._max_retries + 1):
            credential = self._credentials.ensure_valid()
            request.headers["authorization"] = f"Bearer {credential.access_token}"
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if _is_auth_error(e):
                    raise AuthError(f"Access token rejected during {context}: {e}") from e

                timed_out = isinstance(e, TimeoutError)
                if not timed_out and not _is_rate_limit_error(e):
                    raise GmailArchiverError(f"Failed to {context}: {e}") from e

                retry_after = _retry_after(e)
                if attempt >= self._max_retries:
                    if timed_out:
                        raise RequestTimeoutError(
                            f"Timed out during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    raise RateLimitError(
                        f"Rate limited during {context} after "
                        f"{self._max_retries} retries: {e}",
                        retry_after=retry_after,
                    ) from e

                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                if retry_after is not None:
                    jitter = max(jitter, retry_after)
                logger.warning(
                    "%s during %s (attempt %d/%d), sleeping %.2fs",
                    "Timed out" if timed_out else "Rate limited",
                    context, attempt + 1, self._max_retries, jitter,
                )
                time.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)

        raise RateLimitError(
            f"Rate limited during {context} after {self._max_retries} retries",
            retry_after=retry_after,
        )

    def scan(
        self,
        query: str,
        max_results_per_page: int = 100,
    ) -> Generator[MessageRef, None, None]:
        """Paginate through messages matching a search query.

        This is a generator: consumers control the pace of pagination, and a
        scan cannot be resumed mid-page once abandoned. Each message id is
        yielded once even if the provider repeats it across a page boundary.

        Args:
            query: Gmail search query (e.g. "is:unread has:attachment").
            max_results_per_page: Number of messages per page (1-500).

        Yields:
            MessageRef objects in provider order.
        """
        page_token: str | None = None
        seen: set[str] = set()
        first_page = True

        while True:
            if not first_page and self._inter_page_delay > 0:
                time.sleep(self._inter_page_delay)
            first_page = False

            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "q": query,
                "maxResults": max_results_per_page,
            }
            if page_token:
                kwargs["pageToken"] = page_token

            request = self._service.users().messages().list(**kwargs)
            response = self._execute_with_retry(request, "list messages")

            messages = response.get("messages", [])
            logger.debug("Scanned page with %d message IDs", len(messages))
            for msg in messages:
                if msg["id"] in seen:
                    continue
                seen.add(msg["id"])
                yield MessageRef(message_id=msg["id"], thread_id=msg.get("threadId", ""))

            page_token = response.get("nextPageToken")
            if not page_token:
                return

    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch the full message payload (format=full)."""
        request = self._service.users().messages().get(
            userId=self._user_id,
            id=message_id,
            format="full",
        )
        return self._execute_with_retry(request, f"get message {message_id}")

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Fetch and decode the raw bytes of one attachment body."""
        request = self._service.users().messages().attachments().get(
            userId=self._user_id,
            messageId=message_id,
            id=attachment_id,
        )
        response = self._execute_with_retry(request, f"get attachment of {message_id}")
        return decode_base64url(response.get("data", ""))

    def mark_as_read(self, message_id: str) -> None:
        """Remove the UNREAD label from a message."""
        request = self._service.users().messages().modify(
            userId=self._user_id,
            id=message_id,
            body={"removeLabelIds": ["UNREAD"]},
        )
        self._execute_with_retry(request, f"mark {message_id} as read")
