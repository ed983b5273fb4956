"""Pipeline orchestrator: scan → extract → store → mark read."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.auth import CredentialStore, build_gmail_service
from gmail_archiver.core.exceptions import (
    AuthError,
    GmailArchiverError,
    RateLimitError,
    RunInProgressError,
    StorageError,
)
from gmail_archiver.core.extractor import AttachmentExtractor
from gmail_archiver.core.gmail_client import GmailClient
from gmail_archiver.core.models import (
    AttachmentDescriptor,
    AttachmentMetadata,
    MessageError,
    MessageRef,
    MessageState,
    SavedFile,
    ScanSummary,
)
from gmail_archiver.storage.content_store import ContentStore
from gmail_archiver.storage.tracker import RunTracker

logger = logging.getLogger(__name__)

_FATAL_ERRORS = (AuthError, RateLimitError)


class IngestionCoordinator:
    """Orchestrates one ingestion run at a time.

    Messages are processed sequentially. Per message:

    SCANNED → EXTRACTING → STORING → MARK_READ → DONE

    with FAILED reachable from EXTRACTING and STORING, and SKIPPED when a
    message carries no attachments. A message is marked read only after
    every one of its attachments has been stored.
    """

    def __init__(
        self,
        client: GmailClient,
        extractor: AttachmentExtractor,
        store: ContentStore,
        tracker: RunTracker | None = None,
        *,
        query: str = "is:unread has:attachment",
        max_results_per_page: int = 100,
        store_workers: int = 4,
        store_timeout_seconds: float | None = 60.0,
        on_progress: Callable[[ScanSummary], None] | None = None,
    ) -> None:
        self._client = client
        self._extractor = extractor
        self._store = store
        self._tracker = tracker
        self._query = query
        self._max_results_per_page = max_results_per_page
        self._store_timeout = store_timeout_seconds
        self._on_progress = on_progress
        self._store_workers = max(store_workers, 1)
        self._pool = ThreadPoolExecutor(
            max_workers=self._store_workers, thread_name_prefix="attachment-store"
        )
        self._run_lock = threading.Lock()
        self.last_summary: ScanSummary | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self, query: str | None = None) -> ScanSummary:
        """Run one scan-extract-store-mark cycle.

        Args:
            query: Gmail search query (defaults to the configured query).

        Returns:
            ScanSummary with counts, stored files and per-message errors.

        Raises:
            RunInProgressError: If another run is active.
            AuthError: If no valid credential is available; aborts the run.
            RateLimitError: If rate limiting outlasts the retry budget; aborts the run.
            GmailArchiverError: If the message listing itself fails.
        """
        if not self._run_lock.acquire(blocking=False):
            raise RunInProgressError("An ingestion run is already in progress")

        try:
            return self._run(query or self._query)
        finally:
            self._run_lock.release()

    def _run(self, query: str) -> ScanSummary:
        summary = ScanSummary()
        self.last_summary = summary
        run_id = self._tracker.start_run(query) if self._tracker else None
        logger.info("Starting ingestion run (query=%r)", query)

        try:
            for ref in self._client.scan(query, self._max_results_per_page):
                summary.messages_scanned += 1
                self._record(ref, MessageState.SCANNED, run_id=run_id)
                self._process_message(ref, summary, run_id)
                self._notify(summary)
        except Exception as e:
            summary.aborted_reason = f"{type(e).__name__}: {e}"
            logger.error("Ingestion run aborted: %s", e)
            raise
        finally:
            if self._tracker and run_id is not None:
                self._tracker.complete_run(run_id, summary)

        logger.info(
            "Ingestion run complete: scanned=%d stored=%d marked_read=%d failed=%d",
            summary.messages_scanned,
            summary.attachments_stored,
            summary.messages_marked_read,
            summary.messages_failed,
        )
        return summary

    def _process_message(
        self, ref: MessageRef, summary: ScanSummary, run_id: int | None
    ) -> None:
        """Drive one message through the state machine. Only fatal errors escape."""
        message_id = ref.message_id
        self._record(ref, MessageState.EXTRACTING, run_id=run_id)

        try:
            raw_message = self._client.get_message(message_id)
            stored = self._store_attachments(ref, raw_message, summary, run_id)
        except _FATAL_ERRORS:
            raise
        except GmailArchiverError as e:
            self._fail(ref, summary, str(e), run_id)
            return

        if stored == 0:
            note = "No attachments found; not marking as read"
            summary.notes.append(MessageError(message_id=message_id, reason=note))
            self._record(ref, MessageState.SKIPPED, run_id=run_id, error_message=note)
            logger.info("Message %s has no attachments, skipping", message_id)
            return

        self._record(ref, MessageState.MARK_READ, run_id=run_id, attachments_stored=stored)
        try:
            self._client.mark_as_read(message_id)
        except _FATAL_ERRORS:
            raise
        except GmailArchiverError as e:
            # Attachments are stored; the next run reprocesses and dedupes.
            self._fail(ref, summary, f"Failed to mark as read: {e}", run_id)
            return

        summary.messages_marked_read += 1
        self._record(ref, MessageState.DONE, run_id=run_id)
        logger.info("Message %s archived (%d attachments) and marked read", message_id, stored)

    def _store_attachments(
        self,
        ref: MessageRef,
        raw_message: dict[str, Any],
        summary: ScanSummary,
        run_id: int | None,
    ) -> int:
        """Extract and store a message's attachments on the worker pool.

        Attachments are submitted as they are fetched, with at most
        ``store_workers`` in flight. Once any store fails, nothing further is
        fetched or submitted and queued stores are cancelled. All submitted
        stores are joined before returning or raising.

        Returns:
            Number of attachments stored.

        Raises:
            StorageError: If any attachment failed to store.
            GmailArchiverError: If extraction failed.
        """
        pending: list[tuple[AttachmentDescriptor, Future[str]]] = []
        state_recorded = False

        try:
            for descriptor in self._extractor.iter_attachments(raw_message):
                if not state_recorded:
                    self._record(ref, MessageState.STORING, run_id=run_id)
                    state_recorded = True
                self._wait_for_slot(pending)
                if any(f.done() and f.exception() is not None for _, f in pending):
                    break
                future = self._pool.submit(
                    self._store.put,
                    descriptor.filename,
                    descriptor.data,
                    AttachmentMetadata(
                        message_id=descriptor.source_message_id,
                        sender=descriptor.sender,
                    ),
                )
                pending.append((descriptor, future))
        finally:
            stored, error = self._join(pending, summary)

        if error is not None:
            raise error
        return stored

    def _wait_for_slot(self, pending: list[tuple[AttachmentDescriptor, Future[str]]]) -> None:
        """Block until fewer than ``store_workers`` stores are in flight."""
        in_flight = [f for _, f in pending if not f.done()]
        if len(in_flight) >= self._store_workers:
            wait(in_flight, timeout=self._store_timeout, return_when=FIRST_COMPLETED)

    def _join(
        self,
        pending: list[tuple[AttachmentDescriptor, Future[str]]],
        summary: ScanSummary,
    ) -> tuple[int, StorageError | None]:
        """Wait for submitted stores, collecting results and the first failure."""
        stored = 0
        error: StorageError | None = None
        seen: set[str] = set()

        for descriptor, future in pending:
            if error is not None and future.cancel():
                continue
            try:
                storage_id = future.result(timeout=self._store_timeout)
            except FutureTimeoutError:
                failure = StorageError(f"Timed out storing {descriptor.filename}")
            except StorageError as e:
                failure = e
            else:
                if storage_id in seen:
                    logger.debug(
                        "Duplicate %s in %s resolved to %s", descriptor.filename,
                        descriptor.source_message_id, storage_id,
                    )
                    continue
                seen.add(storage_id)
                stored += 1
                summary.attachments_stored += 1
                summary.files_saved.append(
                    SavedFile(
                        storage_id=storage_id,
                        filename=descriptor.filename,
                        size_bytes=descriptor.size_bytes,
                        message_id=descriptor.source_message_id,
                    )
                )
                continue

            logger.error(
                "Failed to store %s from %s: %s",
                descriptor.filename, descriptor.source_message_id, failure,
            )
            if error is None:
                error = failure

        return stored, error

    def _fail(
        self, ref: MessageRef, summary: ScanSummary, reason: str, run_id: int | None
    ) -> None:
        logger.error("Message %s failed: %s", ref.message_id, reason)
        summary.per_message_errors.append(MessageError(message_id=ref.message_id, reason=reason))
        self._record(ref, MessageState.FAILED, run_id=run_id, error_message=reason)

    def _record(
        self,
        ref: MessageRef,
        state: MessageState,
        *,
        run_id: int | None,
        attachments_stored: int | None = None,
        error_message: str = "",
    ) -> None:
        if self._tracker is None:
            return
        self._tracker.record_state(
            ref.message_id,
            state,
            thread_id=ref.thread_id,
            run_id=run_id,
            attachments_stored=attachments_stored,
            error_message=error_message,
        )

    def _notify(self, summary: ScanSummary) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(summary)

    def close(self) -> None:
        """Wait for in-flight stores to finish and release the worker pool."""
        self._pool.shutdown(wait=True)


def build_coordinator(
    settings: GmailArchiverSettings,
    credentials: CredentialStore,
    store: ContentStore,
    tracker: RunTracker | None = None,
    *,
    on_progress: Callable[[ScanSummary], None] | None = None,
) -> IngestionCoordinator:
    """Wire a coordinator against the real Gmail API from settings."""
    service = build_gmail_service(settings.request_timeout_seconds)
    client = GmailClient(
        service,
        credentials,
        max_retries=settings.max_retries,
        initial_backoff_seconds=settings.initial_backoff_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        inter_page_delay_seconds=settings.inter_page_delay_seconds,
        num_retries=settings.num_retries,
    )
    return IngestionCoordinator(
        client,
        AttachmentExtractor(client),
        store,
        tracker,
        query=settings.query,
        max_results_per_page=settings.max_results_per_page,
        store_workers=settings.store_workers,
        store_timeout_seconds=settings.store_timeout_seconds,
        on_progress=on_progress,
    )
