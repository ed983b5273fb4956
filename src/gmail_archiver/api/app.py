"""FastAPI application exposing OAuth login, ingestion runs, and archived files."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.auth import (
    CredentialStore,
    authorization_url,
    build_oauth_flow,
    exchange_code,
    load_cached_credentials,
    save_token,
)
from gmail_archiver.core.exceptions import (
    AuthError,
    NotFoundError,
    RateLimitError,
    RunInProgressError,
)
from gmail_archiver.core.models import MessageError, ScanSummary, StoredAttachment
from gmail_archiver.pipeline.coordinator import IngestionCoordinator, build_coordinator
from gmail_archiver.storage.content_store import ContentStore
from gmail_archiver.storage.tracker import RunTracker

logger = logging.getLogger(__name__)

CoordinatorFactory = Callable[
    [GmailArchiverSettings, CredentialStore, ContentStore, RunTracker | None],
    IngestionCoordinator,
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Shutdown: drain in-flight attachment writes, then close stores."""
    yield
    coordinator: IngestionCoordinator | None = app.state.coordinator
    if coordinator is not None:
        coordinator.close()
    app.state.store.close()
    if app.state.tracker is not None:
        app.state.tracker.close()
    logger.info("shutdown_complete")


def create_app(
    settings: GmailArchiverSettings | None = None,
    *,
    credentials: CredentialStore | None = None,
    store: ContentStore | None = None,
    tracker: RunTracker | None = None,
    coordinator: IngestionCoordinator | None = None,
    coordinator_factory: CoordinatorFactory = build_coordinator,
    oauth_flow: Any = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    Components not passed in are built from settings. The coordinator is
    built lazily on the first ``POST /fetch``.
    """
    if settings is None:
        settings = GmailArchiverSettings()

    if credentials is None:
        credentials = CredentialStore(
            load_cached_credentials(settings.token_path),
            on_refresh=lambda creds: save_token(creds, settings.token_path),
        )
    if store is None:
        settings.ensure_directories()
        store = ContentStore(
            settings.database_path,
            settings.blob_dir,
            dedupe=settings.dedupe,
            chunk_size=settings.chunk_size,
        )
        store.connect()
        if tracker is None:
            tracker = RunTracker(settings.database_path)
            tracker.connect()

    app = FastAPI(title="Gmail Archiver", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.store = store
    app.state.tracker = tracker
    app.state.coordinator = coordinator
    app.state.oauth_flow = oauth_flow
    init_lock = threading.Lock()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _get_coordinator() -> IngestionCoordinator:
        with init_lock:
            if app.state.coordinator is None:
                app.state.coordinator = coordinator_factory(
                    settings, credentials, store, tracker
                )
            return app.state.coordinator

    def _get_flow() -> Any:
        with init_lock:
            if app.state.oauth_flow is None:
                app.state.oauth_flow = build_oauth_flow(settings)
            return app.state.oauth_flow

    @app.get("/auth/google")
    def auth_google() -> JSONResponse:
        try:
            url = authorization_url(_get_flow())
        except AuthError as e:
            logger.error("Cannot start OAuth flow: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"authUrl": url})

    @app.get("/auth/google/callback", response_model=None)
    def auth_google_callback(code: str = Query(...)) -> JSONResponse | RedirectResponse:
        try:
            creds = exchange_code(_get_flow(), code)
        except AuthError as e:
            logger.error("Authentication failed: %s", e)
            return JSONResponse({"error": "Authentication failed."}, status_code=500)

        credentials.set(creds)
        try:
            save_token(creds, settings.token_path)
        except OSError as e:
            logger.warning("Failed to cache token at %s: %s", settings.token_path, e)
        logger.info("Authentication successful")
        return RedirectResponse(f"{settings.frontend_url}?auth_success=true", status_code=302)

    @app.post("/fetch")
    def fetch() -> JSONResponse:
        if not credentials.has_credentials:
            return JSONResponse(
                {"error": "Not authenticated. Please log in first."}, status_code=401
            )

        try:
            summary = _get_coordinator().run()
        except RunInProgressError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except AuthError as e:
            logger.warning("Ingestion run rejected: %s", e)
            return JSONResponse({"error": str(e)}, status_code=401)
        except RateLimitError as e:
            headers = {"Retry-After": str(int(e.retry_after))} if e.retry_after else None
            return JSONResponse({"error": str(e)}, status_code=429, headers=headers)
        except Exception:
            logger.exception("Failed to fetch and save attachments")
            return JSONResponse(
                {"error": "Failed to fetch and save attachments."}, status_code=500
            )

        return JSONResponse(_fetch_response(summary))

    @app.get("/files")
    def list_files() -> JSONResponse:
        return JSONResponse([_file_json(record) for record in store.list()])

    @app.get("/files/{storage_id}/download", response_model=None)
    def download_file(storage_id: str) -> JSONResponse | StreamingResponse:
        try:
            record = store.get_record(storage_id)
            chunks = store.get(storage_id)
        except NotFoundError:
            return JSONResponse({"error": "File not found."}, status_code=404)

        return StreamingResponse(
            chunks,
            media_type="application/octet-stream",
            headers={
                "Content-Disposition": _content_disposition(record.filename),
                "Content-Length": str(record.size_bytes),
            },
        )

    @app.get("/status")
    def status(request: Request) -> JSONResponse:
        active = request.app.state.coordinator
        body: dict[str, Any] = {
            "authenticated": credentials.has_credentials,
            "running": bool(active and active.is_running),
        }
        if tracker is not None:
            body["messages"] = tracker.count_by_state()
        return JSONResponse(body)

    return app


def _fetch_response(summary: ScanSummary) -> dict[str, Any]:
    files = [
        {
            "id": saved.storage_id,
            "filename": saved.filename,
            "size": saved.size_bytes,
            "messageId": saved.message_id,
        }
        for saved in summary.files_saved
    ]
    if summary.messages_scanned == 0:
        message = "No new unread emails with attachments found."
    else:
        message = f"Successfully saved {len(files)} attachments."
    return {
        "message": message,
        "filesSaved": files,
        "summary": {
            "messagesScanned": summary.messages_scanned,
            "attachmentsStored": summary.attachments_stored,
            "messagesMarkedRead": summary.messages_marked_read,
            "perMessageErrors": [_error_json(err) for err in summary.per_message_errors],
            "notes": [_error_json(note) for note in summary.notes],
        },
    }


def _error_json(error: MessageError) -> dict[str, str]:
    return {"messageId": error.message_id, "reason": error.reason}


def _file_json(record: StoredAttachment) -> dict[str, Any]:
    return {
        "id": record.storage_id,
        "filename": record.filename,
        "size": record.size_bytes,
        "uploadDate": record.uploaded_at.isoformat(),
        "metadata": {
            "messageId": record.metadata.message_id,
            "sender": record.metadata.sender,
        },
        "references": [
            {"messageId": ref.message_id, "sender": ref.sender} for ref in record.references
        ],
    }


def _content_disposition(filename: str) -> str:
    """Attachment header; non-ASCII or quote-bearing names use RFC 5987 encoding."""
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'
