"""Minimal CLI entry point for the Gmail Archiver."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.auth import (
    CredentialStore,
    load_cached_credentials,
    run_local_login,
    save_token,
)
from gmail_archiver.core.models import ScanSummary
from gmail_archiver.pipeline.coordinator import build_coordinator
from gmail_archiver.storage.content_store import ContentStore
from gmail_archiver.storage.tracker import RunTracker


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(summary: ScanSummary) -> None:
    """Print progress updates to stdout."""
    print(
        f"scanned={summary.messages_scanned} "
        f"stored={summary.attachments_stored} "
        f"marked_read={summary.messages_marked_read} "
        f"failed={summary.messages_failed}",
        end="\r",
        flush=True,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Gmail Archiver - Archive email attachments and mark them read"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("login", help="Authorize Gmail access in a local browser")

    fetch_parser = subparsers.add_parser("fetch", help="Run one ingestion pass")
    fetch_parser.add_argument("--query", "-q", help="Gmail search query (default: from settings)")

    subparsers.add_parser("files", help="List archived attachments")

    download_parser = subparsers.add_parser("download", help="Write an archived attachment to disk")
    download_parser.add_argument("storage_id", help="Storage id from the 'files' command")
    download_parser.add_argument(
        "--output", "-o", type=Path, default=None,
        help="Output path (default: original filename in the current directory)",
    )

    subparsers.add_parser("status", help="Show message counts by state and recent runs")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: from settings)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: from settings)")

    return parser


def _open_store(settings: GmailArchiverSettings) -> ContentStore:
    settings.ensure_directories()
    store = ContentStore(
        settings.database_path,
        settings.blob_dir,
        dedupe=settings.dedupe,
        chunk_size=settings.chunk_size,
    )
    store.connect()
    return store


def cmd_fetch(settings: GmailArchiverSettings, query: str | None) -> int:
    creds = load_cached_credentials(settings.token_path)
    if creds is None:
        print("Error: not authenticated, run 'login' first", file=sys.stderr)
        return 1

    credentials = CredentialStore(
        creds, on_refresh=lambda c: save_token(c, settings.token_path)
    )
    store = _open_store(settings)
    tracker = RunTracker(settings.database_path)
    tracker.connect()
    coordinator = build_coordinator(
        settings, credentials, store, tracker, on_progress=on_progress
    )
    try:
        summary = coordinator.run(query)
    finally:
        coordinator.close()
        tracker.close()
        store.close()

    print(
        f"\n\nComplete: scanned={summary.messages_scanned} "
        f"stored={summary.attachments_stored} marked_read={summary.messages_marked_read}"
    )
    for error in summary.per_message_errors:
        print(f"  error {error.message_id}: {error.reason}")
    for note in summary.notes:
        print(f"  note  {note.message_id}: {note.reason}")
    return 1 if summary.per_message_errors else 0


def cmd_files(settings: GmailArchiverSettings) -> int:
    with _open_store(settings) as store:
        records = store.list()
    print(f"\nFound {len(records)} archived attachments:\n")
    for record in records:
        print(
            f"  {record.storage_id}  {record.size_bytes:>10d}  "
            f"{record.uploaded_at:%Y-%m-%d %H:%M}  {record.filename}  ({record.metadata.sender})"
        )
    return 0


def cmd_download(settings: GmailArchiverSettings, storage_id: str, output: Path | None) -> int:
    with _open_store(settings) as store:
        record = store.get_record(storage_id)
        target = output or Path(Path(record.filename).name)
        with target.open("wb") as fh:
            for chunk in store.get(storage_id):
                fh.write(chunk)
    print(f"Wrote {record.size_bytes} bytes to {target}")
    return 0


def cmd_status(settings: GmailArchiverSettings) -> int:
    settings.ensure_directories()
    with RunTracker(settings.database_path) as tracker:
        counts = tracker.count_by_state()
        runs = tracker.recent_runs(limit=5)
    print("\nMessage counts by state:")
    for state, count in sorted(counts.items()):
        print(f"  {state}: {count}")
    print("\nRecent runs:")
    for run in runs:
        aborted = f" aborted: {run['aborted_reason']}" if run["aborted_reason"] else ""
        print(
            f"  #{run['run_id']} {run['started_at']} scanned={run['messages_scanned']} "
            f"stored={run['attachments_stored']} failed={run['messages_failed']}{aborted}"
        )
    return 0


def cmd_serve(settings: GmailArchiverSettings, host: str | None, port: int | None) -> int:
    import uvicorn

    from gmail_archiver.api.app import create_app

    uvicorn.run(create_app(settings), host=host or settings.host, port=port or settings.port)
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = GmailArchiverSettings()
    setup_logging(settings.log_level)

    try:
        if args.command == "login":
            run_local_login(settings)
            print(f"\nToken cached at {settings.token_path}")
            code = 0
        elif args.command == "fetch":
            code = cmd_fetch(settings, args.query)
        elif args.command == "files":
            code = cmd_files(settings)
        elif args.command == "download":
            code = cmd_download(settings, args.storage_id, args.output)
        elif args.command == "status":
            code = cmd_status(settings)
        else:
            code = cmd_serve(settings, args.host, args.port)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
