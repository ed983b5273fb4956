"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailArchiverSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")
    redirect_uri: str = "http://localhost:4000/auth/google/callback"
    frontend_url: str = "http://localhost:3000"

    # Gmail API settings
    query: str = "is:unread has:attachment"
    max_results_per_page: int = 100
    request_timeout_seconds: float = 30.0

    # Content store
    database_path: Path = Path("data/gmail_archiver.db")
    blob_dir: Path = Path("data/blobs")
    dedupe: bool = True
    store_workers: int = 4
    store_timeout_seconds: float = 60.0
    chunk_size: int = 64 * 1024

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    inter_page_delay_seconds: float = 0.2
    num_retries: int = 3

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 4000

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
