"""OAuth 2.0 credential lifecycle for the Gmail API."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow, InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_archiver.core.exceptions import AuthError
from gmail_archiver.core.models import Credential

if TYPE_CHECKING:
    from gmail_archiver.config.settings import GmailArchiverSettings

logger = logging.getLogger(__name__)

# modify is required to remove the UNREAD label
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


class CredentialStore:
    """Holds the session's OAuth credential and refreshes it on demand.

    Refresh is serialized: callers that arrive while another thread is
    refreshing wait for it and reuse its result.
    """

    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        on_refresh: Callable[[Credentials], None] | None = None,
        request_factory: Callable[[], Request] = Request,
    ) -> None:
        self._credentials = credentials
        self._on_refresh = on_refresh
        self._request_factory = request_factory
        self._lock = threading.Lock()

    @property
    def has_credentials(self) -> bool:
        return self._credentials is not None

    def set(self, credentials: Credentials) -> None:
        """Install a credential obtained from the OAuth handshake."""
        with self._lock:
            self._credentials = credentials
        logger.info("Credential installed")

    def is_valid(self) -> bool:
        """Whether a non-expired access token is held."""
        creds = self._credentials
        return creds is not None and bool(creds.valid)

    def ensure_valid(self) -> Credential:
        """Return a valid credential, refreshing the access token if needed.

        Raises:
            AuthError: If no credential is held, it has no refresh token,
                or the provider rejects the refresh.
        """
        creds = self._credentials
        if creds is not None and creds.valid:
            return _snapshot(creds)

        with self._lock:
            creds = self._credentials
            if creds is None:
                raise AuthError("Not authenticated: no credential available")
            if creds.valid:
                return _snapshot(creds)
            if not creds.refresh_token:
                raise AuthError("Access token expired and no refresh token is available")

            try:
                creds.refresh(self._request_factory())
            except RefreshError as e:
                raise AuthError(f"Token refresh rejected: {e}") from e

            logger.info("Access token refreshed")
            if self._on_refresh:
                try:
                    self._on_refresh(creds)
                except OSError as e:
                    logger.warning("Failed to persist refreshed token: %s", e)
            return _snapshot(creds)


def _snapshot(creds: Credentials) -> Credential:
    return Credential(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=creds.expiry,
    )


def load_cached_credentials(token_path: Path) -> Credentials | None:
    """Load a previously cached token, or None if unavailable."""
    if not token_path.exists():
        return None
    try:
        return Credentials.from_authorized_user_file(str(token_path), SCOPES)
    except Exception as e:
        logger.warning("Failed to load cached token: %s", e)
        return None


def save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())


def build_oauth_flow(settings: GmailArchiverSettings) -> Flow:
    """Build the web-server OAuth flow from the client secrets file.

    Raises:
        AuthError: If the client secrets file is missing.
    """
    if not settings.credentials_path.exists():
        raise AuthError(
            f"Credentials file not found: {settings.credentials_path}. "
            "Download it from Google Cloud Console."
        )
    return Flow.from_client_secrets_file(
        str(settings.credentials_path),
        scopes=SCOPES,
        redirect_uri=settings.redirect_uri,
    )


def authorization_url(flow: Flow) -> str:
    """Authorization URL requesting offline access (a refresh token)."""
    url, _state = flow.authorization_url(access_type="offline", prompt="consent")
    return url


def exchange_code(flow: Flow, code: str) -> Credentials:
    """Exchange an authorization code for an access/refresh token pair.

    Raises:
        AuthError: If the identity provider rejects the code.
    """
    try:
        flow.fetch_token(code=code)
    except Exception as e:
        raise AuthError(f"Authorization code exchange failed: {e}") from e
    return flow.credentials


def run_local_login(settings: GmailArchiverSettings) -> Credentials:
    """Run the installed-app flow on a local port and cache the token.

    Raises:
        AuthError: If the client secrets file is missing or the flow fails.
    """
    if not settings.credentials_path.exists():
        raise AuthError(
            f"Credentials file not found: {settings.credentials_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(settings.credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthError(f"OAuth flow failed: {e}") from e

    save_token(creds, settings.token_path)
    logger.info("Authentication successful, token cached at %s", settings.token_path)
    return creds


def build_gmail_service(timeout: float) -> Resource:
    """Build a Gmail API service resource without bound credentials.

    The bearer token is attached per request by GmailClient so that the
    CredentialStore stays the only owner of the token.

    Args:
        timeout: Socket timeout in seconds for every API call.
    """
    return build(
        "gmail",
        "v1",
        http=httplib2.Http(timeout=timeout),
        cache_discovery=False,
    )
