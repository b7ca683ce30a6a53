"""Access-token providers for the Gmail and Pub/Sub REST APIs."""

from __future__ import annotations

import asyncio
from pathlib import Path

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailflow.core.exceptions import AuthenticationError
from mailflow.observability.logging import get_logger

logger = get_logger(__name__)


class GoogleCredentialProvider:
    """
    Loads an already-authorized user token and refreshes it on demand.

    The interactive consent flow is out of scope: the token file must have
    been produced beforehand (for example by google-auth-oauthlib).
    """

    def __init__(self, token_path: Path, scopes: list[str]) -> None:
        self._token_path = token_path
        self._scopes = scopes
        self._credentials: Credentials | None = None
        self._lock = asyncio.Lock()

    def _load(self) -> Credentials:
        if not self._token_path.exists():
            raise AuthenticationError(
                "Credential file not found",
                {"path": str(self._token_path)},
            )
        try:
            return Credentials.from_authorized_user_file(str(self._token_path), self._scopes)
        except (ValueError, GoogleAuthError) as e:
            raise AuthenticationError(
                f"Invalid credential file: {e}",
                {"path": str(self._token_path)},
            ) from e

    def _refresh(self, credentials: Credentials) -> None:
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e

    async def get_access_token(self) -> str:
        async with self._lock:
            if self._credentials is None:
                self._credentials = self._load()

            if not self._credentials.valid:
                if not self._credentials.refresh_token:
                    raise AuthenticationError("Token expired and no refresh token is available")
                logger.debug("Refreshing access token")
                # google-auth refreshes synchronously over requests
                await asyncio.to_thread(self._refresh, self._credentials)

            token = self._credentials.token
            if not token:
                raise AuthenticationError("Credential file did not yield an access token")
            return token


class StaticTokenProvider:
    """Fixed bearer token, for tests and short-lived tokens from the environment."""

    def __init__(self, token: str) -> None:
        if not token:
            raise AuthenticationError("Empty access token")
        self._token = token

    async def get_access_token(self) -> str:
        return self._token


def load_credential_provider(token_path: Path | None, scopes: list[str]) -> GoogleCredentialProvider:
    """Build a provider from a configured path, failing fast when unset."""
    if token_path is None:
        raise AuthenticationError(
            "No credentials configured. Set MAILFLOW_GMAIL__CREDENTIALS_PATH or GCP_CREDENTIALS_PATH"
        )
    return GoogleCredentialProvider(token_path.expanduser(), scopes)
