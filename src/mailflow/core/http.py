"""Shared authorized JSON-over-HTTP plumbing for Google REST APIs."""

from __future__ import annotations

from typing import Any

import httpx

from mailflow.core.exceptions import (
    AuthenticationError,
    MailboxError,
    NotFoundError,
    TransientBackendError,
)
from mailflow.core.types import CredentialProvider
from mailflow.observability.logging import get_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.resilience.retry import RetryPolicy, retry_with_policy

logger = get_logger(__name__)


def raise_for_backend_status(response: httpx.Response, api: str) -> None:
    """Translate an HTTP error status into the mailflow error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    try:
        body: Any = response.json()
        reason = body.get("error", {}).get("message") or response.text
    except ValueError:
        reason = response.text

    message = f"{api} API error {status}: {reason}"
    if status in (401, 403):
        raise AuthenticationError(message, {"status_code": status})
    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status == 429 or status >= 500:
        raise TransientBackendError(message, status_code=status)
    raise MailboxError(message, status_code=status)


class AuthorizedApiClient:
    """
    Base for the Gmail and Pub/Sub REST clients.

    Every call fetches a bearer token from the credential provider, maps
    HTTP failures onto mailflow exceptions and retries transient ones.
    """

    api_name = "google"

    def __init__(
        self,
        credentials: CredentialProvider,
        base_url: str,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._metrics = get_metrics_collector()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> AuthorizedApiClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request_once(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self._credentials.get_access_token()
        url = f"{self._base_url}/{path.lstrip('/')}"

        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            self._metrics.record_api_request(self.api_name, "timeout")
            raise TransientBackendError(f"{self.api_name} API timeout: {e}") from e
        except httpx.TransportError as e:
            self._metrics.record_api_request(self.api_name, "connection_error")
            raise TransientBackendError(f"{self.api_name} API connection error: {e}") from e

        self._metrics.record_api_request(self.api_name, response.status_code)
        raise_for_backend_status(response, self.api_name)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise MailboxError(
                f"{self.api_name} API returned invalid JSON: {e}",
                status_code=response.status_code,
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform a request with retry on transient failures."""
        return await retry_with_policy(
            self._request_once,
            self._retry_policy,
            method,
            path,
            params=params,
            json=json,
            operation=f"{self.api_name} {method} {path}",
        )
