"""Output actions that consume record batches."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx

from mailflow.core.types import OutputAction
from mailflow.mailbox.models import EmailMessage
from mailflow.observability.logging import get_logger
from mailflow.resilience.shutdown import CancellationScope
from mailflow.sync.records import InboundRecord, Matched

logger = get_logger(__name__)


def matched_emails(batch: list[InboundRecord]) -> list[EmailMessage]:
    """Emails in a batch that passed the filter, in batch order."""
    return [r.result.record for r in batch if isinstance(r.result, Matched)]


def webhook_payload(emails: list[EmailMessage]) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "emailCount": len(emails),
        "emails": [email.summary() for email in emails],
    }


class WebhookForwarder:
    """
    Posts each non-empty matched batch to a URL as JSON.

    Delivery failures are logged and dropped. A webhook that is down
    never stops the sync.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    async def __call__(self, batch: list[InboundRecord], scope: CancellationScope) -> None:
        emails = matched_emails(batch)
        if not emails:
            return

        try:
            response = await self._client.post(self._url, json=webhook_payload(emails))
            response.raise_for_status()
            logger.info("Webhook notified", url=self._url, email_count=len(emails))
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery failed", url=self._url, error=str(e))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def chain_outputs(*actions: OutputAction) -> OutputAction:
    """Run several output actions in order for every batch."""

    async def _chained(batch: list[InboundRecord], scope: CancellationScope) -> None:
        for action in actions:
            await action(batch, scope)

    return _chained

