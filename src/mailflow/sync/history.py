"""Resolution of history windows into processed records."""

from __future__ import annotations

from typing import Any, AsyncIterator

from mailflow.core.exceptions import HistoryWindowError, MailboxError
from mailflow.core.types import MailboxClient, Watermark
from mailflow.mailbox.models import EmailFilter, EmailMessage
from mailflow.observability.logging import get_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.sync.records import Failed, Filtered, Matched, ProcessedRecord

logger = get_logger(__name__)

MESSAGE_ADDED = "messageAdded"


class HistoryWindow:
    """History entries with low < id <= high, ascending by id."""

    def __init__(
        self,
        low: Watermark,
        high: Watermark | None,
        entries: list[dict[str, Any]],
        response_watermark: Watermark | None = None,
    ) -> None:
        self.low = low
        self.high = high
        self.entries = entries
        self.response_watermark = response_watermark

    @property
    def latest_watermark(self) -> Watermark | None:
        """Highest position this window proves has been seen."""
        candidates = [int(e["id"]) for e in self.entries]
        if self.response_watermark is not None:
            if self.high is None or self.response_watermark <= self.high:
                candidates.append(self.response_watermark)
        return max(candidates) if candidates else None

    def added_message_ids(self) -> list[str]:
        """Ids of added messages in window order, without repeats."""
        seen: set[str] = set()
        ids: list[str] = []
        for entry in self.entries:
            for added in entry.get("messagesAdded") or []:
                message_id = (added.get("message") or {}).get("id")
                if message_id and message_id not in seen:
                    seen.add(message_id)
                    ids.append(message_id)
        return ids


class HistoryResolver:
    """
    Turns a (low, high] watermark window into filtered records.

    Failures fetching an individual message become Failed results and do
    not stop the rest of the window. Failures listing the window itself
    raise HistoryWindowError so the caller can retry the same window.
    Authentication errors always propagate.
    """

    def __init__(self, client: MailboxClient, source: str = "history") -> None:
        self._client = client
        self._source = source
        self._metrics = get_metrics_collector()

    async def fetch_window(self, low: Watermark, high: Watermark | None = None) -> HistoryWindow:
        """List every history page from low and keep entries inside the bounds."""
        entries: list[dict[str, Any]] = []
        page_token: str | None = None
        response_watermark: Watermark | None = None

        try:
            while True:
                page = await self._client.list_history(
                    low,
                    history_types=[MESSAGE_ADDED],
                    page_token=page_token,
                )
                if page.history_id is not None:
                    response_watermark = max(response_watermark or 0, page.history_id)

                for entry in page.history:
                    entry_id = int(entry.get("id", 0))
                    if entry_id <= low or (high is not None and entry_id > high):
                        continue
                    entries.append(entry)

                page_token = page.next_page_token
                if not page_token:
                    break
        except MailboxError as e:
            raise HistoryWindowError(low, high, str(e)) from e
        except (KeyError, TypeError, ValueError) as e:
            raise HistoryWindowError(low, high, f"malformed history response: {e}") from e

        entries.sort(key=lambda e: int(e["id"]))
        logger.debug(
            "Resolved history window",
            low=low,
            high=high,
            entries=len(entries),
            response_watermark=response_watermark,
        )
        return HistoryWindow(low, high, entries, response_watermark)

    async def process(
        self,
        window: HistoryWindow,
        email_filter: EmailFilter,
    ) -> AsyncIterator[ProcessedRecord]:
        """Fetch and filter each added message of a window, in order."""
        for message_id in window.added_message_ids():
            result = await self._process_message(message_id, email_filter)
            self._metrics.record_result(self._source, result.kind)
            yield result

    async def resolve(
        self,
        low: Watermark,
        high: Watermark | None,
        email_filter: EmailFilter,
    ) -> AsyncIterator[ProcessedRecord]:
        """
        Lazily yield processed records for the window (low, high].

        Args:
            low: Exclusive lower watermark.
            high: Inclusive upper watermark, or None for no upper bound.
            email_filter: Predicate applied to each fetched record.

        Raises:
            HistoryWindowError: If the window itself could not be listed.
            AuthenticationError: If the backend rejected the credentials.
        """
        window = await self.fetch_window(low, high)
        async for result in self.process(window, email_filter):
            yield result

    async def _process_message(
        self,
        message_id: str,
        email_filter: EmailFilter,
    ) -> ProcessedRecord:
        try:
            raw = await self._client.get_message(message_id)
            email = EmailMessage.from_gmail(raw)
        except (MailboxError, ValueError) as e:
            logger.warning("Failed to fetch message", message_id=message_id, error=str(e))
            return Failed(reason=str(e), message_id=message_id)

        if email_filter.matches(email):
            return Matched(record=email)
        return Filtered(record=email)
