"""Timer-driven incremental sync."""

from __future__ import annotations

from mailflow.core.exceptions import MailboxError
from mailflow.core.types import MailboxClient, OutputAction, Watermark
from mailflow.mailbox.fetcher import EmailFetcher
from mailflow.mailbox.models import EmailFilter
from mailflow.observability.logging import LogContext, get_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.resilience.shutdown import CancellationScope
from mailflow.sync.history import HistoryResolver
from mailflow.sync.records import InboundRecord
from mailflow.sync.session import SessionState

logger = get_logger(__name__)


class PollingEngine:
    """
    Polls the history endpoint from the locally tracked watermark.

    Each cycle emits one batch (possibly empty) to the output action and
    then sleeps the interval. The sleep wakes early when the scope is
    cancelled. Without a watermark the first cycle only seeds it from the
    most recent message and emits nothing.
    """

    def __init__(
        self,
        client: MailboxClient,
        session: SessionState,
        email_filter: EmailFilter,
        interval_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._session = session
        self._filter = email_filter
        self._interval = interval_seconds
        self._resolver = HistoryResolver(client, source="poll")
        self._fetcher = EmailFetcher(client)
        self._metrics = get_metrics_collector()

    @property
    def session(self) -> SessionState:
        return self._session

    async def bootstrap(self) -> Watermark | None:
        """Seed the watermark from the newest message, or the profile."""
        latest = await self._fetcher.fetch_emails(self._filter.reduced_to_one())
        candidate: Watermark | None = None
        if latest and latest[0].history_id:
            candidate = latest[0].history_id
        else:
            profile = await self._client.get_profile()
            if profile.get("historyId"):
                candidate = int(profile["historyId"])

        if candidate is not None:
            self._session.update_watermark(candidate)
        logger.info("Polling bootstrapped", watermark=self._session.current_watermark())
        return candidate

    async def poll_once(self) -> list[InboundRecord]:
        """Resolve everything after the current watermark as one batch."""
        low = self._session.current_watermark()
        batch_id = self._session.next_batch_token()

        with LogContext(session_id=self._session.session_id, batch_id=batch_id):
            window = await self._resolver.fetch_window(low, None)
            batch: list[InboundRecord] = []
            async for result in self._resolver.process(window, self._filter):
                batch.append(InboundRecord(batch_id=batch_id, result=result))

            candidates = [
                r.email.history_id for r in batch if r.email and r.email.history_id
            ]
            if window.latest_watermark is not None:
                candidates.append(window.latest_watermark)
            if candidates:
                self._session.update_watermark(max(candidates))

            logger.debug(
                "Poll cycle complete",
                low=low,
                records=len(batch),
                watermark=self._session.current_watermark(),
            )
        return batch

    async def run(self, output: OutputAction, scope: CancellationScope) -> None:
        """
        Poll until the scope is cancelled.

        Raises:
            AuthenticationError: Credentials were rejected.
        """
        logger.info(
            "Starting polling engine",
            session_id=self._session.session_id,
            interval=self._interval,
        )

        while not scope.cancelled:
            try:
                if not self._session.has_watermark:
                    await self.bootstrap()
                else:
                    batch = await self.poll_once()
                    await output(batch, scope)
                self._metrics.record_poll_cycle(success=True)
            except MailboxError as e:
                self._metrics.record_poll_cycle(success=False)
                logger.warning("Poll cycle failed, retrying next cycle", error=str(e))

            if await scope.sleep(self._interval):
                break

        logger.info("Polling engine stopped", reason=scope.reason)
