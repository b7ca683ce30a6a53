"""Pub/Sub pull delivery over the REST API."""

from __future__ import annotations

import asyncio

import httpx

from mailflow.core.config import PubSubSettings
from mailflow.core.exceptions import DeliveryError, MailflowError, TransientBackendError
from mailflow.core.http import AuthorizedApiClient
from mailflow.core.types import AckDecision, CredentialProvider, Envelope, NotificationHandler
from mailflow.observability.logging import get_logger

logger = get_logger(__name__)


class PubSubPullClient(AuthorizedApiClient):
    """
    Delivery client that pulls from a durable subscription.

    Received messages are dispatched to the handler as concurrent tasks.
    An ACK decision acknowledges the message, a NACK resets its ack
    deadline to zero so Pub/Sub redelivers it immediately.
    """

    api_name = "pubsub"

    def __init__(
        self,
        credentials: CredentialProvider,
        subscription_path: str,
        settings: PubSubSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        error_backoff: float = 1.0,
    ) -> None:
        settings = settings or PubSubSettings()
        super().__init__(
            credentials,
            base_url=settings.api_base_url,
            # Pull requests long-poll, so allow for the server hold time
            timeout=settings.pull_timeout + 10.0,
            http_client=http_client,
        )
        self._subscription = subscription_path
        self._max_messages = settings.max_messages
        self._return_immediately = settings.return_immediately
        self._error_backoff = error_backoff

        self._handler: NotificationHandler | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()

    @property
    def subscription(self) -> str:
        return self._subscription

    async def pull(self) -> list[tuple[str, Envelope]]:
        """Pull one batch. Returns (ack_id, envelope) pairs."""
        data = await self._request(
            "POST",
            f"{self._subscription}:pull",
            json={
                "maxMessages": self._max_messages,
                "returnImmediately": self._return_immediately,
            },
        )
        received: list[tuple[str, Envelope]] = []
        for item in data.get("receivedMessages", []):
            ack_id = item["ackId"]
            envelope = Envelope.from_pubsub_message(
                item.get("message") or {},
                ack_id=ack_id,
                subscription=self._subscription,
            )
            received.append((ack_id, envelope))
        return received

    async def acknowledge(self, ack_ids: list[str]) -> None:
        await self._request("POST", f"{self._subscription}:acknowledge", json={"ackIds": ack_ids})

    async def negative_acknowledge(self, ack_ids: list[str]) -> None:
        await self._request(
            "POST",
            f"{self._subscription}:modifyAckDeadline",
            json={"ackIds": ack_ids, "ackDeadlineSeconds": 0},
        )

    async def start(self, handler: NotificationHandler) -> None:
        if self._loop_task is not None:
            raise DeliveryError("Pull client already started")
        self._handler = handler
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._pull_loop(), name="pubsub_pull_loop")
        logger.info("Pull delivery started", subscription=self._subscription)

    async def _pull_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                received = await self.pull()
            except TransientBackendError as e:
                logger.warning("Pull failed, backing off", error=str(e), delay=self._error_backoff)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._error_backoff)
                except asyncio.TimeoutError:
                    pass
                continue

            for ack_id, envelope in received:
                task = asyncio.create_task(self._dispatch(ack_id, envelope))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, ack_id: str, envelope: Envelope) -> None:
        assert self._handler is not None
        try:
            decision = await self._handler(envelope)
        except Exception as e:
            logger.error("Notification handler failed", message_id=envelope.message_id, error=str(e))
            decision = AckDecision.NACK

        try:
            if decision is AckDecision.ACK:
                await self.acknowledge([ack_id])
            else:
                await self.negative_acknowledge([ack_id])
        except MailflowError as e:
            # An unacknowledged message is redelivered after its deadline
            logger.warning(
                "Failed to settle message",
                message_id=envelope.message_id,
                decision=decision.value,
                error=str(e),
            )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop pulling and wait up to timeout for in-flight handlers."""
        self._stop_event.set()

        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)

        if self._inflight:
            _done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            if pending:
                logger.warning("In-flight notifications abandoned", count=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self.close()
        logger.info("Pull delivery stopped", subscription=self._subscription)

    async def wait(self) -> None:
        """Wait for the pull loop to end, re-raising its failure."""
        if self._loop_task is None:
            return
        try:
            await self._loop_task
        except asyncio.CancelledError:
            if not self._stop_event.is_set():
                raise
