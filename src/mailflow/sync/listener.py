"""Notification-driven incremental sync."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
from typing import Any

from mailflow.core.config import AckPolicy
from mailflow.core.exceptions import (
    AuthenticationError,
    HistoryWindowError,
    NotificationDecodeError,
)
from mailflow.core.types import (
    AckDecision,
    BatchToken,
    DeliveryClient,
    Envelope,
    MailboxClient,
    OutputAction,
    Watermark,
)
from mailflow.mailbox.models import EmailFilter
from mailflow.observability.logging import LogContext, get_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.resilience.shutdown import CancellationScope
from mailflow.sync.history import HistoryResolver
from mailflow.sync.records import Failed, InboundRecord
from mailflow.sync.session import SessionState

logger = get_logger(__name__)


class MailboxNotification:
    """Decoded body of a Gmail push notification."""

    def __init__(self, email_address: str, history_id: Watermark) -> None:
        self.email_address = email_address
        self.history_id = history_id


def decode_notification(envelope: Envelope) -> MailboxNotification:
    """
    Decode an envelope's base64 JSON payload.

    Both the standard and the URL-safe base64 alphabets are accepted.

    Raises:
        NotificationDecodeError: If the payload is not base64, not UTF-8
            JSON, or carries no integer historyId.
    """
    data = envelope.data or ""
    if not data:
        raise NotificationDecodeError("empty payload", envelope.message_id)

    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(normalized, validate=True)
        payload: Any = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise NotificationDecodeError(str(e), envelope.message_id) from e

    if not isinstance(payload, dict) or "historyId" not in payload:
        raise NotificationDecodeError("missing historyId", envelope.message_id)

    try:
        history_id = int(payload["historyId"])
    except (TypeError, ValueError) as e:
        raise NotificationDecodeError(
            f"historyId is not an integer: {payload['historyId']!r}", envelope.message_id
        ) from e
    if history_id < 0:
        raise NotificationDecodeError("negative historyId", envelope.message_id)

    return MailboxNotification(payload.get("emailAddress", ""), history_id)


class NotificationListener:
    """
    Bridges a delivery client into the batch output contract.

    Each envelope gets its own batch token. Records derived from it are
    forwarded to an internal queue as one batch, and a single consumer
    task hands batches to the output action. Envelopes are handled
    concurrently up to max_concurrent; ordering holds only within one
    envelope.
    """

    def __init__(
        self,
        client: MailboxClient,
        delivery: DeliveryClient,
        session: SessionState,
        email_filter: EmailFilter,
        ack_policy: AckPolicy = AckPolicy.ALWAYS,
        max_concurrent: int = 4,
        drain_timeout: float = 10.0,
        max_failed_windows: int = 1000,
    ) -> None:
        self._client = client
        self._delivery = delivery
        self._session = session
        self._filter = email_filter
        self._ack_policy = ack_policy
        self._drain_timeout = drain_timeout
        self._resolver = HistoryResolver(client, source="notification")
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._queue: asyncio.Queue[list[InboundRecord] | None] = asyncio.Queue()
        self._scope: CancellationScope | None = None
        # Windows that failed under after_success, keyed by their high bound,
        # so a redelivered envelope can resolve them again.
        self._failed_windows: dict[Watermark, Watermark] = {}
        self._max_failed_windows = max_failed_windows
        self._metrics = get_metrics_collector()

    @property
    def session(self) -> SessionState:
        return self._session

    async def handle(self, envelope: Envelope) -> AckDecision:
        """Delivery callback: process one envelope and decide its ack."""
        if self._scope is not None and self._scope.cancelled:
            return AckDecision.NACK

        async with self._semaphore:
            start = time.perf_counter()
            batch_id = self._session.next_batch_token()
            with LogContext(session_id=self._session.session_id, batch_id=batch_id):
                outcome, decision = await self._process(envelope, batch_id)
            self._metrics.record_notification(outcome, time.perf_counter() - start)
            return decision

    async def _process(self, envelope: Envelope, batch_id: BatchToken) -> tuple[str, AckDecision]:
        try:
            notification = decode_notification(envelope)
        except NotificationDecodeError as e:
            logger.warning("Malformed notification", message_id=envelope.message_id, error=e.reason)
            await self._forward([InboundRecord(batch_id=batch_id, result=Failed(reason=e.message))])
            # Redelivery cannot fix a malformed payload
            return "malformed", AckDecision.ACK

        received = notification.history_id
        previous = self._session.current_watermark()
        self._session.update_watermark(received)

        if previous == 0:
            logger.info("Watermark seeded from notification", watermark=received)
            return "seeded", AckDecision.ACK

        low = previous
        if received <= previous:
            if received not in self._failed_windows:
                logger.debug("Notification behind watermark", received=received, current=previous)
                return "stale", AckDecision.ACK
            low = self._failed_windows[received]

        try:
            batch = [
                InboundRecord(batch_id=batch_id, result=result)
                async for result in self._resolver.resolve(low, received, self._filter)
            ]
        except AuthenticationError as e:
            if self._scope is not None:
                self._scope.fail(e)
            return "failed", AckDecision.NACK
        except HistoryWindowError as e:
            logger.warning("History window failed", low=low, high=received, error=e.reason)
            return await self._window_failed(batch_id, low, received, e.message)
        except Exception as e:
            logger.error("Notification processing failed", low=low, high=received, error=str(e))
            return await self._window_failed(batch_id, low, received, str(e))

        self._failed_windows.pop(received, None)
        await self._forward(batch)
        logger.debug("Notification processed", low=low, high=received, records=len(batch))

        if self._ack_policy is AckPolicy.AFTER_SUCCESS and any(
            isinstance(r.result, Failed) for r in batch
        ):
            self._remember_failed_window(low, received)
            return "partial", AckDecision.NACK
        return "processed", AckDecision.ACK

    async def _window_failed(
        self,
        batch_id: BatchToken,
        low: Watermark,
        high: Watermark,
        reason: str,
    ) -> tuple[str, AckDecision]:
        """Forward one error record for a window that could not be resolved."""
        await self._forward([InboundRecord(batch_id=batch_id, result=Failed(reason=reason))])
        if self._ack_policy is AckPolicy.AFTER_SUCCESS:
            self._remember_failed_window(low, high)
            return "failed", AckDecision.NACK
        return "failed", AckDecision.ACK

    def _remember_failed_window(self, low: Watermark, high: Watermark) -> None:
        self._failed_windows[high] = low
        while len(self._failed_windows) > self._max_failed_windows:
            # Oldest first; its envelope is unlikely to be redelivered any more
            evicted_high = next(iter(self._failed_windows))
            evicted_low = self._failed_windows.pop(evicted_high)
            logger.warning("Dropping failed window", low=evicted_low, high=evicted_high)

    async def bootstrap(self) -> Watermark | None:
        """Seed an empty session from the mailbox profile before delivery starts."""
        if self._session.has_watermark:
            return self._session.current_watermark()

        profile = await self._client.get_profile()
        history_id = int(profile.get("historyId") or 0)
        if history_id > 0:
            self._session.update_watermark(history_id)
            logger.info("Listener bootstrapped", watermark=self._session.current_watermark())
            return self._session.current_watermark()

        logger.info("Mailbox profile has no historyId, first notification will seed the watermark")
        return None


    async def _forward(self, batch: list[InboundRecord]) -> None:
        await self._queue.put(batch)

    async def _consume(self, output: OutputAction, scope: CancellationScope) -> None:
        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            try:
                await output(batch, scope)
            except Exception as e:
                logger.error("Output action failed", error=str(e))
                scope.fail(e)

    async def run(self, output: OutputAction, scope: CancellationScope) -> None:
        """
        Consume deliveries until the scope is cancelled.

        An empty session is seeded from the mailbox profile first, so mail
        arriving before the first notification is not skipped. In-flight
        handlers drain before the output sequence closes.

        Raises:
            AuthenticationError: Credentials were rejected while resolving.
            DeliveryError: The delivery client failed.
        """
        self._scope = scope
        await self.bootstrap()
        consumer = asyncio.create_task(self._consume(output, scope), name="notification_consumer")

        logger.info("Starting notification listener", session_id=self._session.session_id)
        await self._delivery.start(self.handle)

        delivery_done = asyncio.create_task(self._delivery.wait(), name="delivery_wait")
        cancelled = asyncio.create_task(scope.wait(), name="scope_wait")
        try:
            await asyncio.wait({delivery_done, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if delivery_done.done() and not delivery_done.cancelled():
                error = delivery_done.exception()
                if error is not None:
                    scope.fail(error)
                else:
                    scope.cancel("delivery stopped")
        finally:
            cancelled.cancel()
            await self._delivery.stop(timeout=self._drain_timeout)
            delivery_done.cancel()
            await asyncio.gather(delivery_done, cancelled, return_exceptions=True)

            await self._queue.put(None)
            await consumer
            logger.info("Notification listener stopped", reason=scope.reason)

        scope.raise_if_failed()
