"""Protocols and type definitions for mailflow."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from mailflow.resilience.shutdown import CancellationScope
    from mailflow.sync.records import InboundRecord


GMAIL_SERVICE_TYPE = "gmail"


class AckDecision(str, Enum):
    """Outcome returned by a notification handler."""

    ACK = "ack"
    NACK = "nack"


class ForceNewMode(str, Enum):
    """Whether a watch request may reuse a persisted registration."""

    FALSE = "false"  # reuse an existing, active registration
    FIRST = "first"  # force a new one on the first execution only
    ALWAYS = "always"  # force a new one every execution

    def force_new(self, execution_number: int) -> bool:
        """Resolve the mode for a 1-based execution number."""
        if self is ForceNewMode.ALWAYS:
            return True
        if self is ForceNewMode.FIRST:
            return execution_number == 1
        return False


# Type aliases for common structures
Watermark = int
BatchToken = int
MessageId = str


class HistoryPage:
    """One page of the mailbox change-history endpoint."""

    def __init__(
        self,
        history: list[dict[str, Any]],
        next_page_token: str | None = None,
        history_id: Watermark | None = None,
    ) -> None:
        self.history = history
        self.next_page_token = next_page_token
        self.history_id = history_id


class Envelope:
    """A notification delivered by the messaging backbone."""

    def __init__(
        self,
        message_id: str,
        data: str,
        attributes: dict[str, str] | None = None,
        publish_time: datetime | None = None,
        ack_id: str | None = None,
        subscription: str | None = None,
    ) -> None:
        self.message_id = message_id
        self.data = data
        self.attributes = attributes or {}
        self.publish_time = publish_time
        self.ack_id = ack_id
        self.subscription = subscription

    @classmethod
    def from_pubsub_message(
        cls,
        message: dict[str, Any],
        ack_id: str | None = None,
        subscription: str | None = None,
    ) -> Envelope:
        """Build from a Pub/Sub PubsubMessage JSON object."""
        publish_time = None
        raw_time = message.get("publishTime") or message.get("publish_time")
        if raw_time:
            try:
                publish_time = datetime.fromisoformat(raw_time.replace("Z", "+00:00"))
            except ValueError:
                publish_time = None

        return cls(
            message_id=message.get("messageId") or message.get("message_id", ""),
            data=message.get("data", ""),
            attributes=message.get("attributes") or {},
            publish_time=publish_time,
            ack_id=ack_id,
            subscription=subscription,
        )


NotificationHandler = Callable[[Envelope], Awaitable[AckDecision]]
OutputAction = Callable[[list["InboundRecord"], "CancellationScope"], Awaitable[None]]


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies an auto-refreshing bearer token."""

    async def get_access_token(self) -> str:
        """
        Return a currently valid access token.

        Raises:
            AuthenticationError: If no valid token can be produced.
        """
        ...


@runtime_checkable
class MailboxClient(Protocol):
    """Protocol for the mailbox API consumed by the sync engine."""

    async def list_messages(
        self,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
        label_ids: list[str] | None = None,
        include_spam_trash: bool = False,
    ) -> tuple[list[MessageId], str | None]:
        """List message ids matching a query."""
        ...

    async def get_message(self, message_id: MessageId) -> dict[str, Any]:
        """Fetch a full message resource."""
        ...

    async def list_history(
        self,
        start_watermark: Watermark,
        history_types: list[str] | None = None,
        page_token: str | None = None,
    ) -> HistoryPage:
        """List history records after a watermark."""
        ...

    async def create_watch(
        self,
        topic_name: str,
        label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        """Register a watch. Returns {historyId, expiration}."""
        ...

    async def stop_watch(self) -> None:
        """Stop all watches for the mailbox."""
        ...

    async def get_profile(self) -> dict[str, Any]:
        """Fetch the mailbox profile."""
        ...


@runtime_checkable
class DeliveryClient(Protocol):
    """Protocol for pull or push notification delivery."""

    async def start(self, handler: NotificationHandler) -> None:
        """Begin delivering envelopes to the handler."""
        ...

    async def stop(self, timeout: float | None = None) -> None:
        """Stop delivery, letting in-flight handlers finish within timeout."""
        ...

    async def wait(self) -> None:
        """Wait until delivery has stopped."""
        ...
