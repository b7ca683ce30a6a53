"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import base64
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# Set test environment
os.environ.setdefault("MAILFLOW_ENVIRONMENT", "test")

from mailflow.core.config import Settings, WatchSettings, configure_settings  # noqa: E402
from mailflow.core.exceptions import TransientBackendError  # noqa: E402
from mailflow.core.types import AckDecision, Envelope, HistoryPage, NotificationHandler  # noqa: E402
from mailflow.mailbox.models import EmailFilter  # noqa: E402
from mailflow.resilience.shutdown import CancellationScope  # noqa: E402
from mailflow.sync.records import InboundRecord  # noqa: E402

configure_settings(Settings(environment="test"))


def gmail_message(
    message_id: str,
    history_id: int,
    subject: str = "Hello",
    sender: str = "alice@example.com",
    labels: list[str] | None = None,
    date: str = "Mon, 06 Oct 2025 10:00:00 +0000",
) -> dict[str, Any]:
    """A Gmail message resource as returned with format=full."""
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "historyId": str(history_id),
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": f"snippet {message_id}",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com"},
                {"name": "Date", "value": date},
            ],
            "body": {
                "data": base64.urlsafe_b64encode(f"body {message_id}".encode()).decode().rstrip("="),
            },
        },
    }


def notification_envelope(history_id: Any, message_id: str = "m-1", urlsafe: bool = False) -> Envelope:
    """A Pub/Sub envelope carrying a Gmail notification."""
    raw = json.dumps({"emailAddress": "me@example.com", "historyId": history_id}).encode()
    encoder = base64.urlsafe_b64encode if urlsafe else base64.b64encode
    return Envelope(message_id=message_id, data=encoder(raw).decode())


class FakeMailboxClient:
    """In-memory mailbox with a history log."""

    def __init__(self, profile_history_id: int = 1) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.history: list[dict[str, Any]] = []
        self.profile_history_id = profile_history_id
        self.page_size = 100

        self.history_error: Exception | None = None
        self.message_errors: dict[str, Exception] = {}
        self.watch_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.watch_expiration: datetime | None = None

        self.history_calls: list[int] = []
        self.history_latency = 0.0
        self.active_history_calls = 0
        self.max_active_history_calls = 0
        self.watch_calls: list[tuple[str, list[str] | None]] = []
        self.stop_calls = 0

    def add_message(self, message_id: str, history_id: int, **kwargs: Any) -> None:
        self.messages[message_id] = gmail_message(message_id, history_id, **kwargs)
        self.history.append(
            {
                "id": str(history_id),
                "messagesAdded": [{"message": {"id": message_id}}],
            }
        )
        self.profile_history_id = max(self.profile_history_id, history_id)

    async def list_messages(
        self,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
        label_ids: list[str] | None = None,
        include_spam_trash: bool = False,
    ) -> tuple[list[str], str | None]:
        newest_first = sorted(
            self.messages.values(), key=lambda m: int(m["historyId"]), reverse=True
        )
        return [m["id"] for m in newest_first[:max_results]], None

    async def get_message(self, message_id: str) -> dict[str, Any]:
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        return self.messages[message_id]

    async def list_history(
        self,
        start_watermark: int,
        history_types: list[str] | None = None,
        page_token: str | None = None,
    ) -> HistoryPage:
        self.history_calls.append(start_watermark)
        if self.history_error is not None:
            raise self.history_error

        if self.history_latency:
            self.active_history_calls += 1
            self.max_active_history_calls = max(self.max_active_history_calls, self.active_history_calls)
            try:
                await asyncio.sleep(self.history_latency)
            finally:
                self.active_history_calls -= 1

        entries = [e for e in self.history if int(e["id"]) > start_watermark]
        offset = int(page_token or 0)
        page = entries[offset : offset + self.page_size]
        next_token = str(offset + self.page_size) if offset + self.page_size < len(entries) else None
        return HistoryPage(page, next_token, self.profile_history_id)

    async def create_watch(self, topic_name: str, label_ids: list[str] | None = None) -> dict[str, Any]:
        self.watch_calls.append((topic_name, label_ids))
        if self.watch_error is not None:
            raise self.watch_error
        expiration = self.watch_expiration or datetime.now(timezone.utc) + timedelta(days=7)
        return {
            "historyId": str(self.profile_history_id),
            "expiration": str(int(expiration.timestamp() * 1000)),
        }

    async def stop_watch(self) -> None:
        self.stop_calls += 1
        if self.stop_error is not None:
            raise self.stop_error

    async def get_profile(self) -> dict[str, Any]:
        return {"emailAddress": "me@example.com", "historyId": str(self.profile_history_id)}


class FakeDeliveryClient:
    """Delivery client driven directly by the test."""

    def __init__(self) -> None:
        self.handler: NotificationHandler | None = None
        self.decisions: list[AckDecision] = []
        self.started = False
        self.stopped = False
        self.stop_timeout: float | None = None
        self.failure: Exception | None = None

    async def start(self, handler: NotificationHandler) -> None:
        self.handler = handler
        self.started = True

    async def deliver(self, envelope: Envelope) -> AckDecision:
        assert self.handler is not None
        decision = await self.handler(envelope)
        self.decisions.append(decision)
        return decision

    async def stop(self, timeout: float | None = None) -> None:
        self.stopped = True
        self.stop_timeout = timeout

    async def wait(self) -> None:
        if self.failure is not None:
            raise self.failure
        # Runs until cancelled by the listener
        await asyncio.Event().wait()


class RecordingOutput:
    """Output action that records every batch."""

    def __init__(self) -> None:
        self.batches: list[list[InboundRecord]] = []

    async def __call__(self, batch: list[InboundRecord], scope: CancellationScope) -> None:
        self.batches.append(batch)

    @property
    def records(self) -> list[InboundRecord]:
        return [r for batch in self.batches for r in batch]


class FakeClock:
    """Settable clock for lifecycle tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 10, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def mailbox() -> FakeMailboxClient:
    """An empty fake mailbox."""
    return FakeMailboxClient()


@pytest.fixture
def delivery() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def output() -> RecordingOutput:
    return RecordingOutput()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def email_filter() -> EmailFilter:
    """A filter that matches everything."""
    return EmailFilter()


@pytest.fixture
def watch_settings(tmp_path) -> WatchSettings:
    return WatchSettings(application_name="test-app", state_directory=tmp_path / "watches")


@pytest.fixture
def topic() -> str:
    return "projects/test-project/topics/gmail"


@pytest.fixture
def transient_error() -> TransientBackendError:
    return TransientBackendError("backend unavailable", status_code=503)
