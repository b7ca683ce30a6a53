"""Unit tests for output actions."""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import RecordingOutput, gmail_message

from mailflow.mailbox.models import EmailMessage
from mailflow.resilience.shutdown import CancellationScope
from mailflow.sync.outputs import WebhookForwarder, chain_outputs, matched_emails, webhook_payload
from mailflow.sync.records import Failed, Filtered, InboundRecord, Matched


def email(message_id: str) -> EmailMessage:
    return EmailMessage.from_gmail(gmail_message(message_id, 1))


@pytest.fixture
def batch() -> list[InboundRecord]:
    return [
        InboundRecord(batch_id=1, result=Matched(record=email("a"))),
        InboundRecord(batch_id=1, result=Filtered(record=email("b"))),
        InboundRecord(batch_id=1, result=Failed(reason="gone", message_id="c")),
        InboundRecord(batch_id=1, result=Matched(record=email("d"))),
    ]


class TestPayload:
    """Tests for batch payload helpers."""

    def test_matched_emails_keeps_order(self, batch):
        assert [e.id for e in matched_emails(batch)] == ["a", "d"]

    def test_webhook_payload(self, batch):
        payload = webhook_payload(matched_emails(batch))

        assert payload["emailCount"] == 2
        assert [e["id"] for e in payload["emails"]] == ["a", "d"]
        assert payload["emails"][0]["from"] == "alice@example.com"
        assert "timestamp" in payload


@pytest.mark.asyncio
class TestWebhookForwarder:
    """Tests for WebhookForwarder."""

    async def test_posts_matched_emails(self, batch):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        forwarder = WebhookForwarder(
            "https://hooks.test/mail",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        await forwarder(batch, CancellationScope())

        assert len(requests) == 1
        assert str(requests[0].url) == "https://hooks.test/mail"
        assert json.loads(requests[0].content)["emailCount"] == 2

    async def test_skips_batch_without_matches(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        forwarder = WebhookForwarder(
            "https://hooks.test/mail",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        await forwarder(
            [InboundRecord(batch_id=1, result=Failed(reason="bad notification"))],
            CancellationScope(),
        )

        assert requests == []

    async def test_failure_is_not_raised(self, batch):
        forwarder = WebhookForwarder(
            "https://hooks.test/mail",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502))),
        )

        await forwarder(batch, CancellationScope())

    async def test_connection_failure_is_not_raised(self, batch):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        forwarder = WebhookForwarder(
            "https://hooks.test/mail",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        await forwarder(batch, CancellationScope())

    async def test_close_leaves_injected_client_open(self):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        forwarder = WebhookForwarder("https://hooks.test/mail", http_client=http_client)

        await forwarder.close()

        assert not http_client.is_closed
        await http_client.aclose()


@pytest.mark.asyncio
class TestChainOutputs:
    """Tests for chain_outputs."""

    async def test_runs_each_action_in_order(self, batch):
        calls: list[str] = []
        first = RecordingOutput()
        second = RecordingOutput()

        async def marker(records: list[InboundRecord], scope: CancellationScope) -> None:
            calls.append("marker")

        await chain_outputs(first, marker, second)(batch, CancellationScope())

        assert first.batches == [batch]
        assert second.batches == [batch]
        assert calls == ["marker"]
