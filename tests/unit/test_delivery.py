"""Unit tests for Pub/Sub pull and push delivery."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from conftest import notification_envelope

from mailflow.core.config import PubSubSettings
from mailflow.core.exceptions import DeliveryError
from mailflow.core.types import AckDecision, Envelope
from mailflow.delivery.pull import PubSubPullClient
from mailflow.delivery.push import PushDeliveryServer, create_push_app
from mailflow.security.credentials import StaticTokenProvider

SUBSCRIPTION = "projects/test-project/subscriptions/gmail-sub"


class FakePubSub:
    """Mock Pub/Sub REST backend recording settle calls."""

    def __init__(self, messages: list[dict]) -> None:
        self.pending = list(messages)
        self.acked: list[str] = []
        self.nacked: list[str] = []
        self.pull_bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path

        if path.endswith(":pull"):
            self.pull_bodies.append(body)
            if not self.pending:
                return httpx.Response(503, text="no messages right now")
            received, self.pending = self.pending, []
            return httpx.Response(200, json={"receivedMessages": received})
        if path.endswith(":acknowledge"):
            self.acked.extend(body["ackIds"])
            return httpx.Response(200, json={})
        if path.endswith(":modifyAckDeadline"):
            assert body["ackDeadlineSeconds"] == 0
            self.nacked.extend(body["ackIds"])
            return httpx.Response(200, json={})
        return httpx.Response(404, text="unknown")


def received_message(ack_id: str, history_id: int) -> dict:
    envelope = notification_envelope(history_id, message_id=f"msg-{ack_id}")
    return {
        "ackId": ack_id,
        "message": {
            "data": envelope.data,
            "messageId": envelope.message_id,
            "publishTime": "2025-10-06T12:00:00Z",
        },
    }


def make_pull_client(backend: FakePubSub) -> PubSubPullClient:
    settings = PubSubSettings(api_base_url="https://pubsub.test/v1", max_messages=5)
    return PubSubPullClient(
        StaticTokenProvider("test-token"),
        SUBSCRIPTION,
        settings,
        httpx.AsyncClient(transport=httpx.MockTransport(backend)),
        error_backoff=0.01,
    )


@pytest.mark.asyncio
class TestPubSubPullClient:
    """Tests for PubSubPullClient."""

    async def test_pull_parses_envelopes(self):
        backend = FakePubSub([received_message("ack-1", 150)])
        client = make_pull_client(backend)

        received = await client.pull()

        ack_id, envelope = received[0]
        assert ack_id == "ack-1"
        assert envelope.message_id == "msg-ack-1"
        assert envelope.ack_id == "ack-1"
        assert envelope.subscription == SUBSCRIPTION
        assert envelope.publish_time is not None
        assert backend.pull_bodies == [{"maxMessages": 5, "returnImmediately": False}]

    async def test_dispatches_and_settles(self):
        backend = FakePubSub([received_message("ack-1", 150), received_message("ack-2", 160)])
        client = make_pull_client(backend)
        seen: list[str] = []

        async def handler(envelope: Envelope) -> AckDecision:
            seen.append(envelope.message_id)
            return AckDecision.ACK if envelope.ack_id == "ack-1" else AckDecision.NACK

        await client.start(handler)
        for _ in range(100):
            if len(backend.acked) + len(backend.nacked) == 2:
                break
            await asyncio.sleep(0.01)
        await client.stop(timeout=1.0)

        assert sorted(seen) == ["msg-ack-1", "msg-ack-2"]
        assert backend.acked == ["ack-1"]
        assert backend.nacked == ["ack-2"]

    async def test_handler_exception_nacks(self):
        backend = FakePubSub([received_message("ack-1", 150)])
        client = make_pull_client(backend)

        async def handler(envelope: Envelope) -> AckDecision:
            raise RuntimeError("handler bug")

        await client.start(handler)
        for _ in range(100):
            if backend.nacked:
                break
            await asyncio.sleep(0.01)
        await client.stop(timeout=1.0)

        assert backend.nacked == ["ack-1"]

    async def test_stop_waits_for_inflight_handlers(self):
        backend = FakePubSub([received_message("ack-1", 150)])
        client = make_pull_client(backend)
        started = asyncio.Event()

        async def slow_handler(envelope: Envelope) -> AckDecision:
            started.set()
            await asyncio.sleep(0.05)
            return AckDecision.ACK

        await client.start(slow_handler)
        await asyncio.wait_for(started.wait(), timeout=1.0)
        await client.stop(timeout=1.0)

        assert backend.acked == ["ack-1"]

    async def test_start_twice_rejected(self):
        client = make_pull_client(FakePubSub([]))

        async def handler(envelope: Envelope) -> AckDecision:
            return AckDecision.ACK

        await client.start(handler)
        with pytest.raises(DeliveryError):
            await client.start(handler)
        await client.stop(timeout=1.0)

    async def test_wait_returns_after_stop(self):
        client = make_pull_client(FakePubSub([]))

        async def handler(envelope: Envelope) -> AckDecision:
            return AckDecision.ACK

        await client.start(handler)
        waiter = asyncio.create_task(client.wait())
        await asyncio.sleep(0.01)
        await client.stop(timeout=1.0)

        await asyncio.wait_for(waiter, timeout=1.0)


def push_body(history_id: int) -> dict:
    envelope = notification_envelope(history_id, message_id="push-1")
    return {
        "message": {"data": envelope.data, "messageId": envelope.message_id, "attributes": {}},
        "subscription": SUBSCRIPTION,
    }


@pytest.mark.asyncio
class TestPushApp:
    """Tests for the push endpoint application."""

    @pytest.fixture
    def decisions(self):
        return []

    @pytest.fixture
    def client(self, decisions):
        async def handler(envelope: Envelope) -> AckDecision:
            decisions.append(envelope)
            if envelope.message_id == "boom":
                raise RuntimeError("handler bug")
            return AckDecision.ACK if envelope.subscription else AckDecision.NACK

        app = create_push_app(handler, "/pubsub/push")
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    async def test_ack_returns_204(self, client, decisions):
        response = await client.post("/pubsub/push", json=push_body(150))

        assert response.status_code == 204
        assert decisions[0].message_id == "push-1"
        assert decisions[0].subscription == SUBSCRIPTION

    async def test_nack_returns_500(self, client):
        body = push_body(150)
        del body["subscription"]

        response = await client.post("/pubsub/push", json=body)

        assert response.status_code == 500

    async def test_handler_exception_returns_500(self, client):
        body = push_body(150)
        body["message"]["messageId"] = "boom"

        response = await client.post("/pubsub/push", json=body)

        assert response.status_code == 500

    async def test_malformed_body_returns_400(self, client, decisions):
        response = await client.post("/pubsub/push", content=b"not json")
        assert response.status_code == 400

        response = await client.post("/pubsub/push", json={"subscription": SUBSCRIPTION})
        assert response.status_code == 400
        assert decisions == []

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
class TestPushDeliveryServer:
    """Tests for PushDeliveryServer lifecycle."""

    async def test_stop_without_start(self):
        await PushDeliveryServer(port=8089).stop(timeout=0.1)

    async def test_wait_without_start(self):
        await PushDeliveryServer(port=8089).wait()
