"""Unit tests for the watch broker and repeated watch execution."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import FakeClock, FakeMailboxClient

from mailflow.core.exceptions import AuthenticationError, InvalidTopicNameError, MailboxError, WatchError
from mailflow.core.types import ForceNewMode
from mailflow.resilience.shutdown import CancellationScope
from mailflow.watch.broker import WatchBroker, _parse_expiration, run_repeated
from mailflow.watch.state import InMemoryWatchStateStore


class TestForceNewMode:
    """Tests for ForceNewMode."""

    def test_modes(self):
        assert [ForceNewMode.FALSE.force_new(n) for n in (1, 2)] == [False, False]
        assert [ForceNewMode.FIRST.force_new(n) for n in (1, 2)] == [True, False]
        assert [ForceNewMode.ALWAYS.force_new(n) for n in (1, 2)] == [True, True]


class TestParseExpiration:
    def test_epoch_millis(self, clock: FakeClock):
        parsed = _parse_expiration("1759752000000", clock())
        assert parsed.year == 2025
        assert parsed.tzinfo is not None

    def test_fallback(self, clock: FakeClock):
        assert _parse_expiration(None, clock()) == clock()
        assert _parse_expiration("soon", clock()) == clock()


@pytest.mark.asyncio
class TestWatchBroker:
    """Tests for WatchBroker."""

    @pytest.fixture
    def store(self):
        return InMemoryWatchStateStore()

    @pytest.fixture
    def broker(self, mailbox: FakeMailboxClient, store, watch_settings, clock: FakeClock):
        mailbox.profile_history_id = 500
        mailbox.watch_expiration = clock() + timedelta(days=7)
        return WatchBroker(mailbox, store, watch_settings, clock=clock)

    async def test_creates_and_persists(self, broker, mailbox, store, topic, clock):
        result = await broker.watch(topic, ["INBOX"])

        assert result.is_newly_created
        assert result.history_id == 500
        assert result.watch_id == "500"
        assert result.expiration == clock() + timedelta(days=7)
        assert mailbox.watch_calls == [(topic, ["INBOX"])]

        saved = await store.load("gmail", "test-app")
        assert saved is not None
        assert saved.topic_name == topic

    async def test_default_labels(self, broker, mailbox, topic):
        await broker.watch(topic)
        assert mailbox.watch_calls == [(topic, ["INBOX"])]

    async def test_reuses_active_registration(self, broker, mailbox, topic):
        await broker.watch(topic)
        result = await broker.watch(topic)

        assert not result.is_newly_created
        assert len(mailbox.watch_calls) == 1

    async def test_force_new_skips_reuse(self, broker, mailbox, topic):
        await broker.watch(topic)
        result = await broker.watch(topic, force_new=True)

        assert result.is_newly_created
        assert len(mailbox.watch_calls) == 2

    async def test_other_topic_not_reused(self, broker, mailbox, topic):
        await broker.watch(topic)
        await broker.watch("projects/test-project/topics/other")
        assert len(mailbox.watch_calls) == 2

    async def test_registration_near_expiry_not_reused(self, broker, mailbox, topic, clock):
        await broker.watch(topic)
        clock.advance(timedelta(days=7) - timedelta(minutes=2))

        result = await broker.watch(topic)

        assert result.is_newly_created

    async def test_invalid_topic(self, broker, mailbox):
        with pytest.raises(InvalidTopicNameError):
            await broker.watch("my-topic")
        assert mailbox.watch_calls == []

    async def test_backend_failure_wrapped(self, broker, mailbox, topic):
        mailbox.watch_error = MailboxError("topic not found", status_code=400)
        with pytest.raises(WatchError):
            await broker.watch(topic)

    async def test_authentication_failure_propagates(self, broker, mailbox, topic):
        mailbox.watch_error = AuthenticationError("revoked")
        with pytest.raises(AuthenticationError):
            await broker.watch(topic)

    async def test_stop_clears_state(self, broker, mailbox, store, topic):
        result = await broker.watch(topic)
        assert await result.cancel() is True

        assert mailbox.stop_calls == 1
        assert await store.load("gmail", "test-app") is None

    async def test_list_active(self, broker, topic, clock):
        await broker.watch(topic)
        assert len(await broker.list_active()) == 1

        clock.advance(timedelta(days=8))
        assert await broker.list_active() == []


@pytest.mark.asyncio
class TestRunRepeated:
    """Tests for run_repeated."""

    @pytest.fixture
    def broker(self, mailbox: FakeMailboxClient, watch_settings):
        return WatchBroker(mailbox, InMemoryWatchStateStore(), watch_settings)

    async def test_single_execution(self, broker, mailbox, topic):
        result = await run_repeated(broker, topic, None, ForceNewMode.FALSE, None, CancellationScope())

        assert result is not None
        assert result.is_newly_created
        assert len(mailbox.watch_calls) == 1

    async def test_repeats_until_cancelled(self, broker, mailbox, topic):
        scope = CancellationScope()

        async def cancel_later() -> None:
            await asyncio.sleep(0.05)
            scope.cancel()

        result, _ = await asyncio.gather(
            run_repeated(broker, topic, None, ForceNewMode.FIRST, timedelta(milliseconds=10), scope),
            cancel_later(),
        )

        # Only the first execution forces a new registration
        assert len(mailbox.watch_calls) == 1
        assert result is not None
        assert not result.is_newly_created

    async def test_always_creates_each_time(self, broker, mailbox, topic):
        scope = CancellationScope()

        async def cancel_later() -> None:
            await asyncio.sleep(0.05)
            scope.cancel()

        await asyncio.gather(
            run_repeated(broker, topic, None, ForceNewMode.ALWAYS, timedelta(milliseconds=10), scope),
            cancel_later(),
        )

        assert len(mailbox.watch_calls) >= 2

    async def test_failed_execution_does_not_stop_loop(self, broker, mailbox, topic):
        mailbox.watch_error = MailboxError("unavailable", status_code=503)
        scope = CancellationScope()

        async def recover() -> None:
            await asyncio.sleep(0.03)
            mailbox.watch_error = None
            await asyncio.sleep(0.05)
            scope.cancel()

        result, _ = await asyncio.gather(
            run_repeated(broker, topic, None, ForceNewMode.FALSE, timedelta(milliseconds=10), scope),
            recover(),
        )

        assert result is not None

    async def test_invalid_topic_fails_fast(self, broker):
        with pytest.raises(InvalidTopicNameError):
            await run_repeated(
                broker, "bad", None, ForceNewMode.FALSE, timedelta(seconds=1), CancellationScope()
            )
