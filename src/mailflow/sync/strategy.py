"""Selection and execution of a subscription strategy."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from mailflow.core.config import DeliveryMode, Settings, get_settings, is_valid_topic_name
from mailflow.core.exceptions import ConfigurationError, InvalidDurationError, InvalidTopicNameError
from mailflow.core.types import CredentialProvider, DeliveryClient, MailboxClient, OutputAction
from mailflow.delivery.pull import PubSubPullClient
from mailflow.delivery.push import PushDeliveryServer
from mailflow.mailbox.models import EmailFilter
from mailflow.observability.logging import get_logger
from mailflow.resilience.shutdown import CancellationScope, GracefulShutdown
from mailflow.sync.listener import NotificationListener
from mailflow.sync.poller import PollingEngine
from mailflow.sync.session import SessionState
from mailflow.watch.broker import WatchBroker
from mailflow.watch.manager import WatchLifecycleManager
from mailflow.watch.state import FileWatchStateStore, WatchStateStore, utcnow

logger = get_logger(__name__)

DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$", re.IGNORECASE)

_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def parse_duration(value: str | None) -> timedelta | None:
    """
    Parse a duration such as "30s", "15m", "2h" or "1d".

    Returns:
        The duration, or None for an empty value (run indefinitely).

    Raises:
        InvalidDurationError: If the value is not <number><unit>.
    """
    if value is None or not value.strip():
        return None

    match = DURATION_PATTERN.match(value.strip())
    if not match:
        raise InvalidDurationError(value)

    amount = int(match.group(1))
    if amount == 0:
        raise InvalidDurationError(value)
    return timedelta(**{_DURATION_UNITS[match.group(2).lower()]: amount})


class SubscriptionOptions(BaseModel):
    """What to subscribe to and how."""

    model_config = ConfigDict(frozen=True)

    mode: DeliveryMode = DeliveryMode.POLL
    email_filter: EmailFilter = Field(default_factory=EmailFilter)
    topic_name: str | None = None
    subscription_path: str | None = None
    setup_watch: bool = False
    enforce_ownership: bool = False
    duration: timedelta | None = None
    interval_seconds: float | None = None
    session_id: str | None = None

    def end_time(self, now: datetime | None = None) -> datetime | None:
        if self.duration is None:
            return None
        return (now or utcnow()) + self.duration


class SubscriptionStrategy(Protocol):
    """A way of discovering new mail that feeds one output action."""

    async def run(self, output: OutputAction, scope: CancellationScope) -> None:
        ...


class PollingStrategy:
    """Timer-driven discovery."""

    def __init__(self, engine: PollingEngine) -> None:
        self.engine = engine

    async def run(self, output: OutputAction, scope: CancellationScope) -> None:
        await self.engine.run(output, scope)


class NotificationStrategy:
    """
    Notification-driven discovery, optionally keeping a watch alive.

    The listener is the primary task. The watch manager runs beside it and
    is always stopped when the listener ends, whatever the reason. A
    manager that cannot establish its first registration fails the scope.
    """

    def __init__(
        self,
        listener: NotificationListener,
        manager: WatchLifecycleManager | None = None,
        topic_name: str | None = None,
        label_ids: list[str] | None = None,
        end_time: datetime | None = None,
    ) -> None:
        if manager is not None and not topic_name:
            raise ConfigurationError("A topic is required to manage a watch")
        self.listener = listener
        self.manager = manager
        self._topic_name = topic_name
        self._label_ids = label_ids
        self._end_time = end_time

    async def _manage_watch(self, scope: CancellationScope) -> None:
        assert self.manager is not None and self._topic_name is not None
        try:
            await self.manager.run(self._topic_name, self._label_ids, self._end_time, scope)
        except Exception as e:
            logger.error("Watch management failed", error=str(e))
            scope.fail(e)

    async def run(self, output: OutputAction, scope: CancellationScope) -> None:
        watch_task: asyncio.Task[None] | None = None
        if self.manager is not None:
            watch_task = asyncio.create_task(self._manage_watch(scope), name="watch_manager")

        try:
            await self.listener.run(output, scope)
        finally:
            scope.cancel("listener stopped")
            if watch_task is not None:
                await asyncio.gather(watch_task, return_exceptions=True)


class StrategySelector:
    """
    Builds the strategy for a delivery mode.

    poll composes the polling engine alone. pull and push compose a
    notification listener over the matching delivery client, plus a watch
    lifecycle manager when setup_watch is requested.
    """

    def __init__(
        self,
        client: MailboxClient,
        credentials: CredentialProvider | None = None,
        settings: Settings | None = None,
        store: WatchStateStore | None = None,
        delivery: DeliveryClient | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._store = store
        self._delivery = delivery

    def validate(self, options: SubscriptionOptions) -> None:
        """
        Reject unusable options before anything starts.

        Raises:
            ConfigurationError: On a malformed topic, a missing pull
                subscription, or a non-positive interval.
        """
        if options.topic_name and not is_valid_topic_name(options.topic_name):
            raise InvalidTopicNameError(options.topic_name)

        if options.mode is DeliveryMode.POLL:
            if options.interval_seconds is not None and options.interval_seconds <= 0:
                raise ConfigurationError("Polling interval must be greater than 0 seconds")
            ignored = []
            if options.topic_name:
                ignored.append("topic")
            if options.setup_watch:
                ignored.append("setup_watch")
            if ignored:
                logger.warning("Options ignored in poll mode", options=ignored)
            return

        if options.setup_watch and not options.topic_name:
            raise ConfigurationError(
                "A topic is required to set up a watch",
                {"expected": "projects/{project}/topics/{topic}"},
            )

        if options.mode is DeliveryMode.PULL and self._delivery is None:
            if not self._subscription_path(options):
                raise ConfigurationError(
                    "Pull delivery needs a project and a subscription",
                    {"project_id": self._settings.pubsub.project_id},
                )
            if self._credentials is None:
                raise ConfigurationError("Pull delivery needs credentials")

        if options.interval_seconds is not None:
            logger.warning("Option ignored in notification modes", options=["interval"])

    def _subscription_path(self, options: SubscriptionOptions) -> str | None:
        if options.subscription_path:
            if options.subscription_path.startswith("projects/"):
                return options.subscription_path
            project_id = self._settings.pubsub.project_id
            if project_id:
                return f"projects/{project_id}/subscriptions/{options.subscription_path}"
            return None
        return self._settings.pubsub.subscription_path()

    def _create_delivery(self, options: SubscriptionOptions) -> DeliveryClient:
        if self._delivery is not None:
            return self._delivery

        pubsub = self._settings.pubsub
        if options.mode is DeliveryMode.PULL:
            path = self._subscription_path(options)
            assert path is not None and self._credentials is not None
            return PubSubPullClient(self._credentials, path, pubsub)

        return PushDeliveryServer(pubsub.push_host, pubsub.push_port, pubsub.push_path)

    def _create_manager(self, options: SubscriptionOptions) -> WatchLifecycleManager:
        store = self._store or FileWatchStateStore(self._settings.watch.state_directory)
        broker = WatchBroker(self._client, store, self._settings.watch)
        return WatchLifecycleManager(
            broker,
            self._settings.watch,
            enforce_ownership=options.enforce_ownership,
        )

    def create(self, options: SubscriptionOptions) -> SubscriptionStrategy:
        """
        Validate options and build the matching strategy.

        Raises:
            ConfigurationError: If the options are unusable.
        """
        self.validate(options)
        session = SessionState(session_id=options.session_id)

        if options.mode is DeliveryMode.POLL:
            interval = options.interval_seconds or self._settings.sync.poll_interval_seconds
            logger.info("Selected polling strategy", interval=interval)
            return PollingStrategy(
                PollingEngine(self._client, session, options.email_filter, interval)
            )

        listener = NotificationListener(
            self._client,
            self._create_delivery(options),
            session,
            options.email_filter,
            ack_policy=self._settings.sync.ack_policy,
            max_concurrent=self._settings.pubsub.max_concurrent_notifications,
            drain_timeout=self._settings.sync.drain_timeout,
        )

        manager = self._create_manager(options) if options.setup_watch else None
        logger.info(
            "Selected notification strategy",
            mode=options.mode.value,
            manage_watch=manager is not None,
        )
        return NotificationStrategy(
            listener,
            manager,
            topic_name=options.topic_name,
            label_ids=list(options.email_filter.label_ids) or None,
            end_time=options.end_time(),
        )


async def run_subscription(
    strategy: SubscriptionStrategy,
    output: OutputAction,
    duration: timedelta | None = None,
    scope: CancellationScope | None = None,
    handle_signals: bool = True,
) -> str | None:
    """
    Run a strategy until a signal, the duration deadline or a failure.

    Returns:
        Why the run stopped.

    Raises:
        AuthenticationError: Credentials were rejected.
        MailflowError: A fatal failure reported by a component.
    """
    scope = scope or CancellationScope()
    shutdown = GracefulShutdown(scope)
    if handle_signals:
        shutdown.register_signals()
    if duration is not None:
        scope.cancel_after(duration.total_seconds())

    try:
        await strategy.run(output, scope)
    finally:
        await shutdown.shutdown()
        shutdown.remove_signals()

    logger.info("Subscription ended", reason=scope.reason)
    return scope.reason
