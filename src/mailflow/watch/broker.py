"""Gmail watch registration: create, reuse, stop and repeat."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mailflow.core.config import WatchSettings, is_valid_topic_name
from mailflow.core.exceptions import (
    AuthenticationError,
    InvalidTopicNameError,
    MailboxError,
    MailflowError,
    WatchError,
)
from mailflow.core.types import GMAIL_SERVICE_TYPE, ForceNewMode, MailboxClient
from mailflow.observability.logging import get_watch_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.resilience.shutdown import CancellationScope
from mailflow.watch.state import WatchRegistration, WatchStateStore, utcnow


def _parse_expiration(raw: Any, fallback: datetime) -> datetime:
    """Gmail reports expiration as epoch milliseconds, usually as a string."""
    if raw in (None, ""):
        return fallback
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return fallback


class WatchResult:
    """Outcome of a watch request, new or reused."""

    def __init__(
        self,
        registration: WatchRegistration,
        is_newly_created: bool,
        history_id: int | None,
        broker: WatchBroker,
    ) -> None:
        self.registration = registration
        self.is_newly_created = is_newly_created
        self.history_id = history_id
        self._broker = broker

    @property
    def service_type(self) -> str:
        return self.registration.service_type

    @property
    def topic_name(self) -> str:
        return self.registration.topic_name

    @property
    def expiration(self) -> datetime:
        return self.registration.expiration

    @property
    def watch_id(self) -> str:
        return self.registration.watch_id

    async def cancel(self) -> bool:
        """Stop this watch remotely and clear its persisted state."""
        return await self._broker.stop()


class WatchBroker:
    """
    Creates Gmail watch registrations and keeps their persisted state.

    A persisted registration that is still active (beyond the expiration
    buffer) on the same topic is reused unless a new one is forced.
    """

    def __init__(
        self,
        client: MailboxClient,
        store: WatchStateStore,
        settings: WatchSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings or WatchSettings()
        self._clock = clock
        self._logger = get_watch_logger(GMAIL_SERVICE_TYPE, self._settings.application_name)
        self._metrics = get_metrics_collector()

    @property
    def application_name(self) -> str:
        return self._settings.application_name

    @property
    def store(self) -> WatchStateStore:
        return self._store

    async def load(self) -> WatchRegistration | None:
        """Persisted registration for this application, active or not."""
        return await self._store.load(GMAIL_SERVICE_TYPE, self.application_name)

    async def get_active(self) -> WatchRegistration | None:
        """Persisted registration that outlives the expiration buffer."""
        registration = await self.load()
        buffer = timedelta(minutes=self._settings.expiration_buffer_minutes)
        if registration and registration.is_active(self._clock(), buffer):
            return registration
        return None

    async def watch(
        self,
        topic_name: str,
        label_ids: list[str] | None = None,
        force_new: bool = False,
    ) -> WatchResult:
        """
        Ensure a watch publishes to topic_name.

        Raises:
            InvalidTopicNameError: If the topic is malformed.
            AuthenticationError: If the backend rejected the credentials.
            WatchError: If the backend refused the registration.
        """
        if not is_valid_topic_name(topic_name):
            raise InvalidTopicNameError(topic_name)

        if not force_new:
            existing = await self.get_active()
            if existing is not None and existing.topic_name == topic_name:
                self._logger.info(
                    "Reusing active watch",
                    watch_id=existing.watch_id,
                    expiration=existing.expiration.isoformat(),
                )
                self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "reused")
                history_id = int(existing.watch_id) if existing.watch_id.isdigit() else None
                return WatchResult(existing, False, history_id, self)

        labels = label_ids or list(self._settings.default_label_ids)
        try:
            response = await self._client.create_watch(topic_name, labels)
        except MailboxError as e:
            self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "failed")
            raise WatchError(
                f"Failed to create watch: {e.message}",
                GMAIL_SERVICE_TYPE,
                {"topic_name": topic_name},
            ) from e

        now = self._clock()
        fallback = now + timedelta(days=self._settings.default_expiration_days)
        history_id = response.get("historyId")
        registration = WatchRegistration(
            service_type=GMAIL_SERVICE_TYPE,
            watch_id=str(history_id) if history_id is not None else "0",
            topic_name=topic_name,
            application_name=self.application_name,
            expiration=_parse_expiration(response.get("expiration"), fallback),
            created_at=now,
            service_specific_data={"labelIds": labels},
            owned=True,
        )
        await self._store.save(registration)

        self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "created")
        self._metrics.set_watch_expiration(
            GMAIL_SERVICE_TYPE, self.application_name, registration.expiration.timestamp()
        )
        self._logger.info(
            "Watch created",
            watch_id=registration.watch_id,
            topic=topic_name,
            expiration=registration.expiration.isoformat(),
        )
        return WatchResult(
            registration,
            True,
            int(history_id) if history_id is not None else None,
            self,
        )

    async def stop(self) -> bool:
        """
        Stop the mailbox watch and clear persisted state.

        Raises:
            AuthenticationError: If the backend rejected the credentials.
            WatchError: If the backend refused to stop the watch.
        """
        try:
            await self._client.stop_watch()
        except MailboxError as e:
            self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "failed")
            raise WatchError(f"Failed to stop watch: {e.message}", GMAIL_SERVICE_TYPE) from e

        removed = await self._store.delete(GMAIL_SERVICE_TYPE, self.application_name)
        self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "stopped")
        self._logger.info("Watch stopped", state_cleared=removed)
        return True

    async def list_active(self) -> list[WatchRegistration]:
        buffer = timedelta(minutes=self._settings.expiration_buffer_minutes)
        now = self._clock()
        return [r for r in await self._store.list_all() if r.is_active(now, buffer)]


async def run_repeated(
    broker: WatchBroker,
    topic_name: str,
    label_ids: list[str] | None,
    mode: ForceNewMode,
    frequency: timedelta | None,
    scope: CancellationScope,
) -> WatchResult | None:
    """
    Issue watch requests once, or every frequency until cancelled.

    Failures of a repeated execution are logged and the next execution
    still runs. Authentication failures always propagate.

    Returns:
        The result of the last successful execution.
    """
    logger = get_watch_logger(GMAIL_SERVICE_TYPE, broker.application_name)
    if not is_valid_topic_name(topic_name):
        raise InvalidTopicNameError(topic_name)

    if frequency is None:
        result = await broker.watch(topic_name, label_ids, mode.force_new(1))
        logger.info("Watch expires", expiration=result.expiration.isoformat())
        return result

    last: WatchResult | None = None
    execution = 1
    while not scope.cancelled:
        force_new = mode.force_new(execution)
        logger.info("Executing watch request", execution=execution, force_new=force_new)
        try:
            last = await broker.watch(topic_name, label_ids, force_new)
            next_run = utcnow() + frequency
            if next_run > last.expiration:
                logger.warning(
                    "Next execution is scheduled after the watch expires",
                    next_run=next_run.isoformat(),
                    expiration=last.expiration.isoformat(),
                )
        except AuthenticationError:
            raise
        except MailflowError as e:
            logger.error("Watch execution failed", execution=execution, error=str(e))

        execution += 1
        if await scope.sleep(frequency.total_seconds()):
            break

    logger.info("Repeated watch stopped; the watch stays active until it expires")
    return last
