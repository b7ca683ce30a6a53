"""Watch registration lifecycle: adopt or create, renew before expiry, tear down."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from mailflow.core.config import WatchSettings
from mailflow.core.types import GMAIL_SERVICE_TYPE
from mailflow.observability.logging import get_watch_logger
from mailflow.observability.metrics import get_metrics_collector
from mailflow.resilience.shutdown import CancellationScope
from mailflow.watch.broker import WatchBroker
from mailflow.watch.state import WatchRegistration, utcnow


class WatchLifecycleManager:
    """
    Keeps one watch registration alive for the duration of a run.

    A registration found in the store and not yet expired is adopted
    without ownership, so stop() leaves it in place for whoever created
    it. A registration created here is owned, and stop() tears it down
    remotely and clears the persisted state.

    Renewal checks are scheduled safety_margin before expiration, never
    sooner than min_schedule from now. A check renews when the remaining
    lifetime is within renewal_threshold. A failed check is retried after
    retry_backoff and never propagates.
    """

    def __init__(
        self,
        broker: WatchBroker,
        settings: WatchSettings | None = None,
        enforce_ownership: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._broker = broker
        self._settings = settings or WatchSettings()
        self._enforce_ownership = enforce_ownership
        self._clock = clock

        self._registration: WatchRegistration | None = None
        self._owned = False
        self._stopped = False
        self._wakeup = asyncio.Event()

        self._logger = get_watch_logger(GMAIL_SERVICE_TYPE, broker.application_name)
        self._metrics = get_metrics_collector()

    @property
    def registration(self) -> WatchRegistration | None:
        return self._registration

    @property
    def owned(self) -> bool:
        return self._owned

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(minutes=self._settings.safety_margin_minutes)

    @property
    def renewal_threshold(self) -> timedelta:
        return timedelta(minutes=self._settings.renewal_threshold_minutes)

    @property
    def retry_backoff(self) -> timedelta:
        return timedelta(minutes=self._settings.retry_backoff_minutes)

    @property
    def min_schedule(self) -> timedelta:
        return timedelta(minutes=self._settings.min_schedule_minutes)

    def next_check_delay(self, registration: WatchRegistration) -> timedelta:
        """Delay until the next renewal check for a registration."""
        delay = registration.time_to_expiry(self._clock()) - self.safety_margin
        if delay <= self.min_schedule:
            return self.min_schedule
        return delay

    async def _create(self, topic_name: str, label_ids: list[str] | None) -> WatchRegistration:
        result = await self._broker.watch(topic_name, label_ids, force_new=True)
        registration = result.registration.model_copy(update={"owned": True})
        self._registration = registration
        self._owned = True
        return registration

    async def ensure_active(
        self,
        topic_name: str,
        label_ids: list[str] | None = None,
        end_time: datetime | None = None,
    ) -> WatchRegistration:
        """
        Adopt a live registration or create an owned one.

        Raises:
            InvalidTopicNameError: If the topic is malformed.
            AuthenticationError: If the backend rejected the credentials.
            WatchError: If a new registration could not be created.
        """
        now = self._clock()
        existing = await self._broker.load()

        if (
            existing is not None
            and existing.is_active(now)
            and existing.topic_name == topic_name
            and not self._enforce_ownership
        ):
            self._registration = existing.model_copy(update={"owned": False})
            self._owned = False
            self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "adopted")
            self._logger.info(
                "Adopted existing watch",
                watch_id=existing.watch_id,
                expiration=existing.expiration.isoformat(),
                renews_before_end=end_time is None or existing.expiration < end_time,
            )
            return self._registration

        if existing is not None and not existing.is_active(now):
            self._logger.info("Persisted watch expired", expiration=existing.expiration.isoformat())
        registration = await self._create(topic_name, label_ids)
        self._logger.info(
            "Created owned watch",
            watch_id=registration.watch_id,
            expiration=registration.expiration.isoformat(),
        )
        return registration

    async def check_and_renew(
        self,
        topic_name: str,
        label_ids: list[str] | None = None,
        end_time: datetime | None = None,
    ) -> timedelta | None:
        """
        Run one renewal check.

        Returns:
            Delay until the next check, or None once end_time has passed
            and renewal has stopped for good.
        """
        try:
            now = self._clock()
            current = await self._broker.load()

            if current is None or not current.is_active(now):
                if end_time is not None and now >= end_time:
                    self._logger.info("Run ended, not recreating watch")
                    return None
                self._logger.warning("No active watch during renewal check, creating one")
                current = await self._create(topic_name, label_ids)
                self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "renewed")
                return self.next_check_delay(current)

            remaining = current.time_to_expiry(now)
            if remaining <= self.renewal_threshold:
                if end_time is not None and now >= end_time:
                    self._logger.info("Run ended, not renewing watch")
                    return None
                self._logger.info("Renewing watch", expires_in=str(remaining))
                current = await self._create(topic_name, label_ids)
                self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "renewed")
            else:
                self._logger.debug("Watch renewal not due", expires_in=str(remaining))

            return self.next_check_delay(current)

        except Exception as e:
            self._metrics.record_watch_operation(GMAIL_SERVICE_TYPE, "failed")
            self._logger.error(
                "Watch renewal check failed",
                error=str(e),
                retry_in=str(self.retry_backoff),
            )
            return self.retry_backoff

    async def _sleep(self, delay: timedelta | None, scope: CancellationScope) -> bool:
        """Wait for delay (None waits indefinitely). True if cancelled or stopped first."""
        if self._stopped or scope.cancelled:
            return True

        waiters = {
            asyncio.create_task(scope.wait()),
            asyncio.create_task(self._wakeup.wait()),
        }
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=None if delay is None else max(delay.total_seconds(), 0.0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        return bool(done)

    async def run(
        self,
        topic_name: str,
        label_ids: list[str] | None,
        end_time: datetime | None,
        scope: CancellationScope,
    ) -> None:
        """
        Ensure a watch, then keep renewing it until cancelled.

        stop() always runs on the way out.
        """
        try:
            registration = await self.ensure_active(topic_name, label_ids, end_time)
            delay: timedelta | None = self.next_check_delay(registration)
            self._logger.info("Next renewal check scheduled", delay=str(delay))

            while delay is not None:
                if await self._sleep(delay, scope):
                    break
                delay = await self.check_and_renew(topic_name, label_ids, end_time)
                if delay is not None:
                    self._logger.info("Next renewal check scheduled", delay=str(delay))

            if delay is None:
                # Renewal is over for good; hold the registration until shutdown
                await self._sleep(None, scope)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel pending renewal and tear down an owned registration."""
        if self._stopped:
            return
        self._stopped = True
        self._wakeup.set()

        if self._registration is None:
            return

        if not self._owned:
            self._logger.info("Leaving adopted watch active", watch_id=self._registration.watch_id)
            return

        try:
            await self._broker.stop()
            self._logger.info("Owned watch stopped", watch_id=self._registration.watch_id)
        except Exception as e:
            self._logger.warning("Failed to stop owned watch", error=str(e))
