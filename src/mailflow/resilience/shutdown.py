"""Cancellation and graceful shutdown handling."""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable, Coroutine

from mailflow.observability.logging import get_logger

logger = get_logger(__name__)

ShutdownHandler = Callable[[], Coroutine[Any, Any, None]]


class CancellationScope:
    """
    Shared stop signal for a sync run.

    A scope is cancelled by whichever comes first: a caller shutdown
    request, an optional deadline, or an internal failure reported via
    fail(). Every wait in the engine goes through wait() or sleep() so
    that cancellation interrupts it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._error: BaseException | None = None
        self._deadline_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def error(self) -> BaseException | None:
        """First failure reported through fail(), if any."""
        return self._error

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Only the first reason is kept."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        logger.debug("Cancellation requested", reason=reason)

    def fail(self, error: BaseException) -> None:
        """Record an internal failure and cancel the scope."""
        if self._error is None:
            self._error = error
        self.cancel(f"failure: {error}")

    def cancel_after(self, seconds: float) -> None:
        """Cancel the scope once the deadline elapses."""
        loop = asyncio.get_running_loop()
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
        self._deadline_handle = loop.call_later(seconds, self.cancel, "deadline reached")

    async def wait(self) -> None:
        """Wait until the scope is cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep, waking early on cancellation.

        Returns:
            True if the scope was cancelled before the delay elapsed.
        """
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0.0))
            return True
        except asyncio.TimeoutError:
            return False

    def raise_if_failed(self) -> None:
        """Re-raise a failure recorded through fail()."""
        if self._error is not None:
            raise self._error


class GracefulShutdown:
    """
    Translates SIGINT/SIGTERM into scope cancellation.

    Registered handlers run after the scope is cancelled, highest
    priority first, bounded by an overall timeout.
    """

    def __init__(self, scope: CancellationScope, timeout: float = 30.0) -> None:
        self._scope = scope
        self._timeout = timeout
        self._handlers: list[tuple[str, ShutdownHandler, int]] = []
        self._shutting_down = False
        self._signals: list[signal.Signals] = []

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def register(self, name: str, handler: ShutdownHandler, priority: int = 0) -> None:
        """Register a coroutine to run during shutdown."""
        self._handlers.append((name, handler, priority))
        logger.debug("Registered shutdown handler", name=name, priority=priority)

    def register_signals(self) -> None:
        """Install SIGINT and SIGTERM handlers on the running loop."""
        if self._signals:
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not supported outside the main thread or on some platforms
                continue
            self._signals.append(sig)

        logger.debug("Signal handlers registered", signals=[s.name for s in self._signals])

    def remove_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received shutdown signal", signal=sig.name)
        self._scope.cancel(f"signal {sig.name}")

    async def shutdown(self) -> None:
        """Cancel the scope and run registered handlers once."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self._scope.cancel("shutdown")

        ordered = sorted(self._handlers, key=lambda h: h[2], reverse=True)
        logger.info("Starting graceful shutdown", handler_count=len(ordered))

        try:
            await asyncio.wait_for(self._run_handlers(ordered), timeout=self._timeout)
            logger.info("Graceful shutdown completed")
        except asyncio.TimeoutError:
            logger.warning("Shutdown timed out", timeout=self._timeout)

    async def _run_handlers(self, handlers: list[tuple[str, ShutdownHandler, int]]) -> None:
        for name, handler, _priority in handlers:
            try:
                await handler()
            except Exception as e:
                logger.error("Shutdown handler failed", name=name, error=str(e))

    async def __aenter__(self) -> GracefulShutdown:
        self.register_signals()
        return self

    async def __aexit__(self, *args: Any) -> None:
        try:
            await self.shutdown()
        finally:
            self.remove_signals()
