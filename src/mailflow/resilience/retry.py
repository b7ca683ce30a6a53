"""Retry logic with exponential backoff."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from mailflow.core.exceptions import TransientBackendError
from mailflow.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry policy for a single backend call.

    Only TransientBackendError is retried. Authentication, not-found and
    decode errors surface on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        retryable_exceptions: tuple[type[Exception], ...] = (TransientBackendError,),
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retryable_exceptions = retryable_exceptions

    def build(self, operation: str = "request") -> AsyncRetrying:
        """Create a tenacity controller for one call."""

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "Retrying after transient error",
                operation=operation,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(exc),
                delay=round(delay, 2),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(self.retryable_exceptions),
            before_sleep=_log_retry,
            reraise=True,
        )


async def retry_with_policy(
    func: Callable[..., Awaitable[T]],
    policy: RetryPolicy,
    *args: Any,
    operation: str = "request",
    **kwargs: Any,
) -> T:
    """
    Execute an async function under a retry policy.

    Raises:
        The last exception once attempts are exhausted.
    """
    async for attempt in policy.build(operation):
        with attempt:
            return await func(*args, **kwargs)
    raise AssertionError("unreachable")  # reraise=True always raises first
