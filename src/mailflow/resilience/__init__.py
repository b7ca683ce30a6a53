"""Resilience module for fault tolerance."""

from mailflow.resilience.retry import RetryPolicy, retry_with_policy
from mailflow.resilience.shutdown import CancellationScope, GracefulShutdown

__all__ = [
    "CancellationScope",
    "GracefulShutdown",
    "RetryPolicy",
    "retry_with_policy",
]
