"""Observability module for mailflow."""

from mailflow.observability.logging import LogContext, configure_logging, get_logger
from mailflow.observability.metrics import get_metrics_collector

__all__ = ["LogContext", "configure_logging", "get_logger", "get_metrics_collector"]
