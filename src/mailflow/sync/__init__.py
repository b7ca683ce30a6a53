"""Incremental sync: session state, history resolution, polling and notifications."""

from mailflow.sync.history import HistoryResolver
from mailflow.sync.listener import NotificationListener, decode_notification
from mailflow.sync.outputs import WebhookForwarder, chain_outputs, matched_emails
from mailflow.sync.poller import PollingEngine
from mailflow.sync.records import Failed, Filtered, InboundRecord, Matched
from mailflow.sync.session import SessionState
from mailflow.sync.strategy import (
    NotificationStrategy,
    PollingStrategy,
    StrategySelector,
    SubscriptionOptions,
    parse_duration,
    run_subscription,
)

__all__ = [
    "Failed",
    "Filtered",
    "HistoryResolver",
    "InboundRecord",
    "Matched",
    "NotificationListener",
    "NotificationStrategy",
    "PollingEngine",
    "PollingStrategy",
    "SessionState",
    "StrategySelector",
    "SubscriptionOptions",
    "WebhookForwarder",
    "chain_outputs",
    "decode_notification",
    "matched_emails",
    "parse_duration",
    "run_subscription",
]
