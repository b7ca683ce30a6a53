"""Notification delivery clients (Pub/Sub pull and push)."""

from mailflow.delivery.pull import PubSubPullClient
from mailflow.delivery.push import PushDeliveryServer, create_push_app

__all__ = ["PubSubPullClient", "PushDeliveryServer", "create_push_app"]
