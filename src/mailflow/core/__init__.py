"""Core module for mailflow."""

from mailflow.core.config import AckPolicy, DeliveryMode, Settings
from mailflow.core.exceptions import MailflowError
from mailflow.core.types import (
    AckDecision,
    CredentialProvider,
    DeliveryClient,
    Envelope,
    ForceNewMode,
    MailboxClient,
)

__all__ = [
    "Settings",
    "MailflowError",
    "AckDecision",
    "AckPolicy",
    "CredentialProvider",
    "DeliveryClient",
    "DeliveryMode",
    "Envelope",
    "ForceNewMode",
    "MailboxClient",
]
