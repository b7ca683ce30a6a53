"""Mailflow - incremental Gmail sync and watch lifecycle engine."""

from mailflow.core.config import Settings
from mailflow.core.exceptions import MailflowError

__version__ = "0.1.0"
__all__ = ["Settings", "MailflowError", "__version__"]
