"""Mailbox access: Gmail client, message models and filters."""

from mailflow.mailbox.client import GmailClient
from mailflow.mailbox.fetcher import EmailFetcher
from mailflow.mailbox.models import EmailFilter, EmailMessage

__all__ = ["GmailClient", "EmailFetcher", "EmailFilter", "EmailMessage"]
