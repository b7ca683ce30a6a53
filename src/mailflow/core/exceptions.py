"""Exception hierarchy for mailflow."""

from __future__ import annotations

from typing import Any


class MailflowError(Exception):
    """Base exception for all mailflow errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# Configuration Errors
class ConfigurationError(MailflowError):
    """Invalid or missing configuration. Raised before any work starts."""

    pass


class InvalidTopicNameError(ConfigurationError):
    """Topic name is not of the form projects/{project}/topics/{topic}."""

    def __init__(self, topic_name: str) -> None:
        super().__init__(
            f"Invalid topic name '{topic_name}'",
            {"topic_name": topic_name, "expected": "projects/{project}/topics/{topic}"},
        )


class InvalidDurationError(ConfigurationError):
    """Duration string could not be parsed."""

    def __init__(self, value: str) -> None:
        super().__init__(
            f"Invalid duration '{value}'",
            {"value": value, "expected": "<number>[s|m|h|d]"},
        )


# Security Errors
class AuthenticationError(MailflowError):
    """Credentials are missing, invalid or were rejected. Always fatal."""

    pass


# Mailbox Errors
class MailboxError(MailflowError):
    """Base error for mailbox API issues."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        all_details = details or {}
        if status_code is not None:
            all_details["status_code"] = status_code
        super().__init__(message, all_details)
        self.status_code = status_code


class TransientBackendError(MailboxError):
    """Retryable backend failure (5xx, rate limit, timeout, connection)."""

    pass


class NotFoundError(MailboxError):
    """Requested resource does not exist."""

    pass


class HistoryWindowError(MailboxError):
    """Resolving a history window failed. The window can be retried."""

    def __init__(
        self,
        low_watermark: int,
        high_watermark: int | None,
        reason: str,
    ) -> None:
        super().__init__(
            f"Failed to resolve history window: {reason}",
            details={"low": low_watermark, "high": high_watermark},
        )
        self.low_watermark = low_watermark
        self.high_watermark = high_watermark
        self.reason = reason


class MessageFetchError(MailboxError):
    """Fetching a single message failed."""

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(
            f"Failed to fetch message '{message_id}': {reason}",
            details={"message_id": message_id},
        )
        self.message_id = message_id
        self.reason = reason


# Notification Errors
class NotificationDecodeError(MailflowError):
    """A delivered notification payload could not be decoded."""

    def __init__(self, reason: str, message_id: str | None = None) -> None:
        details: dict[str, Any] = {}
        if message_id:
            details["message_id"] = message_id
        super().__init__(f"Malformed notification: {reason}", details)
        self.reason = reason
        self.message_id = message_id


class DeliveryError(MailflowError):
    """Delivery client (pull or push) failure."""

    pass


# Watch Errors
class WatchError(MailflowError):
    """Creating, renewing or stopping a watch registration failed."""

    def __init__(
        self,
        message: str,
        service_type: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.service_type = service_type
