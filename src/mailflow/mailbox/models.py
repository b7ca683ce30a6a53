"""Pydantic models for mailbox messages and filters."""

from __future__ import annotations

import base64
import binascii
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNREAD_LABEL = "UNREAD"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_date_header(raw: str | None) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    try:
        return _as_utc(parsedate_to_datetime(raw))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _decode_part_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _extract_body(payload: dict[str, Any] | None) -> str:
    """Collect body data from a part and its text/plain or text/html children."""
    if not payload:
        return ""

    chunks: list[str] = []
    data = (payload.get("body") or {}).get("data")
    if data:
        chunks.append(_decode_part_data(data))

    for part in payload.get("parts") or []:
        mime_type = part.get("mimeType") or ""
        if mime_type in ("text/plain", "text/html") or mime_type.startswith("multipart/"):
            text = _extract_body(part)
            if text:
                chunks.append(text)

    return "\n".join(chunks).strip()


def _header(headers: list[dict[str, str]], name: str) -> str | None:
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


class EmailMessage(BaseModel):
    """A mailbox message with the fields the sync engine consumes."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    thread_id: str = ""
    subject: str = "No Subject"
    sender: str = Field(default="Unknown Sender", alias="from")
    to: str = ""
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    is_unread: bool = False
    body: str = ""
    history_id: int | None = None

    @classmethod
    def from_gmail(cls, message: dict[str, Any]) -> EmailMessage:
        """Parse a Gmail message resource fetched with format=full."""
        payload = message.get("payload") or {}
        headers = payload.get("headers") or []
        labels = list(message.get("labelIds") or [])
        history_id = message.get("historyId")

        return cls(
            id=message.get("id", ""),
            thread_id=message.get("threadId", ""),
            subject=_header(headers, "Subject") or "No Subject",
            sender=_header(headers, "From") or "Unknown Sender",
            to=_header(headers, "To") or "",
            date=_parse_date_header(_header(headers, "Date")),
            snippet=message.get("snippet", ""),
            labels=labels,
            is_unread=UNREAD_LABEL in labels,
            body=_extract_body(payload),
            history_id=int(history_id) if history_id is not None else None,
        )

    def summary(self) -> dict[str, Any]:
        """Compact representation used by webhook payloads."""
        return {
            "id": self.id,
            "subject": self.subject,
            "from": self.sender,
            "date": self.date.isoformat(),
            "isUnread": self.is_unread,
        }


class EmailFilter(BaseModel):
    """
    Immutable predicate over mailbox messages.

    The same filter drives the server-side search query (build_query) and
    the local check applied to records resolved from history (matches).
    """

    model_config = ConfigDict(frozen=True)

    query: str = ""
    max_results: int = Field(default=10, ge=1, le=500)
    include_spam_trash: bool = False
    label_ids: tuple[str, ...] = ()
    page_token: str | None = None
    unread_only: bool = False
    from_email: str | None = None
    subject: str | None = None
    date_start: datetime | None = None
    date_end: datetime | None = None

    @field_validator("label_ids", mode="before")
    @classmethod
    def parse_label_ids(cls, v: Any) -> tuple[str, ...]:
        """Accept a comma-separated string or any iterable of labels."""
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(label.strip() for label in v.split(",") if label.strip())
        return tuple(v)

    @field_validator("date_start", "date_end", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Any:
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
        return v

    def build_query(self) -> str:
        """Render the filter in Gmail search syntax."""
        parts: list[str] = []
        if self.query:
            parts.append(self.query)
        if self.unread_only:
            parts.append("is:unread")
        if self.from_email:
            parts.append(f"from:{self.from_email}")
        if self.subject:
            parts.append(f'subject:"{self.subject}"')
        if self.date_start:
            parts.append(f"after:{self.date_start:%Y/%m/%d}")
        if self.date_end:
            parts.append(f"before:{self.date_end:%Y/%m/%d}")
        return " ".join(parts)

    def matches(self, email: EmailMessage) -> bool:
        """
        Evaluate the filter locally.

        The free-text query is only understood by the server and is not
        applied here.
        """
        if self.unread_only and not email.is_unread:
            return False
        if self.from_email and self.from_email.lower() not in email.sender.lower():
            return False
        if self.subject and self.subject.lower() not in email.subject.lower():
            return False

        received = _as_utc(email.date)
        if self.date_start and received < _as_utc(self.date_start):
            return False
        if self.date_end and received >= _as_utc(self.date_end):
            return False

        if self.label_ids and not set(self.label_ids) & set(email.labels):
            return False
        return True

    def reduced_to_one(self) -> EmailFilter:
        """Copy of this filter limited to the single most recent result."""
        return self.model_copy(update={"max_results": 1, "page_token": None})
