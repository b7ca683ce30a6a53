"""Rendering of emails for the CLI."""

from __future__ import annotations

import json
from typing import TextIO

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mailflow.mailbox.models import EmailMessage
from mailflow.resilience.shutdown import CancellationScope
from mailflow.sync.outputs import matched_emails
from mailflow.sync.records import InboundRecord


def email_to_dict(email: EmailMessage) -> dict[str, object]:
    return email.model_dump(mode="json", by_alias=True)


class ConsoleEmailWriter:
    """Human-readable output through rich."""

    def __init__(self, console: Console, verbose: bool = False) -> None:
        self._console = console
        self._verbose = verbose

    def write(self, emails: list[EmailMessage]) -> None:
        for index, email in enumerate(emails, start=1):
            table = Table.grid(padding=(0, 1))
            table.add_column(style="bold cyan")
            table.add_column()
            table.add_row("ID", email.id)
            table.add_row("Subject", email.subject)
            table.add_row("From", email.sender)
            table.add_row("To", email.to)
            table.add_row("Date", email.date.strftime("%Y-%m-%d %H:%M:%S"))
            table.add_row("Unread", "Yes" if email.is_unread else "No")
            if email.labels:
                table.add_row("Labels", ", ".join(email.labels))
            if email.snippet:
                table.add_row("Snippet", email.snippet)
            if self._verbose and email.body:
                table.add_row("Body", email.body)

            self._console.print(Panel(table, title=f"Email {index} of {len(emails)}"))


class JsonEmailWriter:
    """One JSON document per email, one per line."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def write(self, emails: list[EmailMessage]) -> None:
        for email in emails:
            self._stream.write(json.dumps(email_to_dict(email)) + "\n")
        self._stream.flush()


EmailWriter = ConsoleEmailWriter | JsonEmailWriter


def create_writer(
    output_format: str,
    console: Console,
    stream: TextIO,
    verbose: bool = False,
) -> EmailWriter:
    if output_format == "json":
        return JsonEmailWriter(stream)
    return ConsoleEmailWriter(console, verbose=verbose)


class BatchPrinter:
    """Output action that prints the matched emails of every batch."""

    def __init__(self, writer: EmailWriter) -> None:
        self._writer = writer

    async def __call__(self, batch: list[InboundRecord], scope: CancellationScope) -> None:
        emails = matched_emails(batch)
        if emails:
            self._writer.write(emails)
