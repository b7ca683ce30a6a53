"""Helpers shared by CLI commands."""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

import click
from rich.console import Console

from mailflow.core.config import Settings, get_settings
from mailflow.core.exceptions import MailflowError
from mailflow.mailbox.client import GmailClient
from mailflow.mailbox.models import EmailFilter
from mailflow.security.credentials import GoogleCredentialProvider, load_credential_provider

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def run_command(coro: Awaitable[T]) -> T:
    """Run a command coroutine, turning fatal errors into exit code 1."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except MailflowError as e:
        err_console.print(f"[red]✗[/red] {e}")
        raise SystemExit(1)


def load_credentials(settings: Settings) -> GoogleCredentialProvider:
    return load_credential_provider(
        settings.gmail.resolve_credentials_path(),
        settings.gmail.scopes,
    )


def create_gmail_client(
    settings: Settings,
    credentials: GoogleCredentialProvider | None = None,
) -> GmailClient:
    return GmailClient(credentials or load_credentials(settings), settings.gmail)


def current_settings(ctx: click.Context) -> Settings:
    obj = ctx.find_object(dict)
    if obj and "settings" in obj:
        return obj["settings"]
    return get_settings()


def filter_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the mailbox filter options to a command."""
    options = [
        click.option("--query", "-q", default="", help="Gmail search query, combined with the flags below"),
        click.option("--from", "-f", "from_email", help="Only emails from this sender"),
        click.option("--subject", "-s", help="Only emails whose subject contains this text"),
        click.option("--after", type=click.DateTime(formats=["%Y-%m-%d"]), help="Only emails on or after this date"),
        click.option("--before", type=click.DateTime(formats=["%Y-%m-%d"]), help="Only emails before this date"),
        click.option("--labels", "-l", default="", help="Comma-separated label ids"),
        click.option("--unread", "-u", "unread_only", is_flag=True, help="Only unread emails"),
        click.option("--include-spam", is_flag=True, help="Include spam and trash"),
        click.option("--max", "-m", "max_results", type=int, default=10, show_default=True, help="Maximum emails per request"),
    ]
    for option in reversed(options):
        func = option(func)

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        kwargs["email_filter"] = build_filter(
            query=kwargs.pop("query"),
            from_email=kwargs.pop("from_email"),
            subject=kwargs.pop("subject"),
            after=kwargs.pop("after"),
            before=kwargs.pop("before"),
            labels=kwargs.pop("labels"),
            unread_only=kwargs.pop("unread_only"),
            include_spam=kwargs.pop("include_spam"),
            max_results=kwargs.pop("max_results"),
        )
        return func(*args, **kwargs)

    return wrapper


def build_filter(
    query: str = "",
    from_email: str | None = None,
    subject: str | None = None,
    after: datetime | None = None,
    before: datetime | None = None,
    labels: str = "",
    unread_only: bool = False,
    include_spam: bool = False,
    max_results: int = 10,
) -> EmailFilter:
    if max_results < 1:
        raise click.BadParameter("must be at least 1", param_hint="--max")
    return EmailFilter(
        query=query,
        from_email=from_email or None,
        subject=subject or None,
        date_start=after.date() if after else None,
        date_end=before.date() if before else None,
        label_ids=labels,
        unread_only=unread_only,
        include_spam_trash=include_spam,
        max_results=max_results,
    )
