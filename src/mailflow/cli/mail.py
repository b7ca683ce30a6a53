"""Mail retrieval commands: one-shot fetch and continuous subscribe."""

from __future__ import annotations

import sys

import click

from mailflow.cli.common import (
    console,
    create_gmail_client,
    current_settings,
    filter_options,
    load_credentials,
    run_command,
)
from mailflow.cli.output import BatchPrinter, create_writer
from mailflow.core.config import DeliveryMode
from mailflow.core.types import OutputAction
from mailflow.mailbox.fetcher import EmailFetcher
from mailflow.mailbox.models import EmailFilter
from mailflow.sync.outputs import WebhookForwarder, chain_outputs
from mailflow.sync.strategy import (
    StrategySelector,
    SubscriptionOptions,
    parse_duration,
    run_subscription,
)


@click.command()
@filter_options
@click.option("--output", "output_format", type=click.Choice(["console", "json"]), default="console")
@click.option("--verbose", "-v", is_flag=True, help="Include message bodies")
@click.pass_context
def fetch(
    ctx: click.Context,
    email_filter: EmailFilter,
    output_format: str,
    verbose: bool,
) -> None:
    """Fetch emails matching a filter."""
    settings = current_settings(ctx)

    async def _fetch():
        async with create_gmail_client(settings) as client:
            return await EmailFetcher(client).fetch_emails(email_filter)

    emails = run_command(_fetch())

    if not emails:
        if output_format == "console":
            console.print("[yellow]No emails found matching the criteria[/yellow]")
        return

    create_writer(output_format, console, sys.stdout, verbose=verbose).write(emails)


@click.command()
@filter_options
@click.option(
    "--mode",
    type=click.Choice([m.value for m in DeliveryMode]),
    default=None,
    help="Discovery mode (default from settings)",
)
@click.option("--topic", "-t", help="Pub/Sub topic, projects/{project}/topics/{topic}")
@click.option("--subscription", help="Pub/Sub subscription id or full path (pull mode)")
@click.option("--setup-watch", is_flag=True, help="Create and renew the Gmail watch automatically")
@click.option("--enforce-ownership", is_flag=True, help="Always create an owned watch, never adopt one")
@click.option("--duration", "-d", help="Run for this long (30s, 15m, 2h, 1d); indefinite if omitted")
@click.option("--interval", "-i", type=float, help="Polling interval in seconds (poll mode)")
@click.option("--webhook", help="POST matched emails to this URL")
@click.option("--name", "-n", help="Session id used in logs")
@click.option("--output", "output_format", type=click.Choice(["console", "json"]), default="console")
@click.option("--verbose", "-v", is_flag=True, help="Include message bodies")
@click.pass_context
def subscribe(
    ctx: click.Context,
    email_filter: EmailFilter,
    mode: str | None,
    topic: str | None,
    subscription: str | None,
    setup_watch: bool,
    enforce_ownership: bool,
    duration: str | None,
    interval: float | None,
    webhook: str | None,
    name: str | None,
    output_format: str,
    verbose: bool,
) -> None:
    """Monitor the mailbox for new emails."""
    settings = current_settings(ctx)
    delivery_mode = DeliveryMode(mode) if mode else settings.sync.mode
    if delivery_mode is not DeliveryMode.POLL:
        topic = topic or settings.pubsub.topic_name()

    async def _subscribe():
        options = SubscriptionOptions(
            mode=delivery_mode,
            email_filter=email_filter,
            topic_name=topic,
            subscription_path=subscription,
            setup_watch=setup_watch,
            enforce_ownership=enforce_ownership,
            duration=parse_duration(duration),
            interval_seconds=interval,
            session_id=name,
        )
        credentials = load_credentials(settings)
        async with create_gmail_client(settings, credentials) as client:
            strategy = StrategySelector(client, credentials, settings).create(options)

            actions: list[OutputAction] = [
                BatchPrinter(create_writer(output_format, console, sys.stdout, verbose=verbose))
            ]
            forwarder = WebhookForwarder(webhook) if webhook else None
            if forwarder is not None:
                actions.append(forwarder)

            try:
                return await run_subscription(strategy, chain_outputs(*actions), options.duration)
            finally:
                if forwarder is not None:
                    await forwarder.close()

    reason = run_command(_subscribe())
    if output_format == "console":
        console.print(f"[green]✓[/green] Subscription ended ({reason})")
