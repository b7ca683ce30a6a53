"""Watch registration CLI commands."""

from __future__ import annotations

import click
from rich.table import Table

from mailflow.cli.common import console, create_gmail_client, current_settings, run_command
from mailflow.core.config import Settings
from mailflow.core.exceptions import ConfigurationError
from mailflow.core.types import ForceNewMode
from mailflow.mailbox.client import GmailClient
from mailflow.resilience.shutdown import CancellationScope, GracefulShutdown
from mailflow.sync.strategy import parse_duration
from mailflow.watch.broker import WatchBroker, run_repeated
from mailflow.watch.state import FileWatchStateStore, utcnow


def _broker(settings: Settings, client: GmailClient) -> WatchBroker:
    return WatchBroker(client, FileWatchStateStore(settings.watch.state_directory), settings.watch)


@click.group()
def watch() -> None:
    """Register mailbox watches that publish to Pub/Sub."""
    pass


@watch.command("gmail")
@click.option("--topic-id", help="Topic id (default from settings)")
@click.option("--project-id", help="Project id (default from settings)")
@click.option("--labels", "-l", default="", help="Comma-separated label ids (default INBOX)")
@click.option("--repeat-frequency", "-r", help="Repeat every interval (30m, 1d); runs once if omitted")
@click.option(
    "--force-new",
    type=click.Choice([m.value for m in ForceNewMode]),
    default=ForceNewMode.FALSE.value,
    show_default=True,
    help="Create a new watch instead of reusing an active one",
)
@click.pass_context
def watch_gmail(
    ctx: click.Context,
    topic_id: str | None,
    project_id: str | None,
    labels: str,
    repeat_frequency: str | None,
    force_new: str,
) -> None:
    """Create or reuse a Gmail watch."""
    settings = current_settings(ctx)
    project_id = project_id or settings.pubsub.project_id
    topic_id = topic_id or settings.pubsub.topic_id
    label_ids = [label.strip() for label in labels.split(",") if label.strip()] or None

    async def _watch():
        if not project_id or not topic_id:
            raise ConfigurationError("Both a project id and a topic id are required")
        frequency = parse_duration(repeat_frequency)
        topic_name = f"projects/{project_id}/topics/{topic_id}"

        async with create_gmail_client(settings) as client:
            scope = CancellationScope()
            async with GracefulShutdown(scope):
                return await run_repeated(
                    _broker(settings, client),
                    topic_name,
                    label_ids,
                    ForceNewMode(force_new),
                    frequency,
                    scope,
                )

    result = run_command(_watch())
    if result is None:
        console.print("[yellow]No watch request succeeded[/yellow]")
        raise SystemExit(1)

    state = "Created new" if result.is_newly_created else "Reusing existing"
    console.print(f"[green]✓[/green] {state} watch on {result.topic_name}")
    console.print(f"  History id: {result.history_id}")
    console.print(f"  Expires: {result.expiration.isoformat()}")


@click.group()
def cancel() -> None:
    """Cancel mailbox watches."""
    pass


@cancel.command("gmail")
@click.pass_context
def cancel_gmail(ctx: click.Context) -> None:
    """Stop the Gmail watch and clear its persisted state."""
    settings = current_settings(ctx)

    async def _cancel():
        async with create_gmail_client(settings) as client:
            return await _broker(settings, client).stop()

    run_command(_cancel())
    console.print(f"[green]✓[/green] Gmail watch cancelled for {settings.watch.application_name}")


@click.command()
@click.option("--all", "show_all", is_flag=True, help="Include expired registrations")
@click.pass_context
def watches(ctx: click.Context, show_all: bool) -> None:
    """List persisted watch registrations."""
    settings = current_settings(ctx)
    store = FileWatchStateStore(settings.watch.state_directory)

    registrations = run_command(store.list_all())
    now = utcnow()
    if not show_all:
        registrations = [r for r in registrations if r.is_active(now)]

    if not registrations:
        console.print("[yellow]No watch registrations found[/yellow]")
        return

    table = Table(title="Watches")
    table.add_column("Service", style="cyan")
    table.add_column("Application")
    table.add_column("Topic")
    table.add_column("Watch ID")
    table.add_column("Expires")
    table.add_column("Active")

    for registration in registrations:
        table.add_row(
            registration.service_type,
            registration.application_name,
            registration.topic_name,
            registration.watch_id,
            registration.expiration.isoformat(),
            "✓" if registration.is_active(now) else "✗",
        )

    console.print(table)
