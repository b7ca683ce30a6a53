"""Main CLI entry point."""

from __future__ import annotations

import click

from mailflow import __version__
from mailflow.cli.common import console
from mailflow.core.config import LogLevel, get_settings
from mailflow.observability.logging import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="mailflow")
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel], case_sensitive=False),
    help="Override the configured log level",
)
@click.option("--log-format", type=click.Choice(["console", "json"]), help="Override the log format")
@click.option("--application-name", "-a", help="Application name keying watch state")
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str | None,
    log_format: str | None,
    application_name: str | None,
) -> None:
    """
    mailflow - Incremental Gmail sync driven by polling or Pub/Sub.

    Use 'mailflow COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)

    settings = get_settings()
    if application_name:
        watch_settings = settings.watch.model_copy(update={"application_name": application_name})
        settings = settings.model_copy(update={"watch": watch_settings})
    ctx.obj["settings"] = settings

    configure_logging(level=log_level, format_type=log_format)


# Import and register commands
from mailflow.cli.mail import fetch, subscribe
from mailflow.cli.watch import cancel, watch, watches

cli.add_command(fetch)
cli.add_command(subscribe)
cli.add_command(watch)
cli.add_command(cancel)
cli.add_command(watches)


@cli.command()
@click.option("--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml")
@click.pass_context
def config(ctx: click.Context, output_format: str) -> None:
    """Show current configuration."""
    import json

    import yaml

    settings = ctx.obj["settings"]
    config_dict = settings.model_dump(mode="json")

    if output_format == "json":
        # Plain echo keeps the JSON free of console wrapping
        click.echo(json.dumps(config_dict, indent=2))
    else:
        console.print(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=False))


if __name__ == "__main__":
    cli()
