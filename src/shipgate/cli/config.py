"""Configuration commands.

    shipgate config validate shipgate.yaml
    shipgate config show shipgate.yaml
"""

from __future__ import annotations

import click
import yaml

from shipgate.channels import build_channels
from shipgate.cli.utils import handle_errors, success
from shipgate.config import load_config


@click.group(
    name="config",
    help="Validate and inspect shipgate configuration.",
    invoke_without_command=True,
)
@click.pass_context
def config_group(ctx: click.Context) -> None:
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@config_group.command(name="validate", help="Validate a configuration file and its channels.")
@click.argument("config_file", type=click.Path(dir_okay=False))
@handle_errors
def validate_command(config_file: str) -> None:
    config = load_config(config_file)
    channels = build_channels(config)

    success(f"Configuration valid: {config_file}")
    click.echo(f"  Canary steps: {[step.percent for step in config.pipeline.canary.effective_steps()]}")
    click.echo(f"  Approval required: {config.pipeline.approval.required}")
    click.echo(f"  Escalation threshold: {config.escalation.threshold_minutes}m")
    click.echo(f"  Channels: {', '.join(sorted(channels)) or 'none'}")


@config_group.command(name="show", help="Print the effective configuration, defaults included.")
@click.argument("config_file", type=click.Path(dir_okay=False))
@handle_errors
def show_command(config_file: str) -> None:
    config = load_config(config_file)
    click.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False), nl=False)


__all__: list[str] = ["config_group"]
