"""Main entry point for the shipgate CLI.

This module provides the Click-based CLI. Every command works against a state
directory shared with a running DeploymentService.

Commands:
    shipgate status: Show one deployment or list deployments
    shipgate history: Show a deployment's audit trail
    shipgate approve / reject: Decide a pending production approval
    shipgate abort: Request that a deployment be aborted
    shipgate tickets: List open escalation tickets
    shipgate config: Validate and inspect configuration (validate, show)

Example:
    $ shipgate --state-dir /var/lib/shipgate status
    $ shipgate --config shipgate.yaml approve 4f1c... --actor alice
    $ shipgate config validate shipgate.yaml
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version
from pathlib import Path

import click

from shipgate.cli.config import config_group
from shipgate.cli.deployment import (
    abort_command,
    approve_command,
    history_command,
    reject_command,
    status_command,
    tickets_command,
)
from shipgate.cli.utils import DEFAULT_STATE_DIR, CliState, error
from shipgate.errors import ShipgateError
from shipgate.telemetry import configure_logging

LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False)


def _get_version() -> str:
    """Get the shipgate package version.

    Returns:
        Version string from package metadata, or 'unknown' if not installed.
    """
    try:
        return get_version("shipgate")
    except Exception:
        return "unknown"


@click.group(
    name="shipgate",
    help="shipgate - deployment pipeline, canary and alarm escalation control.",
    epilog="Use 'shipgate <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="shipgate",
    message="%(prog)s %(version)s",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_STATE_DIR,
    show_default=True,
    envvar="SHIPGATE_STATE_DIR",
    help="Directory holding shipgate state.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    envvar="SHIPGATE_CONFIG",
    help="shipgate YAML configuration (enables notification channels).",
)
@click.option("--log-level", type=LOG_LEVELS, default=None, help="Log level for diagnostic output.")
@click.pass_context
def cli(ctx: click.Context, state_dir: Path, config_path: Path | None, log_level: str | None) -> None:
    """Root command group for the shipgate CLI."""
    ctx.obj = CliState(state_dir=state_dir, config_path=config_path)
    if log_level is not None:
        configure_logging(log_level=log_level, json_output=False, stream=sys.stderr)


cli.add_command(status_command)
cli.add_command(history_command)
cli.add_command(approve_command)
cli.add_command(reject_command)
cli.add_command(abort_command)
cli.add_command(tickets_command)
cli.add_command(config_group)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the shipgate CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    configure_logging(log_level="WARNING", json_output=False, stream=sys.stderr)
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except ShipgateError as e:
        error(str(e))
        sys.exit(e.exit_code)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
