"""CLI utility functions and error handling.

This module provides shared utilities for the shipgate CLI, including:
- Exit code constants matching ShipgateError.exit_code
- Error and output helpers for consistent stderr/stdout usage
- CliState, the per-invocation state directory and configuration

Example:
    from shipgate.cli.utils import error_exit, ExitCode

    if deployment is None:
        error_exit("Deployment not found", exit_code=ExitCode.NOT_FOUND, id=deployment_id)
"""

from __future__ import annotations

import functools
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from shipgate.config import ShipgateConfig, load_config
from shipgate.errors import ShipgateError
from shipgate.repository import JsonFileStateRepository

if TYPE_CHECKING:
    from typing import NoReturn

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_STATE_DIR = ".shipgate"


class ExitCode(IntEnum):
    """Standard exit codes for CLI commands.

    Values match the exit_code of the corresponding ShipgateError subclass.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, missing required options)."""

    NOT_FOUND = 3
    """Deployment or file not found."""

    POLICY_VIOLATION = 5
    """Approval or pipeline rule violated."""

    CONFIGURATION_ERROR = 6
    """Configuration missing or invalid."""

    INFRASTRUCTURE_ERROR = 8
    """Infrastructure provider or remote service error."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Args:
        message: Error message to display.
        **context: Optional context key-value pairs to include.

    Example:
        error("Deployment not found", id="dep-1")
        # Output: Error: Deployment not found (id=dep-1)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str) -> None:
    """Print a warning message to stderr."""
    click.echo(f"Warning: {message}", err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def handle_errors(func: F) -> F:
    """Turn ShipgateError raised by a command into an error message and exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ShipgateError as e:
            error_exit(str(e), exit_code=e.exit_code)

    return wrapper  # type: ignore[return-value]


@dataclass
class CliState:
    """State shared by the commands of one invocation.

    Attributes:
        state_dir: Directory holding the shipgate state files.
        config_path: Optional shipgate YAML configuration.
    """

    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    config_path: Path | None = None

    def repository(self) -> JsonFileStateRepository:
        return JsonFileStateRepository(self.state_dir)

    def config(self) -> ShipgateConfig:
        """Load the configuration, or defaults when none was given.

        Raises:
            ConfigurationError: If the configured file is missing or invalid.
        """
        if self.config_path is None:
            return ShipgateConfig()
        return load_config(self.config_path)


pass_state = click.make_pass_decorator(CliState, ensure=True)


__all__ = [
    "DEFAULT_STATE_DIR",
    "CliState",
    "ExitCode",
    "error",
    "error_exit",
    "handle_errors",
    "pass_state",
    "success",
    "warn",
]
