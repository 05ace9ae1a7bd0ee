"""Shared types and utilities for CLI commands.

This module provides common enums and helper functions used across
multiple CLI command modules to avoid code duplication.
"""

from enum import Enum
from pathlib import Path

import typer

from persistctl.core.config import require_config
from persistctl.core.errors import ConfigurationError
from persistctl.core.normalize import normalize_config
from persistctl.models.entries import MountPoint, PersistenceSnapshot
from persistctl.mounts.table import MountTable
from persistctl.utils.formatting import err_console, print_error


class OutputFormat(str, Enum):
    """Output formats for commands printing a plan."""

    TABLE = "table"
    JSON = "json"


def get_config_option(ctx: typer.Context) -> Path | None:
    """Return the ``--config`` path given to the main command, if any."""
    if ctx.obj is None:
        return None
    return ctx.obj.get("config_path")


def print_issues(error: ConfigurationError) -> None:
    """Print every configuration issue."""
    print_error(f"Found {len(error.issues)} configuration issue(s):")
    for issue in error.issues:
        err_console.print(f"  [error]{issue.kind}[/] {issue.path}: {issue.message}")
        for site in issue.sites:
            err_console.print(f"    [muted]at {site}[/]")


def read_live_mount_points() -> list[MountPoint]:
    """Read the host mount table, exiting on failure."""
    try:
        return MountTable.read().to_mount_points()
    except OSError as e:
        print_error(f"Failed to read the mount table: {e}")
        raise typer.Exit(code=1) from e


def load_snapshot(ctx: typer.Context, live_mounts: bool = False) -> PersistenceSnapshot:
    """Load, validate and normalize the configuration or exit.

    Args:
        ctx: Typer context carrying the global ``--config`` option.
        live_mounts: Use the host mount table instead of ``file_systems``.

    Returns:
        Normalized snapshot.

    Raises:
        typer.Exit: If the configuration cannot be loaded or has issues.
    """
    config = require_config(get_config_option(ctx))
    mount_points = read_live_mount_points() if live_mounts else None
    try:
        return normalize_config(config, mount_points)
    except ConfigurationError as e:
        print_issues(e)
        raise typer.Exit(code=1) from e
