"""Rich console formatting utilities.

Provides consistent formatting for CLI output using Rich.
"""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from persistctl.models.operation import OperationKind, OperationStatus

THEME = Theme(
    {
        "text": "#ffffff",
        "muted": "#b2bec3",
        "bold_header": "bold #69B9A1",
        "border": "#29526d",
        "success": "#03b971",
        "warning": "#f5b332",
        "error": "#f53263",
        "info": "#0ec1c8",
        "kind.mkdir": "#c1ff62",
        "kind.bindmount": "#0e8ac8",
        "kind.symlink": "#d44ebc",
    }
)


def _detect_color_system() -> str | None:
    """Detect the best color system for the current terminal.

    Returns "truecolor" for interactive terminals to enable full hex color support,
    None otherwise to let Rich auto-detect.
    """
    if sys.stdout.isatty():
        return "truecolor"
    return None


# Shared console instances
console = Console(theme=THEME, color_system=_detect_color_system())
err_console = Console(theme=THEME, stderr=True, color_system=_detect_color_system())

_STATUS_STYLES: dict[OperationStatus, tuple[str, str]] = {
    OperationStatus.SUCCESS: ("success", "✓"),
    OperationStatus.UNCHANGED: ("muted", "="),
    OperationStatus.DRY_RUN: ("info", "~"),
    OperationStatus.FAILED: ("error", "✗"),
    OperationStatus.CONFLICT: ("error", "!"),
    OperationStatus.SKIPPED: ("warning", "-"),
}


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Route log records to stderr through Rich.

    Args:
        verbose: Log DEBUG and above.
        quiet: Log ERROR and above. Ignored when ``verbose`` is set.
    """
    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, markup=False)],
        force=True,
    )


def format_kind(kind: OperationKind) -> str:
    """Format an operation kind with color markup."""
    return f"[kind.{kind.value}]{kind.value}[/]"


def format_status(status: OperationStatus) -> tuple[str, str]:
    """Format an operation status as (icon, label) with color markup."""
    style, icon = _STATUS_STYLES[status]
    return f"[{style}]{icon}[/]", f"[{style}]{status.value}[/]"


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[info]{message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    err_console.print(f"[warning]Warning:[/] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    err_console.print(f"[error]Error:[/] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[success]{message}[/]")
