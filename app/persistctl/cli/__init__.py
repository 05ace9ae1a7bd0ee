"""CLI package for persistctl.

This package contains the Typer application and all subcommands.
"""

from persistctl.cli.main import app

__all__ = ["app"]
