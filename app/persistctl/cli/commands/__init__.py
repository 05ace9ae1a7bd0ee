"""CLI commands for persistctl.

This package contains all subcommand implementations.
"""

from persistctl.cli.commands import apply, boot, check, fstab, init, plan, primitives, teardown

__all__ = ["apply", "boot", "check", "fstab", "init", "plan", "primitives", "teardown"]
