"""Fstab command implementation.

Renders the directory bind mounts of a system configuration as fstab lines.
"""

import typer

from persistctl.cli.types import load_snapshot
from persistctl.core.plan import build_plan, render_fstab
from persistctl.models.entries import Scope
from persistctl.utils.formatting import print_error

app = typer.Typer(
    help="Print fstab lines for directory bind mounts.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def show_fstab(ctx: typer.Context) -> None:
    """Print fstab lines for directory bind mounts.

    Only system scope uses kernel bind mounts; session mounts are FUSE
    mounts owned by the session.

    Examples:
        persistctl fstab >> /etc/fstab
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx)
    if snapshot.scope != Scope.SYSTEM:
        print_error("fstab lines are only available in system scope.")
        raise typer.Exit(code=1)

    for line in render_fstab(build_plan(snapshot)):
        typer.echo(line)
