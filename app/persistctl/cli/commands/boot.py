"""Boot-prepare command implementation.

Creates needed-for-boot directories in persistent storage.
"""

import subprocess
from typing import Annotated

import typer

from persistctl.cli.types import load_snapshot
from persistctl.core.errors import UnmountTimeoutError
from persistctl.models.entries import Scope
from persistctl.mounts.boot import needed_for_boot_directories, prepare_needed_for_boot
from persistctl.mounts.operator import MountOperator, command_failure_detail
from persistctl.utils.formatting import print_error, print_info, print_success

app = typer.Typer(
    help="Create needed-for-boot directories in persistent storage.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def prepare_boot(
    ctx: typer.Context,
    staging_root: Annotated[
        str | None,
        typer.Option(
            "--staging-root",
            help="Where persistent volumes are mounted temporarily.",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Show what would be done without making changes.",
        ),
    ] = False,
) -> None:
    """Create needed-for-boot directories in persistent storage.

    A persisted directory that is also the mount point of a file system
    mounted in early boot must exist before that mount happens. Meant to
    run from the initrd, before the real root is mounted.

    Examples:
        persistctl boot-prepare
        persistctl boot-prepare --staging-root /mnt/persist-staging
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx)
    if snapshot.scope != Scope.SYSTEM:
        print_error("boot-prepare is only available in system scope.")
        raise typer.Exit(code=1)

    if not needed_for_boot_directories(snapshot):
        print_info("No needed-for-boot directories are persisted.")
        return

    try:
        created = prepare_needed_for_boot(snapshot, MountOperator(dry_run=dry_run), staging_root)
    except subprocess.CalledProcessError as e:
        print_error(command_failure_detail(e))
        raise typer.Exit(code=1) from e
    except (UnmountTimeoutError, subprocess.SubprocessError, OSError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e

    for path in created:
        print_info(f"{'Would create' if dry_run else 'Created'} {path}")
    print_success(f"{len(created)} needed-for-boot directory(ies) prepared.")
