"""Primitive commands.

Single persistence steps, as emitted in the ``command`` of each planned
operation. Each is idempotent and exits non-zero on failure, so an external
scheduler can run them as units and order them by the plan's dependencies.
"""

import subprocess
from collections.abc import Callable
from typing import Annotated

import typer

from persistctl.core.errors import PersistctlError
from persistctl.models.entries import LinkMethod, Permissions, parse_mode
from persistctl.mounts.operator import MountOperator, command_failure_detail
from persistctl.utils.formatting import print_error

DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", "-n", help="Show what would be done without making changes."),
]


def _validate_mode(value: str) -> str:
    try:
        parse_mode(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    return value


def _run(action: Callable[[], bool]) -> None:
    """Run a primitive, turning errors into a message and exit code 1."""
    try:
        action()
    except subprocess.CalledProcessError as e:
        print_error(command_failure_detail(e))
        raise typer.Exit(code=1) from e
    except (PersistctlError, subprocess.SubprocessError, OSError) as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e


def make_directory(
    source: Annotated[str, typer.Argument(help="Directory in persistent storage.")],
    target: Annotated[str, typer.Argument(help="Directory in the live tree.")],
    user: Annotated[str | None, typer.Option("--user", help="Owner of a new directory.")] = None,
    group: Annotated[str | None, typer.Option("--group", help="Group of a new directory.")] = None,
    mode: Annotated[
        str,
        typer.Option("--mode", help="Mode of a new directory.", callback=_validate_mode),
    ] = "0755",
    storage_only: Annotated[
        bool,
        typer.Option("--storage-only", help="Only create the persistent side."),
    ] = False,
    dry_run: DryRunOption = False,
) -> None:
    """Create a directory in persistent storage and in the live tree.

    Existing directories keep their owner and mode. A new live directory
    copies owner and mode from the persistent one.
    """
    operator = MountOperator(dry_run=dry_run)
    perms = Permissions(user=user, group=group, mode=mode)
    _run(lambda: operator.create_persistent_directory(source, target, perms, storage_only))


def bind(
    source: Annotated[str, typer.Argument(help="Directory in persistent storage.")],
    target: Annotated[str, typer.Argument(help="Directory in the live tree.")],
    hide: Annotated[bool, typer.Option("--hide", help="Hide from file managers.")] = False,
    fuse: Annotated[bool, typer.Option("--fuse", help="Use bindfs.")] = False,
    allow_other: Annotated[
        bool, typer.Option("--allow-other", help="Let other users access a FUSE mount.")
    ] = False,
    dry_run: DryRunOption = False,
) -> None:
    """Bind-mount a persistent directory onto the live tree.

    Does nothing if it is already mounted, remounts if a different source
    is mounted there, and refuses if something is mounted below the target.
    """
    operator = MountOperator(dry_run=dry_run)
    _run(lambda: operator.bind_mount(source, target, hide, fuse, allow_other))


def link(
    source: Annotated[str, typer.Argument(help="Path in persistent storage.")],
    target: Annotated[str, typer.Argument(help="Path in the live tree.")],
    dry_run: DryRunOption = False,
) -> None:
    """Symlink a live path to persistent storage.

    An empty directory in the way is removed; anything else is left alone.
    """
    operator = MountOperator(dry_run=dry_run)
    _run(lambda: operator.symlink(source, target))


def persist_file(
    source: Annotated[str, typer.Argument(help="File in persistent storage.")],
    target: Annotated[str, typer.Argument(help="File in the live tree.")],
    method: Annotated[
        LinkMethod,
        typer.Option("--method", "-m", help="bind or symlink.", case_sensitive=False),
    ] = LinkMethod.BIND,
    dry_run: DryRunOption = False,
) -> None:
    """Make a persistent file visible in the live tree.

    With bind, an existing persistent file is bind-mounted and a missing one
    is symlinked so that it can be created through the link.
    """
    operator = MountOperator(dry_run=dry_run)
    _run(lambda: operator.persist_file(source, target, method))


def unmount(
    target: Annotated[str, typer.Argument(help="Mount point to release.")],
    retries: Annotated[
        int, typer.Option("--retries", min=1, help="Regular unmount attempts.")
    ] = 3,
    delay: Annotated[
        float, typer.Option("--delay", min=0.0, help="Seconds between attempts.")
    ] = 1.0,
    fuse: Annotated[bool, typer.Option("--fuse", help="Use fusermount.")] = False,
    dry_run: DryRunOption = False,
) -> None:
    """Unmount a persisted path, falling back to a lazy unmount."""
    operator = MountOperator(dry_run=dry_run)
    _run(lambda: operator.unmount(target, retries, delay, fuse=fuse))
