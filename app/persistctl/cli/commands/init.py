"""Init command implementation.

Creates a starter persistence.toml for system or session scope.
"""

import getpass
from pathlib import Path
from typing import Annotated

import typer

from persistctl.cli.types import get_config_option
from persistctl.core.config import ConfigError, config_exists, save_config
from persistctl.core.paths import get_config_path
from persistctl.models.config import (
    DirectoryDecl,
    FileDecl,
    FileSystemConfig,
    PersistenceConfig,
    PersistenceFile,
    ScopeType,
    Settings,
)
from persistctl.utils.formatting import (
    console,
    print_error,
    print_info,
    print_success,
    print_warning,
)

app = typer.Typer(
    help="Create a starter persistence configuration.",
    invoke_without_command=True,
)

SYSTEM_STORAGE_PATH = "/persist"
SYSTEM_DIRECTORIES = ["/var/log", "/var/lib/systemd/coredump"]
SYSTEM_FILES = ["/etc/machine-id"]
SESSION_DIRECTORIES = ["Documents", "Downloads", "Pictures"]


def create_starter_config(scope: ScopeType, user: str, home: str) -> PersistenceFile:
    """Build a starter configuration.

    Args:
        scope: "system" or "session".
        user: Session user name.
        home: Session user's home directory.

    Returns:
        A configuration persisting a few common paths.
    """
    if scope == "session":
        storage_path = f"/persistent{home}"
        return PersistenceFile(
            settings=Settings(scope="session", user=user, home=home),
            persistence={
                storage_path: PersistenceConfig(
                    allow_other=False,
                    directories=[
                        *(DirectoryDecl(directory=path) for path in SESSION_DIRECTORIES),
                        DirectoryDecl(directory=".ssh", mode="0700"),
                    ],
                ),
            },
        )

    return PersistenceFile(
        file_systems=[
            FileSystemConfig(mount_point=SYSTEM_STORAGE_PATH, needed_for_boot=True),
        ],
        persistence={
            SYSTEM_STORAGE_PATH: PersistenceConfig(
                hide_mounts=True,
                directories=[DirectoryDecl(directory=path) for path in SYSTEM_DIRECTORIES],
                files=[FileDecl(file=path) for path in SYSTEM_FILES],
            ),
        },
    )


def _show_config_summary(config: PersistenceFile, output_path: Path) -> None:
    """Display a summary of the created configuration."""
    console.print()
    console.print("[bold]Configuration Summary[/bold]")
    console.print(f"  Scope: [info]{config.settings.scope}[/info]")
    console.print(f"  Output: [muted]{output_path}[/muted]")
    for key, root in config.persistence.items():
        console.print(f"  Storage: [info]{key}[/info]")
        console.print(f"    Directories: [bold]{len(root.directories)}[/bold]")
        console.print(f"    Files: [bold]{len(root.files)}[/bold]")
    console.print()


@app.callback(invoke_without_command=True)
def init_config(
    ctx: typer.Context,
    output: Annotated[
        Path | None,
        typer.Option(
            "--output",
            "-o",
            help="Output path for the configuration file.",
        ),
    ] = None,
    session: Annotated[
        bool,
        typer.Option(
            "--session",
            help="Create a session-scope configuration for the current user.",
        ),
    ] = False,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Overwrite an existing configuration.",
        ),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Show what would be created without writing files.",
        ),
    ] = False,
) -> None:
    """Create a starter persistence configuration.

    Examples:
        persistctl init                     # System scope, default location
        persistctl init --session           # Session scope for the current user
        persistctl init --output my.toml    # Custom path
    """
    # Skip if a subcommand is being invoked
    if ctx.invoked_subcommand is not None:
        return

    output_path = output or get_config_option(ctx) or get_config_path()

    if config_exists(output_path):
        if dry_run:
            print_warning(f"Configuration already exists: {output_path}")
            print_info("Would be overwritten with --force.")
        elif not force:
            print_error(f"Configuration already exists: {output_path}")
            print_info("Use --force to overwrite or specify a different path with --output.")
            raise typer.Exit(code=1)
        else:
            print_warning(f"Overwriting existing configuration: {output_path}")

    scope: ScopeType = "session" if session else "system"
    config = create_starter_config(scope, getpass.getuser(), str(Path.home()))
    _show_config_summary(config, output_path)

    if dry_run:
        print_info("[DRY-RUN] No files were written.")
        return

    try:
        saved_path = save_config(config, output_path)
    except (ConfigError, OSError) as e:
        print_error(f"Failed to save configuration: {e}")
        raise typer.Exit(code=1) from e
    print_success(f"Configuration created: {saved_path}")
