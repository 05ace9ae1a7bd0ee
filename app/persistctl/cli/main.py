"""Main CLI application entry point.

Defines the Typer application and global options.
"""

from pathlib import Path
from typing import Annotated

import typer

from persistctl import __version__
from persistctl.cli.commands import apply, boot, check, fstab, init, plan, primitives, teardown
from persistctl.utils.formatting import configure_logging

# Create main Typer app
app = typer.Typer(
    name="persistctl",
    help="Keep selected paths on persistent storage while the root stays ephemeral.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"persistctl version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose output.",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Suppress non-essential output.",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            envvar="PERSISTCTL_CONFIG",
            help="Path to persistence.toml.",
        ),
    ] = None,
) -> None:
    """persistctl - Declarative persistence for ephemeral root filesystems.

    Declare which files and directories live on persistent storage, and
    persistctl creates, orders and links them onto the live system.
    """
    configure_logging(verbose=verbose, quiet=quiet)

    # Store options in context for subcommands
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = config


# Register commands
app.add_typer(init.app, name="init")
app.add_typer(check.app, name="check")
app.add_typer(plan.app, name="plan")
app.add_typer(fstab.app, name="fstab")
app.add_typer(apply.app, name="apply")
app.add_typer(teardown.app, name="teardown")
app.add_typer(boot.app, name="boot-prepare")

# Primitives invoked by external schedulers
app.command("mkdir")(primitives.make_directory)
app.command("bind")(primitives.bind)
app.command("link")(primitives.link)
app.command("persist-file")(primitives.persist_file)
app.command("unmount")(primitives.unmount)


if __name__ == "__main__":
    app()
