"""Check command implementation.

Validates the configuration and reports every issue at once.
"""

import typer

from persistctl.cli.types import load_snapshot
from persistctl.core.closure import build_directory_closure
from persistctl.core.plan import PlanCycleError, build_plan
from persistctl.utils.formatting import console, print_error, print_success

app = typer.Typer(
    help="Validate the persistence configuration.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def check_config(ctx: typer.Context) -> None:
    """Validate the persistence configuration.

    Reports duplicate paths, home directory mismatches, invalid methods and
    modes, and persistent volumes not mounted in early boot. All issues are
    listed together so they can be fixed in one pass.

    Examples:
        persistctl check
        persistctl --config ./persistence.toml check
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx)
    try:
        plan = build_plan(snapshot)
    except PlanCycleError as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e

    closure = build_directory_closure(snapshot)
    console.print(f"  Scope: [info]{snapshot.scope.value}[/info]")
    console.print(f"  Persistent roots: [bold]{len(snapshot.roots)}[/bold]")
    console.print(f"  Directories to create: [bold]{len(closure)}[/bold]")
    console.print(f"  Operations: [bold]{len(plan)}[/bold]")
    print_success("Configuration is valid.")
