"""Plan command implementation.

Prints the ordered operation graph for external schedulers or review.
"""

from typing import Annotated

import typer

from persistctl.cli.display import create_plan_table, plan_to_json
from persistctl.cli.types import OutputFormat, load_snapshot
from persistctl.core.plan import PlanCycleError, build_plan
from persistctl.utils.formatting import console, print_error, print_info

app = typer.Typer(
    help="Show the ordered persistence operations.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def show_plan(
    ctx: typer.Context,
    output_format: Annotated[
        OutputFormat,
        typer.Option(
            "--format",
            "-f",
            help="Output format: table or json.",
            case_sensitive=False,
        ),
    ] = OutputFormat.TABLE,
    live_mounts: Annotated[
        bool,
        typer.Option(
            "--live-mounts",
            help="Resolve dependencies against the current mount table.",
        ),
    ] = False,
) -> None:
    """Show the ordered persistence operations.

    Every operation lists the operations and mounts it must wait for. The
    JSON format carries the command and unit name of each operation.

    Examples:
        persistctl plan
        persistctl plan --format json
        persistctl plan --live-mounts
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx, live_mounts=live_mounts)
    try:
        plan = build_plan(snapshot)
    except PlanCycleError as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e

    if output_format == OutputFormat.JSON:
        console.print_json(plan_to_json(plan))
        return

    if not plan.operations:
        print_info("Nothing to persist.")
        return
    console.print(create_plan_table(plan))
