"""Teardown command implementation.

Unmounts bind mounts and removes symlinks, in reverse plan order.
"""

from typing import Annotated

import typer

from persistctl.cli.display import create_results_table, print_results_summary
from persistctl.cli.types import load_snapshot
from persistctl.core.executor import PlanRunner, has_failures
from persistctl.core.plan import PlanCycleError, build_plan
from persistctl.mounts.operator import MountOperator
from persistctl.utils.formatting import console, print_error, print_info

app = typer.Typer(
    help="Unmount and unlink persisted paths.",
    invoke_without_command=True,
)


@app.callback(invoke_without_command=True)
def teardown_plan(
    ctx: typer.Context,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Show what would be done without making changes.",
        ),
    ] = False,
) -> None:
    """Unmount and unlink persisted paths.

    Every mount is attempted regardless of earlier failures; all errors are
    reported at the end. Persistent data is never touched.

    Examples:
        persistctl teardown --dry-run
        persistctl teardown
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx)
    try:
        plan = build_plan(snapshot)
    except PlanCycleError as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e

    if not plan.link_operations():
        print_info("Nothing to tear down.")
        return

    runner = PlanRunner(
        MountOperator(dry_run=dry_run),
        max_retries=snapshot.unmount_retries,
        retry_delay=snapshot.unmount_delay,
    )
    results = runner.teardown(plan)

    console.print(create_results_table(results, title="Teardown"))
    print_results_summary(results)

    if has_failures(results):
        raise typer.Exit(code=1)
