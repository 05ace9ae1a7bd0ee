"""Apply command implementation.

Runs the creation pass: directories, bind mounts and symlinks in plan order.
"""

from typing import Annotated

import typer

from persistctl.cli.display import create_plan_table, create_results_table, print_results_summary
from persistctl.cli.types import load_snapshot
from persistctl.core.executor import PlanRunner, has_failures
from persistctl.core.plan import PlanCycleError, build_plan
from persistctl.models.entries import Scope
from persistctl.models.operation import OperationKind, Plan
from persistctl.mounts.operator import MountOperator
from persistctl.utils.formatting import console, print_error, print_info
from persistctl.utils.shell import command_exists

app = typer.Typer(
    help="Create directories and links on the live system.",
    invoke_without_command=True,
)


def _missing_bindfs(plan: Plan) -> bool:
    """Check if a session plan needs bindfs and it is not on PATH."""
    if plan.scope != Scope.SESSION:
        return False
    needs_fuse = any(op.kind == OperationKind.BINDMOUNT for op in plan.operations)
    return needs_fuse and not command_exists("bindfs")


@app.callback(invoke_without_command=True)
def apply_plan(
    ctx: typer.Context,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Show what would be done without making changes.",
        ),
    ] = False,
    fail_fast: Annotated[
        bool,
        typer.Option(
            "--fail-fast",
            help="Stop at the first failure instead of continuing with independent paths.",
        ),
    ] = False,
) -> None:
    """Create directories and links on the live system.

    Operations run in dependency order. When one fails, everything that
    depends on it is skipped while unrelated paths continue, unless
    --fail-fast is given. Exits non-zero if any operation failed.

    Examples:
        persistctl apply --dry-run      # Preview changes
        persistctl apply                # Apply
        persistctl apply --fail-fast    # Abort at the first failure
    """
    if ctx.invoked_subcommand is not None:
        return

    snapshot = load_snapshot(ctx)
    try:
        plan = build_plan(snapshot)
    except PlanCycleError as e:
        print_error(str(e))
        raise typer.Exit(code=1) from e

    if not plan.operations:
        print_info("Nothing to persist.")
        return

    if not dry_run and _missing_bindfs(plan):
        print_error("Session bind mounts need bindfs, which is not installed.")
        raise typer.Exit(code=1)

    if dry_run:
        console.print(create_plan_table(plan, title="Persistence Plan (Dry Run)"))

    runner = PlanRunner(
        MountOperator(dry_run=dry_run),
        max_retries=snapshot.unmount_retries,
        retry_delay=snapshot.unmount_delay,
    )
    results = runner.apply(plan, fail_fast=fail_fast)

    console.print(create_results_table(results))
    print_results_summary(results)

    if has_failures(results):
        raise typer.Exit(code=1)
