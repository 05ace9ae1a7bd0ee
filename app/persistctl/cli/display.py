"""Shared Rich display functions for plans and results.

Provides reusable table builders and summary printers for displaying
planned operations and execution results across CLI commands.
"""

import json
from collections import Counter

from rich.table import Table

from persistctl.models.operation import OperationResult, OperationStatus, Plan
from persistctl.utils.formatting import (
    format_kind,
    format_status,
    print_info,
    print_success,
    print_warning,
)


def create_plan_table(plan: Plan, title: str = "Persistence Plan") -> Table:
    """Create a Rich table listing the operations of a plan in order.

    Args:
        plan: Plan to display.
        title: Table title.

    Returns:
        Rich Table with step, kind, target, source and prerequisites.
    """
    table = Table(
        title=title,
        show_header=True,
        header_style="bold_header",
        border_style="border",
        row_styles=["", "on grey7"],
    )
    table.add_column("#", style="muted", justify="right")
    table.add_column("Kind", no_wrap=True)
    table.add_column("Target", style="text", no_wrap=True)
    table.add_column("Source", style="muted")
    table.add_column("After", style="muted", overflow="fold")

    for step, operation in enumerate(plan.operations, start=1):
        after = [*operation.requires, *(f"mount {path}" for path in operation.after_mounts)]
        table.add_row(
            str(step),
            format_kind(operation.kind),
            operation.target,
            operation.source,
            "\n".join(after),
        )
    return table


def plan_to_json(plan: Plan) -> str:
    """Serialize a plan to the JSON document external schedulers consume."""
    data = {
        "scope": plan.scope.value,
        "operations": [operation.to_dict() for operation in plan.operations],
    }
    return json.dumps(data, indent=2)


def create_results_table(results: list[OperationResult], title: str = "Results") -> Table:
    """Create a Rich table displaying operation results.

    Args:
        results: Results to display.
        title: Table title.

    Returns:
        Rich Table configured for results display.
    """
    table = Table(
        title=title,
        show_header=True,
        header_style="bold_header",
        border_style="border",
    )
    table.add_column("", width=2, justify="center")
    table.add_column("Kind", no_wrap=True)
    table.add_column("Target", style="text", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Detail", style="muted", overflow="fold")

    for result in results:
        icon, label = format_status(result.status)
        detail = result.error or result.message or ""
        table.add_row(
            icon,
            format_kind(result.operation.kind),
            result.operation.target,
            label,
            f"[muted]{detail}[/muted]",
        )
    return table


def print_results_summary(results: list[OperationResult]) -> None:
    """Print a summary line of operation results.

    Args:
        results: Results to summarize.
    """
    counts = Counter(result.status for result in results)
    if counts[OperationStatus.DRY_RUN]:
        print_info(f"Dry-run: {counts[OperationStatus.DRY_RUN]} operation(s) would change.")
        return

    failed = sum(1 for result in results if result.failed)
    if failed == 0:
        print_success(
            f"All {len(results)} operation(s) done "
            f"({counts[OperationStatus.SUCCESS]} changed, "
            f"{counts[OperationStatus.UNCHANGED]} unchanged)."
        )
        return

    parts = [
        f"{counts[status]} {status.value}"
        for status in (
            OperationStatus.SUCCESS,
            OperationStatus.UNCHANGED,
            OperationStatus.FAILED,
            OperationStatus.CONFLICT,
            OperationStatus.SKIPPED,
        )
        if counts[status]
    ]
    print_warning(", ".join(parts))
