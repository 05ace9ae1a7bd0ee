"""Plan execution.

Runs the operations of a plan through a MountOperator and turns every
outcome, including errors, into an OperationResult. The creation pass
skips operations whose prerequisites did not succeed and keeps going with
independent ones; teardown never stops early.
"""

import logging
import subprocess
from collections.abc import Callable
from functools import partial

from persistctl.core.errors import MountConflictError, UnmountTimeoutError
from persistctl.models.entries import DirectoryEntry, FileEntry, LinkMethod, Scope
from persistctl.models.operation import (
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
    Plan,
)
from persistctl.mounts.operator import MountOperator, command_failure_detail

logger = logging.getLogger(__name__)

SKIPPED_PREREQUISITE = "skipped due to prerequisite failure"
SKIPPED_ABORTED = "skipped after an earlier failure"


class PlanRunner:
    """Executes plans with a MountOperator.

    Attributes:
        operator: Performs the primitives.
        max_retries: Regular unmount attempts before a lazy unmount.
        retry_delay: Seconds between unmount attempts.
    """

    def __init__(
        self,
        operator: MountOperator,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.operator = operator
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def apply(self, plan: Plan, fail_fast: bool = False) -> list[OperationResult]:
        """Run the creation pass.

        A failed or conflicting operation marks everything depending on it
        as skipped, while independent operations continue. With
        ``fail_fast`` every remaining operation is skipped instead.

        In session scope, mounts made during a pass that ends with failures
        are unmounted again.

        Args:
            plan: Ordered operations to run.
            fail_fast: Abort the pass at the first failure.

        Returns:
            One result per operation, in plan order.
        """
        results: list[OperationResult] = []
        blocked: set[str] = set()
        mounted: list[Operation] = []
        aborted = False

        for operation in plan.operations:
            if aborted:
                results.append(_skipped(operation, SKIPPED_ABORTED))
                continue
            failed_requires = [req for req in operation.requires if req in blocked]
            if failed_requires:
                blocked.add(operation.id)
                logger.warning("Skipping %s: %s failed", operation.id, failed_requires[0])
                results.append(
                    _skipped(operation, f"{SKIPPED_PREREQUISITE} ({failed_requires[0]})")
                )
                continue

            result = self.execute(operation, plan.scope)
            results.append(result)
            if result.failed:
                blocked.add(operation.id)
                logger.error("%s %s: %s", operation.kind.value, operation.target, result.error)
                aborted = fail_fast
            elif (
                result.status == OperationStatus.SUCCESS
                and operation.kind == OperationKind.BINDMOUNT
            ):
                mounted.append(operation)

        if plan.scope == Scope.SESSION and blocked and mounted:
            self._unmount_made(mounted)
        return results

    def teardown(self, plan: Plan) -> list[OperationResult]:
        """Unmount and unlink every link operation, in reverse plan order.

        Errors are collected into the results; teardown never stops early.

        Returns:
            One result per link operation, in teardown order.
        """
        results: list[OperationResult] = []
        for operation in reversed(plan.link_operations()):
            result = self._guarded(operation, partial(self._release, operation, plan.scope))
            if result.failed:
                logger.error("Teardown of %s failed: %s", operation.target, result.error)
            results.append(result)
        return results

    def execute(self, operation: Operation, scope: Scope) -> OperationResult:
        """Run a single operation and report its outcome."""
        return self._guarded(operation, partial(self._dispatch, operation, scope))

    # === Dispatch ===

    def _dispatch(self, operation: Operation, scope: Scope) -> bool:
        entry = operation.entry
        if operation.kind == OperationKind.MKDIR:
            if not isinstance(entry, DirectoryEntry):
                msg = f"{operation.id} is not derived from a directory"
                raise ValueError(msg)
            return self.operator.create_persistent_directory(
                operation.source,
                operation.target,
                entry.perms,
                storage_only=entry.method == LinkMethod.SYMLINK,
            )

        if operation.kind == OperationKind.BINDMOUNT:
            if isinstance(entry, FileEntry):
                return self.operator.persist_file(
                    operation.source, operation.target, LinkMethod.BIND
                )
            return self.operator.bind_mount(
                operation.source,
                operation.target,
                hide=entry.hide_mount,
                fuse=scope == Scope.SESSION,
                allow_other=entry.root.allow_other,
            )

        changed = False
        if scope == Scope.SESSION and isinstance(entry, DirectoryEntry):
            # A bind mount from an earlier configuration may still sit there
            changed = self.operator.cleanup_link_target(
                operation.target, self.max_retries, self.retry_delay
            )
        return self.operator.symlink(operation.source, operation.target) or changed

    def _release(self, operation: Operation, scope: Scope) -> bool:
        if operation.kind == OperationKind.SYMLINK:
            return self.operator.unlink(operation.target, operation.source)
        fuse = scope == Scope.SESSION and isinstance(operation.entry, DirectoryEntry)
        changed = self.operator.unmount(
            operation.target,
            self.max_retries,
            self.retry_delay,
            fuse=fuse,
            remove_mount_point=True,
        )
        if isinstance(operation.entry, FileEntry) and not changed:
            # Files missing from storage at apply time were linked instead
            changed = self.operator.unlink(operation.target, operation.source)
        return changed

    def _unmount_made(self, operations: list[Operation]) -> None:
        """Undo the mounts of a failed session pass."""
        for operation in reversed(operations):
            logger.warning("Unmounting %s after failed pass", operation.target)
            try:
                self.operator.unmount(
                    operation.target,
                    self.max_retries,
                    self.retry_delay,
                    fuse=isinstance(operation.entry, DirectoryEntry),
                )
            except UnmountTimeoutError as e:
                logger.error("%s", e)

    def _guarded(self, operation: Operation, action: Callable[[], bool]) -> OperationResult:
        """Run ``action`` and convert its outcome or error into a result."""
        try:
            changed = action()
        except (MountConflictError, FileExistsError) as e:
            return OperationResult(
                operation=operation, status=OperationStatus.CONFLICT, error=str(e)
            )
        except subprocess.CalledProcessError as e:
            return OperationResult(
                operation=operation,
                status=OperationStatus.FAILED,
                error=command_failure_detail(e),
            )
        except (UnmountTimeoutError, subprocess.SubprocessError, OSError, ValueError) as e:
            return OperationResult(
                operation=operation, status=OperationStatus.FAILED, error=str(e)
            )

        if not changed:
            return OperationResult(operation=operation, status=OperationStatus.UNCHANGED)
        if self.operator.dry_run:
            return OperationResult(
                operation=operation,
                status=OperationStatus.DRY_RUN,
                message=" ".join(operation.command),
            )
        return OperationResult(operation=operation, status=OperationStatus.SUCCESS)


def _skipped(operation: Operation, reason: str) -> OperationResult:
    return OperationResult(operation=operation, status=OperationStatus.SKIPPED, error=reason)


def has_failures(results: list[OperationResult]) -> bool:
    """Check if any operation did not reach its desired state."""
    return any(result.failed for result in results)
