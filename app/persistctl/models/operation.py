"""Operation models for persistence plans.

This module defines the operations a plan is made of (directory creation,
bind mount, symlink), the ordered plan itself, execution results and the
per-target lifecycle states.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from persistctl.models.entries import DirectoryEntry, FileEntry, Scope


class OperationKind(str, Enum):
    """Type of persistence operation.

    Attributes:
        MKDIR: Create a directory in persistent storage and the live tree.
        BINDMOUNT: Bind-mount a persistent path onto its live path.
        SYMLINK: Link a live path to its persistent path.
    """

    MKDIR = "mkdir"
    BINDMOUNT = "bindmount"
    SYMLINK = "symlink"


# Tie-break rank when two operations share a live path
KIND_RANK: dict[OperationKind, int] = {
    OperationKind.MKDIR: 0,
    OperationKind.BINDMOUNT: 1,
    OperationKind.SYMLINK: 2,
}


@dataclass(frozen=True, slots=True)
class Operation:
    """A single step of a persistence plan.

    Attributes:
        id: Unique identifier, ``<kind>:<live path>``.
        kind: Operation type.
        target: Live path operated on.
        source: Corresponding path in persistent storage.
        entry: The directory or file entry this operation was derived from.
        requires: Identifiers of in-plan operations that must complete first.
        after_mounts: Host mount points that must be mounted first.
        command: Argument vector of the persistctl primitive performing it.
        unit_name: Scheduler-safe unit name.
    """

    id: str
    kind: OperationKind
    target: str
    source: str
    entry: DirectoryEntry | FileEntry = field(compare=False, repr=False)
    requires: tuple[str, ...] = ()
    after_mounts: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    unit_name: str = ""

    @property
    def is_link(self) -> bool:
        """Check if this operation links a path (bind mount or symlink)."""
        return self.kind in (OperationKind.BINDMOUNT, OperationKind.SYMLINK)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the operation descriptor for external schedulers."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target,
            "source": self.source,
            "requires": list(self.requires),
            "after_mounts": list(self.after_mounts),
            "command": list(self.command),
            "unit_name": self.unit_name,
        }


@dataclass(frozen=True, slots=True)
class Plan:
    """Operations in a valid execution order.

    Attributes:
        scope: Scope the plan was built for.
        operations: Operations, every one after all of its prerequisites.
    """

    scope: Scope
    operations: tuple[Operation, ...]

    def __len__(self) -> int:
        return len(self.operations)

    def get(self, operation_id: str) -> Operation | None:
        """Look up an operation by identifier."""
        for operation in self.operations:
            if operation.id == operation_id:
                return operation
        return None

    def dependents_of(self, operation_id: str) -> set[str]:
        """Return identifiers of every operation depending on one, transitively."""
        reached = {operation_id}
        # Dependents always come later in the plan, one forward pass suffices
        for operation in self.operations:
            if reached.intersection(operation.requires):
                reached.add(operation.id)
        reached.discard(operation_id)
        return reached

    def link_operations(self) -> list[Operation]:
        """Bind mount and symlink operations, in plan order."""
        return [operation for operation in self.operations if operation.is_link]


class OperationStatus(str, Enum):
    """Outcome of executing an operation.

    Attributes:
        SUCCESS: The filesystem was changed as requested.
        UNCHANGED: The desired state already held.
        FAILED: The operation raised an error.
        CONFLICT: Something already occupies the target.
        SKIPPED: Not attempted because a prerequisite did not succeed.
        DRY_RUN: Would have been executed.
    """

    SUCCESS = "success"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Result of executing a persistence operation.

    Attributes:
        operation: The operation that was executed.
        status: Outcome.
        message: Optional additional information.
        error: Error message for failed, conflicting or skipped operations.
    """

    operation: Operation
    status: OperationStatus
    message: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        """Check if the desired state holds after this operation."""
        return self.status in (
            OperationStatus.SUCCESS,
            OperationStatus.UNCHANGED,
            OperationStatus.DRY_RUN,
        )

    @property
    def failed(self) -> bool:
        """Check if the operation did not reach its desired state."""
        return not self.success


class EntryState(str, Enum):
    """Lifecycle of a persisted path within one activation or session."""

    UNCONFIGURED = "unconfigured"
    CREATED = "created"
    MOUNTED = "mounted"
    REMOUNTING = "remounting"
    UNMOUNTING = "unmounting"
    UNMOUNTED = "unmounted"


ALLOWED_TRANSITIONS: dict[EntryState, frozenset[EntryState]] = {
    EntryState.UNCONFIGURED: frozenset({EntryState.CREATED, EntryState.MOUNTED}),
    EntryState.CREATED: frozenset({EntryState.MOUNTED}),
    EntryState.MOUNTED: frozenset({EntryState.REMOUNTING, EntryState.UNMOUNTING}),
    EntryState.REMOUNTING: frozenset({EntryState.MOUNTED, EntryState.UNMOUNTING}),
    EntryState.UNMOUNTING: frozenset({EntryState.UNMOUNTED}),
    EntryState.UNMOUNTED: frozenset({EntryState.CREATED, EntryState.MOUNTED}),
}
