"""Operation planning.

Turns a snapshot into an ordered Plan: one ``mkdir`` per directory of the
creation closure, one ``bindmount`` or ``symlink`` per linked directory or
file. Each operation names the in-plan operations it requires, the host
mounts it must run after, the primitive command that performs it and a
unit name an external scheduler can use.
"""

import heapq
import logging

from persistctl.core.closure import build_directory_closure, schedulable_directories
from persistctl.core.pathops import escape_systemd_path
from persistctl.core.resolver import MountDependencies, MountDependencyResolver
from persistctl.models.entries import (
    DirectoryEntry,
    FileEntry,
    LinkMethod,
    PersistenceSnapshot,
    Scope,
)
from persistctl.models.operation import KIND_RANK, Operation, OperationKind, Plan

logger = logging.getLogger(__name__)

COMMAND = "persistctl"
UNIT_PREFIX = "persistctl"

FSTAB_OPTIONS = ("bind", "X-fstrim.notrim")
FSTAB_HIDE_OPTION = "x-gvfs-hide"


class PlanCycleError(ValueError):
    """Raised when operation prerequisites form a cycle."""


def operation_id(kind: OperationKind, path: str) -> str:
    """Identifier of the operation of ``kind`` on ``path``."""
    return f"{kind.value}:{path}"


def _link_kind(entry: DirectoryEntry | FileEntry, scope: Scope) -> OperationKind:
    """Operation kind for a linked entry.

    Session files are always symlinked. Everything else follows its method.
    """
    if isinstance(entry, FileEntry) and scope == Scope.SESSION:
        return OperationKind.SYMLINK
    if entry.method == LinkMethod.BIND:
        return OperationKind.BINDMOUNT
    return OperationKind.SYMLINK


class _Planner:
    """Builds operations for one snapshot."""

    def __init__(self, snapshot: PersistenceSnapshot) -> None:
        self._snapshot = snapshot
        self._resolver = MountDependencyResolver(snapshot)
        self._directories = schedulable_directories(build_directory_closure(snapshot))
        self._mkdirs = {entry.live_path for entry in self._directories}
        self._links: dict[str, OperationKind] = {}
        for entry in [*snapshot.directories, *snapshot.files]:
            self._links[entry.live_path] = _link_kind(entry, snapshot.scope)

    def operations(self) -> list[Operation]:
        operations = [self._mkdir(entry) for entry in self._directories]
        operations.extend(self._link(entry) for entry in self._snapshot.directories)
        operations.extend(self._link(entry) for entry in self._snapshot.files)
        return operations

    # === Dependencies ===

    def _prerequisites(
        self, entry: DirectoryEntry | FileEntry
    ) -> tuple[list[str], list[str]]:
        """Return (in-plan requires, external mounts) for an entry's parents."""
        deps: MountDependencies = self._resolver.resolve(entry)
        requires: list[str] = []
        after_mounts: list[str] = []

        if deps.live_parent in self._mkdirs:
            requires.append(operation_id(OperationKind.MKDIR, deps.live_parent))
        if self._links.get(deps.live_parent) == OperationKind.SYMLINK:
            requires.append(operation_id(OperationKind.SYMLINK, deps.live_parent))

        for mount in deps.mounts:
            if mount.is_bind_target and mount.mount_path in self._links:
                requires.append(operation_id(OperationKind.BINDMOUNT, mount.mount_path))
            elif mount.mount_path not in after_mounts:
                after_mounts.append(mount.mount_path)
        return requires, after_mounts

    # === Operations ===

    def _mkdir(self, entry: DirectoryEntry) -> Operation:
        requires, after_mounts = self._prerequisites(entry)
        storage_only = entry.method == LinkMethod.SYMLINK
        command = [COMMAND, "mkdir", entry.source_path, entry.live_path, "--mode", entry.perms.mode]
        if entry.perms.user is not None:
            command.extend(["--user", entry.perms.user])
        if entry.perms.group is not None:
            command.extend(["--group", entry.perms.group])
        if storage_only:
            command.append("--storage-only")

        return Operation(
            id=operation_id(OperationKind.MKDIR, entry.live_path),
            kind=OperationKind.MKDIR,
            target=entry.live_path,
            source=entry.source_path,
            entry=entry,
            requires=tuple(dict.fromkeys(requires)),
            after_mounts=tuple(after_mounts),
            command=tuple(command),
            unit_name=(
                f"{UNIT_PREFIX}-mkdir--{escape_systemd_path(entry.root.storage_path)}"
                f"--{escape_systemd_path(entry.live_path)}"
            ),
        )

    def _link(self, entry: DirectoryEntry | FileEntry) -> Operation:
        kind = self._links[entry.live_path]
        requires, after_mounts = self._prerequisites(entry)
        if isinstance(entry, DirectoryEntry) and entry.live_path in self._mkdirs:
            requires.append(operation_id(OperationKind.MKDIR, entry.live_path))

        spec = self._snapshot.bind_spec(entry)
        if kind == OperationKind.SYMLINK:
            command = [COMMAND, "link", spec.source, spec.target]
        elif isinstance(entry, FileEntry):
            command = [COMMAND, "persist-file", spec.source, spec.target, "--method", "bind"]
        else:
            command = [COMMAND, "bind", spec.source, spec.target]
            if spec.hide:
                command.append("--hide")
            if spec.fuse:
                command.append("--fuse")
            if spec.allow_other:
                command.append("--allow-other")

        return Operation(
            id=operation_id(kind, entry.live_path),
            kind=kind,
            target=entry.live_path,
            source=entry.source_path,
            entry=entry,
            requires=tuple(dict.fromkeys(requires)),
            after_mounts=tuple(after_mounts),
            command=tuple(command),
            unit_name=f"{UNIT_PREFIX}-{kind.value}--{escape_systemd_path(entry.source_path)}",
        )


def order_operations(operations: list[Operation]) -> list[Operation]:
    """Order operations topologically, ties broken by (target, kind).

    Prerequisites that are not part of ``operations`` are ignored.

    Raises:
        PlanCycleError: If prerequisites form a cycle.
    """
    by_id = {operation.id: operation for operation in operations}
    pending: dict[str, int] = {}
    dependents: dict[str, list[str]] = {operation.id: [] for operation in operations}
    for operation in operations:
        requires = [req for req in operation.requires if req in by_id]
        pending[operation.id] = len(requires)
        for req in requires:
            dependents[req].append(operation.id)

    def sort_key(operation: Operation) -> tuple[str, int, str]:
        return (operation.target, KIND_RANK[operation.kind], operation.id)

    ready = [sort_key(op) for op in operations if pending[op.id] == 0]
    heapq.heapify(ready)
    ordered: list[Operation] = []
    while ready:
        _, _, current_id = heapq.heappop(ready)
        ordered.append(by_id[current_id])
        for dependent in dependents[current_id]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, sort_key(by_id[dependent]))

    if len(ordered) != len(operations):
        stuck = sorted(op_id for op_id, count in pending.items() if count > 0)
        msg = f"Dependency cycle between operations: {', '.join(stuck)}"
        raise PlanCycleError(msg)
    return ordered


def build_plan(snapshot: PersistenceSnapshot) -> Plan:
    """Build the ordered operation plan for a snapshot.

    Args:
        snapshot: Normalized configuration.

    Returns:
        Plan whose operations each come after all of their prerequisites.
    """
    operations = _Planner(snapshot).operations()
    ordered = order_operations(operations)
    logger.debug("Planned %d operations for %s scope", len(ordered), snapshot.scope.value)
    return Plan(scope=snapshot.scope, operations=tuple(ordered))


def _fstab_escape(path: str) -> str:
    return path.replace("\\", "\\134").replace(" ", "\\040").replace("\t", "\\011")


def render_fstab(plan: Plan) -> list[str]:
    """Render the directory bind mounts of a system plan as fstab lines.

    Session plans use FUSE mounts managed by the session and yield no lines.
    """
    if plan.scope != Scope.SYSTEM:
        return []
    lines: list[str] = []
    for operation in plan.operations:
        entry = operation.entry
        if operation.kind != OperationKind.BINDMOUNT or not isinstance(entry, DirectoryEntry):
            continue
        options = list(FSTAB_OPTIONS)
        if entry.hide_mount:
            options.append(FSTAB_HIDE_OPTION)
        lines.append(
            f"{_fstab_escape(operation.source)} {_fstab_escape(operation.target)} "
            f"none {','.join(options)} 0 0"
        )
    return lines
