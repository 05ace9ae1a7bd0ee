"""Normalized persistence entries.

This module defines the immutable records produced from the configuration:
persistent roots, the directories and files stored in them, known mount
points and the bind-mount pairings derived from them.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from enum import Enum

from persistctl.core.pathops import concat_paths, split_path

_OCTAL_MODE = re.compile(r"[0-7]{3,4}")
_SYMBOLIC_CLAUSE = re.compile(r"([ugoa]*)([=+-])([rwxXst]*)")
_CLASS_SHIFT = {"u": 6, "g": 3, "o": 0}
_PERM_BITS = {"r": 4, "w": 2, "x": 1, "X": 1}
_SPECIAL_BITS = {"u": 0o4000, "g": 0o2000, "o": 0o1000}


def parse_mode(mode: str) -> int:
    """Convert an octal or symbolic mode string to permission bits.

    Symbolic modes are applied to an empty mode, so ``"u=rwx,g=rx,o="``
    yields ``0o750``.

    Args:
        mode: Mode string such as "0755", "700" or "u=rwx,g=,o=".

    Returns:
        Integer permission bits.

    Raises:
        ValueError: If the mode string is not understood.
    """
    if _OCTAL_MODE.fullmatch(mode):
        return int(mode, 8)

    bits = 0
    for clause in mode.split(","):
        match = _SYMBOLIC_CLAUSE.fullmatch(clause)
        if match is None:
            msg = f"Invalid mode: {mode!r}"
            raise ValueError(msg)
        who, op, perms = match.groups()
        classes = "ugo" if not who or "a" in who else who

        mask = 0
        class_mask = 0
        for cls in classes:
            shift = _CLASS_SHIFT[cls]
            class_mask |= 0o7 << shift
            for perm in perms:
                if perm in _PERM_BITS:
                    mask |= _PERM_BITS[perm] << shift
                elif perm == "s" and cls in ("u", "g"):
                    mask |= _SPECIAL_BITS[cls]
                elif perm == "t" and cls == "o":
                    mask |= _SPECIAL_BITS["o"]

        if op == "=":
            bits = (bits & ~class_mask) | mask
        elif op == "+":
            bits |= mask
        else:
            bits &= ~mask
    return bits


class Scope(str, Enum):
    """Environment the persistence configuration is applied in.

    Attributes:
        SYSTEM: System configuration manager (kernel bind mounts, root).
        SESSION: Per-user session manager (FUSE bind mounts, no chown).
    """

    SYSTEM = "system"
    SESSION = "session"


class LinkMethod(str, Enum):
    """How a persisted path is made visible in the live tree."""

    BIND = "bind"
    SYMLINK = "symlink"


class DirectoryKind(str, Enum):
    """Kind of directory in the creation closure.

    Attributes:
        REGULAR: Ordinary directory.
        HOME_BOUNDARY: A user's home directory; its ancestors are forced to
            root-owned home-parent permissions.
    """

    REGULAR = "regular"
    HOME_BOUNDARY = "home_boundary"


@dataclass(frozen=True, slots=True)
class Permissions:
    """Ownership and mode for a directory.

    ``user`` and ``group`` may be None in session scope, where directories
    are created by the session user and never chowned.
    """

    user: str | None
    group: str | None
    mode: str

    def merged(self, overrides: dict[str, str]) -> "Permissions":
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **overrides)

    @property
    def mode_bits(self) -> int:
        """Mode as integer permission bits."""
        return parse_mode(self.mode)


@dataclass(frozen=True, slots=True)
class PersistentRoot:
    """A backing storage location.

    Attributes:
        storage_path: Absolute path of the storage location.
        default_perms: Default permissions after root-level overrides.
        hide_mounts: Default for hiding bind mounts of its directories.
        enabled: Whether the location is active.
        allow_other: FUSE ``allow_other`` for session bind mounts.
        remove_prefix_directory: Drop the first segment on the live side.
    """

    storage_path: str
    default_perms: Permissions
    hide_mounts: bool = False
    enabled: bool = True
    allow_other: bool = False
    remove_prefix_directory: bool = False


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    """A directory to create, and possibly link, from persistent storage.

    Attributes:
        live_path: Absolute path in the live tree.
        storage_relative: Path appended to the root's storage path.
        root: Owning persistent root.
        perms: Permissions for a newly created directory.
        default_perms: Permissions at the level the directory resides,
            inherited by its implied parents.
        kind: Regular directory or home boundary.
        method: Linking method for declared directories, None for
            directories that are only created.
        hide_mount: Hide the bind mount from file managers.
        home: Home directory of the enclosing user scope, if any.
        relative_path: Path as declared, relative to its scope.
        site: Declaration site, for error reports.
    """

    live_path: str
    storage_relative: str
    root: PersistentRoot
    perms: Permissions
    default_perms: Permissions
    kind: DirectoryKind = DirectoryKind.REGULAR
    method: LinkMethod | None = None
    hide_mount: bool = False
    home: str | None = None
    relative_path: str = ""
    site: str = ""

    @property
    def source_path(self) -> str:
        """Absolute path of the directory in persistent storage."""
        return concat_paths([self.root.storage_path, self.storage_relative])

    @property
    def is_home_boundary(self) -> bool:
        """Check if this entry is a user's home directory."""
        return self.kind == DirectoryKind.HOME_BOUNDARY

    @property
    def is_scope_root(self) -> bool:
        """Check if this entry denotes the root of its scope itself.

        Such entries (``.`` inside a home, ``/`` at root level) are created
        as part of the closure but never scheduled as separate operations.
        """
        return not split_path(self.relative_path)

    @property
    def is_linked(self) -> bool:
        """Check if this directory is bind-mounted or symlinked."""
        return self.method is not None


@dataclass(frozen=True, slots=True)
class FileEntry:
    """A single file to relocate.

    Attributes:
        live_path: Absolute path in the live tree.
        storage_relative: Path appended to the root's storage path.
        root: Owning persistent root.
        method: Linking method.
        parent: The directory entry for the file's parent.
        relative_path: Path as declared, relative to its scope.
        site: Declaration site, for error reports.
    """

    live_path: str
    storage_relative: str
    root: PersistentRoot
    method: LinkMethod
    parent: DirectoryEntry
    relative_path: str = ""
    site: str = ""

    @property
    def source_path(self) -> str:
        """Absolute path of the file in persistent storage."""
        return concat_paths([self.root.storage_path, self.storage_relative])


@dataclass(frozen=True, slots=True)
class MountPoint:
    """A file system mounted by the host.

    Attributes:
        mount_path: Where the file system is mounted.
        device: Device path, if known.
        label: File system label.
        fs_type: File system type.
        options: Mount options.
        needed_for_boot: Whether it is mounted in early boot.
        is_bind_target: True for mount points created by persistence bind
            mounts rather than host file systems.
    """

    mount_path: str
    device: str | None = None
    label: str | None = None
    fs_type: str = "auto"
    options: tuple[str, ...] = ()
    needed_for_boot: bool = False
    is_bind_target: bool = False

    @property
    def device_path(self) -> str | None:
        """Device to mount, falling back to the by-label path."""
        if self.device is not None:
            return self.device
        if self.label is not None:
            return f"/dev/disk/by-label/{self.label}"
        return None


@dataclass(frozen=True, slots=True)
class BindMountSpec:
    """Derived pairing of a persistent source with its live target.

    Attributes:
        source: Absolute path in persistent storage.
        target: Absolute path in the live tree.
        method: Bind mount or symlink.
        hide: Hide the mount from file managers.
        fuse: Use a FUSE bind mount (session scope).
        allow_other: FUSE ``allow_other``.
    """

    source: str
    target: str
    method: LinkMethod
    hide: bool = False
    fuse: bool = False
    allow_other: bool = False


@dataclass(frozen=True, slots=True)
class PersistenceSnapshot:
    """Immutable result of configuration normalization.

    Passed explicitly to every planning component.

    Attributes:
        scope: System or session scope.
        roots: Enabled persistent roots.
        directories: Declared directories.
        files: Declared files.
        mount_points: Host file systems known at planning time.
        home_parent_perms: Forced permissions for home directory ancestors.
        unmount_retries: Regular unmount attempts before a lazy unmount.
        unmount_delay: Seconds between unmount attempts.
        staging_root: Temporary mount root for boot preparation.
    """

    scope: Scope
    roots: tuple[PersistentRoot, ...]
    directories: tuple[DirectoryEntry, ...]
    files: tuple[FileEntry, ...]
    mount_points: tuple[MountPoint, ...] = ()
    home_parent_perms: Permissions = field(
        default_factory=lambda: Permissions(user="root", group="users", mode="0755")
    )
    unmount_retries: int = 3
    unmount_delay: float = 1.0
    staging_root: str = "/persist-tmp-mnt"

    def bind_spec(self, entry: DirectoryEntry | FileEntry) -> BindMountSpec:
        """Derive the source/target pairing for a linked entry.

        Raises:
            ValueError: If a directory entry is not linked.
        """
        method = entry.method
        if method is None:
            msg = f"Directory {entry.live_path} is not linked"
            raise ValueError(msg)
        hide = entry.hide_mount if isinstance(entry, DirectoryEntry) else False
        return BindMountSpec(
            source=entry.source_path,
            target=entry.live_path,
            method=method,
            hide=hide,
            fuse=self.scope == Scope.SESSION,
            allow_other=entry.root.allow_other,
        )
