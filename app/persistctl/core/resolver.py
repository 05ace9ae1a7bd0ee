"""Mount dependency resolution.

For every persisted path, finds the mounts its persistent-side and live-side
parent directories live on, so operations can be ordered after those mounts
and after the creation of their live parent directory.

Known mount points are the host file systems plus the targets of every
directory bind mount: a persisted directory is itself a mount point that
entries below it depend on.
"""

from dataclasses import dataclass

from persistctl.core.pathops import concat_paths, dir_of, is_path_prefix, split_path
from persistctl.models.entries import (
    DirectoryEntry,
    FileEntry,
    LinkMethod,
    MountPoint,
    PersistenceSnapshot,
)

ROOT_MOUNT = MountPoint(mount_path="/")


@dataclass(frozen=True, slots=True)
class MountDependencies:
    """Prerequisites of one persisted path.

    Attributes:
        persistent_parent_mount: Mount holding the parent of the storage path.
        live_parent_mount: Mount holding the parent of the live path.
        live_parent: Parent directory of the live path.
    """

    persistent_parent_mount: MountPoint
    live_parent_mount: MountPoint
    live_parent: str

    @property
    def mounts(self) -> list[MountPoint]:
        """Both parent mounts, without duplicates."""
        if self.persistent_parent_mount.mount_path == self.live_parent_mount.mount_path:
            return [self.live_parent_mount]
        return [self.persistent_parent_mount, self.live_parent_mount]


def bind_targets(snapshot: PersistenceSnapshot) -> list[MountPoint]:
    """Mount points created by directory bind mounts of the snapshot."""
    return [
        MountPoint(mount_path=entry.live_path, fs_type="none", is_bind_target=True)
        for entry in snapshot.directories
        if entry.method == LinkMethod.BIND
    ]


class MountDependencyResolver:
    """Finds the parent mounts of persisted paths by longest prefix match.

    Attributes:
        _mount_points: Every known mount point.
        _cache: Resolutions memoized by (storage path, storage parent, live parent).
    """

    def __init__(self, snapshot: PersistenceSnapshot) -> None:
        """Initialize the resolver.

        Args:
            snapshot: Normalized configuration providing host mount points
                and bind-mounted directories.
        """
        known: dict[str, MountPoint] = {}
        # A live mount table also lists persistence bind mounts made earlier
        for mount in [*bind_targets(snapshot), *snapshot.mount_points]:
            known.setdefault(mount.mount_path, mount)
        self._mount_points = list(known.values())
        self._cache: dict[tuple[str, str, str], MountDependencies] = {}

    @property
    def mount_points(self) -> list[MountPoint]:
        """Every known mount point."""
        return list(self._mount_points)

    def parent_mount(self, path: str) -> MountPoint:
        """Return the most specific mount containing the parent of ``path``.

        Mount points are compared segment-wise, so ``/persist`` never matches
        ``/persistent/...``. Without any match the root file system is assumed.

        Args:
            path: Absolute path.

        Returns:
            The mount point with the longest path that is a prefix of the
            parent directory of ``path``.
        """
        return self._longest_prefix(dir_of(path))

    def resolve(self, entry: DirectoryEntry | FileEntry) -> MountDependencies:
        """Resolve the prerequisites of one directory or file entry."""
        storage_parent = dir_of(entry.storage_relative)
        live_parent = dir_of(entry.live_path)
        key = (entry.root.storage_path, storage_parent, live_parent)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        resolved = MountDependencies(
            persistent_parent_mount=self.parent_mount(entry.source_path),
            live_parent_mount=self.parent_mount(entry.live_path),
            live_parent=live_parent,
        )
        self._cache[key] = resolved
        return resolved

    def resolve_path(self, storage_path: str, relative_path: str) -> MountDependencies:
        """Resolve prerequisites for a path stored at ``storage_path + relative_path``.

        The live path is the relative path taken from the root of the live tree.
        """
        live_path = concat_paths(["/", relative_path])
        source_path = concat_paths([storage_path, relative_path])
        return MountDependencies(
            persistent_parent_mount=self.parent_mount(source_path),
            live_parent_mount=self.parent_mount(live_path),
            live_parent=dir_of(live_path),
        )

    def _longest_prefix(self, directory: str) -> MountPoint:
        best = ROOT_MOUNT
        best_depth = -1
        for mount in self._mount_points:
            if not is_path_prefix(mount.mount_path, directory):
                continue
            depth = len(split_path(mount.mount_path))
            if depth > best_depth:
                best, best_depth = mount, depth
        return best
