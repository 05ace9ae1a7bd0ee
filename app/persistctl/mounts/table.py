"""Mount table inspection.

Parses ``/proc/self/mountinfo`` to answer what is mounted where. Unlike
``/proc/mounts``, mountinfo records the root of each mount inside its file
system, which is what tells a kernel bind mount of ``/persist/var/log`` apart
from one of ``/persist/var/lib``.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from persistctl.core.pathops import concat_paths, is_parent_of, is_path_prefix, split_path
from persistctl.models.entries import MountPoint

logger = logging.getLogger(__name__)

MOUNTINFO_PATH = Path("/proc/self/mountinfo")

FUSE_FS_PREFIX = "fuse"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def unescape(field: str) -> str:
    """Decode the octal escapes (``\\040`` for space) used in mount tables."""
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


@dataclass(frozen=True, slots=True)
class MountInfo:
    """One line of ``/proc/self/mountinfo``.

    Attributes:
        mount_id: Unique id of the mount.
        parent_id: Id of the parent mount.
        device: ``major:minor`` of the file system.
        root: Directory of the file system that forms the root of this mount.
        mount_point: Where the mount is attached.
        options: Per-mount options.
        fs_type: File system type, e.g. "ext4" or "fuse.bindfs".
        source: Mount source, e.g. "/dev/sda2" or the FUSE ``fsname``.
        super_options: Per-superblock options.
    """

    mount_id: int
    parent_id: int
    device: str
    root: str
    mount_point: str
    options: tuple[str, ...]
    fs_type: str
    source: str
    super_options: tuple[str, ...] = ()

    @property
    def is_fuse(self) -> bool:
        """Check if this is a FUSE mount (bindfs)."""
        return self.fs_type.startswith(FUSE_FS_PREFIX)


def parse_mountinfo_line(line: str) -> MountInfo:
    """Parse a single mountinfo line.

    Raises:
        ValueError: If the line is malformed.
    """
    fields = line.split()
    try:
        separator = fields.index("-", 6)
        return MountInfo(
            mount_id=int(fields[0]),
            parent_id=int(fields[1]),
            device=fields[2],
            root=unescape(fields[3]),
            mount_point=unescape(fields[4]),
            options=tuple(fields[5].split(",")),
            fs_type=fields[separator + 1],
            source=unescape(fields[separator + 2]),
            super_options=tuple(fields[separator + 3].split(","))
            if len(fields) > separator + 3
            else (),
        )
    except (IndexError, ValueError) as e:
        msg = f"Malformed mountinfo line: {line!r}"
        raise ValueError(msg) from e


class MountTable:
    """Snapshot of the mounts visible to this process.

    Entries keep kernel order: a later mount at the same path hides the
    earlier ones.
    """

    def __init__(self, entries: list[MountInfo]) -> None:
        self.entries = list(entries)

    @classmethod
    def parse(cls, text: str) -> "MountTable":
        """Parse mountinfo content, skipping malformed lines."""
        entries: list[MountInfo] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                entries.append(parse_mountinfo_line(line))
            except ValueError as e:
                logger.warning("%s", e)
        return cls(entries)

    @classmethod
    def read(cls, path: Path = MOUNTINFO_PATH) -> "MountTable":
        """Read the current mount table.

        Raises:
            OSError: If the mount table cannot be read.
        """
        return cls.parse(path.read_text(encoding="utf-8"))

    def is_mounted(self, path: str) -> bool:
        """Check if anything is mounted exactly at ``path``."""
        return self.mounted_at(path) is not None

    def mounted_at(self, path: str) -> MountInfo | None:
        """Return the topmost mount at ``path``, if any."""
        target = concat_paths([path])
        found: MountInfo | None = None
        for entry in self.entries:
            if entry.mount_point == target:
                found = entry
        return found

    def mounts_below(self, path: str) -> list[MountInfo]:
        """Return the mounts attached strictly below ``path``."""
        target = concat_paths([path])
        return [entry for entry in self.entries if is_parent_of(target, entry.mount_point)]

    def containing(self, path: str) -> MountInfo | None:
        """Return the mount whose tree holds ``path`` (longest mount point)."""
        target = concat_paths([path])
        best: MountInfo | None = None
        best_depth = -1
        for entry in self.entries:
            if not is_path_prefix(entry.mount_point, target):
                continue
            depth = len(split_path(entry.mount_point))
            # Later entries at equal depth are stacked on top
            if depth >= best_depth:
                best, best_depth = entry, depth
        return best

    def shows_source(self, target: str, source: str) -> bool:
        """Check if the mount at ``target`` presents ``source``.

        FUSE bind mounts carry the source as their ``fsname``. Kernel bind
        mounts are matched by device and by the root inside the file system
        that ``source`` lives on.
        """
        mounted = self.mounted_at(target)
        if mounted is None:
            return False
        wanted = concat_paths([source])
        if mounted.is_fuse:
            return concat_paths([mounted.source]) == wanted

        backing = self._backing_mount(wanted, exclude=mounted)
        if backing is None:
            return False
        relative = split_path(wanted)[len(split_path(backing.mount_point)) :]
        expected_root = concat_paths([backing.root, *relative])
        return mounted.device == backing.device and concat_paths([mounted.root]) == expected_root

    def to_mount_points(self) -> list[MountPoint]:
        """Convert the table into MountPoint records for planning."""
        points: dict[str, MountPoint] = {}
        for entry in self.entries:
            points[entry.mount_point] = MountPoint(
                mount_path=entry.mount_point,
                device=entry.source if entry.source.startswith("/") else None,
                fs_type=entry.fs_type,
                options=entry.options,
            )
        return list(points.values())

    def _backing_mount(self, path: str, exclude: MountInfo) -> MountInfo | None:
        """Mount holding ``path``, ignoring the mount under inspection."""
        return MountTable([e for e in self.entries if e is not exclude]).containing(path)
