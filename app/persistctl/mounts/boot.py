"""Early boot preparation.

A persisted directory that is itself the mount point of a needed-for-boot
file system has to exist in persistent storage before early boot mounts
it there. The persistent file systems are mounted under a staging root,
the directories created inside them and everything is unmounted again.
"""

import logging
import re

from persistctl.core.closure import build_directory_closure
from persistctl.core.errors import UnmountTimeoutError
from persistctl.core.pathops import concat_paths
from persistctl.models.entries import DirectoryEntry, MountPoint, PersistenceSnapshot
from persistctl.mounts.operator import MountOperator

logger = logging.getLogger(__name__)

# Options naming systemd mount units, meaningless outside of systemd
_UNIT_OPTION = re.compile(r"x-.*\.mount")


def boot_mount_options(mount: MountPoint) -> list[str]:
    """Mount options usable for a plain ``mount`` call."""
    return [option for option in mount.options if not _UNIT_OPTION.fullmatch(option)]


def needed_for_boot_directories(snapshot: PersistenceSnapshot) -> list[DirectoryEntry]:
    """Directories whose live path is a needed-for-boot mount point."""
    needed = {mount.mount_path for mount in snapshot.mount_points if mount.needed_for_boot}
    return [entry for entry in build_directory_closure(snapshot) if entry.live_path in needed]


def storage_file_systems(
    snapshot: PersistenceSnapshot, directories: list[DirectoryEntry]
) -> list[MountPoint]:
    """File systems mounted at the storage path of any of the directories."""
    storage_paths = {entry.root.storage_path for entry in directories}
    return [mount for mount in snapshot.mount_points if mount.mount_path in storage_paths]


def prepare_needed_for_boot(
    snapshot: PersistenceSnapshot,
    operator: MountOperator,
    staging_root: str | None = None,
) -> list[str]:
    """Create needed-for-boot directories in persistent storage.

    Args:
        snapshot: Normalized configuration.
        operator: Performs the mounts and directory creation.
        staging_root: Where persistent file systems are mounted temporarily.
            Defaults to the snapshot's staging root.

    Returns:
        Directories created (or that would be created in dry-run mode).

    Raises:
        ValueError: If a persistent file system has neither device nor label.
        subprocess.CalledProcessError: If mounting fails.
        OSError: If a directory cannot be created.
        UnmountTimeoutError: If a staged file system stays mounted.
    """
    staging = staging_root or snapshot.staging_root
    directories = needed_for_boot_directories(snapshot)
    if not directories:
        logger.debug("No needed-for-boot directories to prepare")
        return []

    mounted: list[str] = []
    created: list[str] = []
    try:
        for mount in storage_file_systems(snapshot, directories):
            device = mount.device_path
            if device is None:
                msg = f"File system at {mount.mount_path} has no device or label"
                raise ValueError(msg)
            staged = concat_paths([staging, mount.mount_path])
            if operator.mount_file_system(device, staged, mount.fs_type, boot_mount_options(mount)):
                mounted.append(staged)

        for entry in directories:
            path = concat_paths([staging, entry.source_path])
            if operator.ensure_directory(path, entry.perms):
                created.append(path)
    finally:
        failures = _release_staged(snapshot, operator, mounted)
    if failures:
        raise failures[0]

    logger.info("Prepared %d needed-for-boot directories", len(created))
    return created


def _release_staged(
    snapshot: PersistenceSnapshot, operator: MountOperator, mounted: list[str]
) -> list[UnmountTimeoutError]:
    """Unmount every staged file system, returning the ones left mounted."""
    failures: list[UnmountTimeoutError] = []
    for staged in reversed(mounted):
        try:
            operator.unmount(
                staged,
                snapshot.unmount_retries,
                snapshot.unmount_delay,
                remove_mount_point=True,
            )
        except UnmountTimeoutError as e:
            logger.error("%s", e)
            failures.append(e)
    return failures
