"""Mount operator for persistence primitives.

Creates directories with ownership and mode, bind-mounts (kernel or FUSE)
and symlinks persistent paths onto live paths, and reverses each of these.
Every primitive is idempotent: re-running it on a system where an earlier
run partially or fully succeeded converges on the same state.

Primitives return True when they changed the filesystem (or would have, in
dry-run mode) and False when the desired state already held.
"""

import logging
import os
import shutil
import stat
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from persistctl.core.errors import MountConflictError, UnmountTimeoutError
from persistctl.models.entries import LinkMethod, Permissions
from persistctl.models.operation import ALLOWED_TRANSITIONS, EntryState
from persistctl.mounts.table import MountTable
from persistctl.utils.shell import run_command

logger = logging.getLogger(__name__)

KERNEL_BIND_OPTIONS = ("bind",)
HIDE_OPTION = "x-gvfs-hide"


class MountOperator:
    """Executes persistence primitives against the live filesystem.

    Attributes:
        dry_run: Log what would happen without touching anything.
        states: Lifecycle state per target path.
        created_mount_points: Mount point directories this operator created.
    """

    def __init__(
        self,
        dry_run: bool = False,
        mount_table: Callable[[], MountTable] | None = None,
    ) -> None:
        """Initialize the operator.

        Args:
            dry_run: If True, only log the actions that would be taken.
            mount_table: Reads the current mount table. Defaults to
                ``/proc/self/mountinfo``.
        """
        self.dry_run = dry_run
        self._read_table = mount_table or MountTable.read
        self.states: dict[str, EntryState] = {}
        self.created_mount_points: set[str] = set()

    def state(self, target: str) -> EntryState:
        """Current lifecycle state of a target."""
        return self.states.get(target, EntryState.UNCONFIGURED)

    def table(self) -> MountTable:
        """Read the current mount table."""
        return self._read_table()

    # === Directories ===

    def ensure_directory(
        self,
        path: str,
        perms: Permissions | None = None,
        copy_from: str | None = None,
    ) -> bool:
        """Create a directory if it does not exist.

        Existing directories are left untouched, including their owner and
        mode. A new directory gets ``perms``, or the owner and mode of
        ``copy_from`` when given.

        Args:
            path: Directory to create.
            perms: Owner, group and mode for a new directory.
            copy_from: Directory whose owner and mode a new directory copies.

        Returns:
            True if the directory was (or would be) created.

        Raises:
            NotADirectoryError: If something other than a directory is there.
            OSError: If creating or chowning fails.
        """
        directory = Path(path)
        if directory.is_dir():
            logger.debug("Directory exists: %s", path)
            return False
        if directory.exists() or directory.is_symlink():
            msg = f"{path} exists and is not a directory"
            raise NotADirectoryError(msg)

        if self.dry_run:
            logger.info("Would create directory %s", path)
            return True

        directory.mkdir(parents=True)
        if copy_from is not None:
            source = os.stat(copy_from)
            os.chown(path, source.st_uid, source.st_gid)
            os.chmod(path, stat.S_IMODE(source.st_mode))
        elif perms is not None:
            if perms.user is not None or perms.group is not None:
                shutil.chown(path, perms.user, perms.group)
            # mkdir applies the umask, set the mode explicitly
            os.chmod(path, perms.mode_bits)
        logger.info("Created directory %s", path)
        self._transition(path, EntryState.CREATED)
        return True

    def create_persistent_directory(
        self,
        source: str,
        target: str,
        perms: Permissions,
        storage_only: bool = False,
    ) -> bool:
        """Create a directory in persistent storage and in the live tree.

        The storage side gets ``perms``. A newly created live side copies
        owner and mode from the storage side.

        Args:
            source: Directory in persistent storage.
            target: Directory in the live tree.
            perms: Owner, group and mode for the storage side.
            storage_only: Only create the storage side (symlinked directories).

        Returns:
            True if either side was (or would be) created.
        """
        changed = self.ensure_directory(source, perms)
        if storage_only:
            return changed
        if self.ensure_directory(target, copy_from=source):
            self.created_mount_points.add(target)
            changed = True
        return changed

    # === Mounts ===

    def bind_mount(
        self,
        source: str,
        target: str,
        hide: bool = False,
        fuse: bool = False,
        allow_other: bool = False,
    ) -> bool:
        """Bind-mount ``source`` onto ``target``.

        Does nothing when ``target`` already shows ``source``. Remounts when a
        different source is mounted exactly at ``target``.

        Args:
            source: Directory in persistent storage.
            target: Directory in the live tree.
            hide: Hide the mount from file managers.
            fuse: Use bindfs instead of a kernel bind mount.
            allow_other: Let other users access a FUSE mount.

        Returns:
            True if a mount was (or would be) performed.

        Raises:
            MountConflictError: If something is mounted below ``target``.
            subprocess.CalledProcessError: If mounting fails.
        """
        table = self.table()
        if table.shows_source(target, source):
            logger.debug("%s already shows %s", target, source)
            self._transition(target, EntryState.MOUNTED)
            return False

        below = table.mounts_below(target)
        if below:
            mount_points = ", ".join(entry.mount_point for entry in below)
            raise MountConflictError(
                target, f"something is mounted below it ({mount_points}), not mounting {source}"
            )

        current = table.mounted_at(target)
        if current is not None:
            logger.info("Remounting %s: %s -> %s", target, current.source, source)
            self.states[target] = EntryState.MOUNTED
            self._transition(target, EntryState.REMOUNTING)
            if not self.dry_run:
                self._release(target, current.is_fuse, 1, 0.0)

        if self.dry_run:
            logger.info("Would mount %s on %s", source, target)
            return True

        target_dir = Path(target)
        if not target_dir.exists():
            target_dir.mkdir(parents=True)
            self.created_mount_points.add(target)

        run_command(self._mount_command(source, target, hide, fuse, allow_other)).check()
        logger.info("Mounted %s on %s", source, target)
        self._transition(target, EntryState.MOUNTED)
        return True

    def mount_file_system(
        self,
        device: str,
        mount_point: str,
        fs_type: str = "auto",
        options: list[str] | None = None,
    ) -> bool:
        """Mount a block device, creating the mount point if needed.

        Returns:
            True if the file system was (or would be) mounted.

        Raises:
            subprocess.CalledProcessError: If mounting fails.
        """
        if self.table().is_mounted(mount_point):
            logger.debug("%s is already mounted", mount_point)
            return False
        if self.dry_run:
            logger.info("Would mount %s on %s", device, mount_point)
            return True

        if not Path(mount_point).exists():
            Path(mount_point).mkdir(parents=True)
            self.created_mount_points.add(mount_point)
        command = ["mount", "-t", fs_type, device, mount_point]
        if options:
            command.extend(["-o", ",".join(options)])
        run_command(command).check()
        logger.info("Mounted %s on %s", device, mount_point)
        self._transition(mount_point, EntryState.MOUNTED)
        return True

    def unmount(
        self,
        target: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        fuse: bool = False,
        remove_mount_point: bool = False,
    ) -> bool:
        """Unmount ``target``, falling back to a lazy unmount.

        A regular unmount is attempted up to ``max_retries`` times with
        ``retry_delay`` seconds in between; then a lazy unmount detaches it.

        Args:
            target: Mount point to release.
            max_retries: Regular unmount attempts before the lazy unmount.
            retry_delay: Seconds to wait between attempts.
            fuse: Use fusermount instead of umount.
            remove_mount_point: Remove the mount point afterwards, if this
                operator created it.

        Returns:
            True if something was (or would be) unmounted.

        Raises:
            UnmountTimeoutError: If the lazy unmount fails too.
        """
        if not self.table().is_mounted(target):
            logger.debug("%s is not mounted", target)
            return False

        # Mounted outside this operator, e.g. by an earlier run
        if self.state(target) != EntryState.MOUNTED:
            self.states[target] = EntryState.MOUNTED
        self._transition(target, EntryState.UNMOUNTING)
        if self.dry_run:
            logger.info("Would unmount %s", target)
            return True

        self._release(target, fuse, max_retries, retry_delay)
        self._transition(target, EntryState.UNMOUNTED)

        if remove_mount_point and target in self.created_mount_points:
            self._remove_empty_directory(target)
            self.created_mount_points.discard(target)
        return True

    # === Links ===

    def symlink(self, source: str, target: str) -> bool:
        """Atomically point ``target`` at ``source``.

        An empty directory at ``target`` is removed first.

        Returns:
            True if the link was (or would be) created.

        Raises:
            FileExistsError: If a file, a non-empty directory or a link to
                somewhere else occupies ``target``.
        """
        link = Path(target)
        if link.is_symlink():
            if os.readlink(link) == source:
                logger.debug("%s already links to %s", target, source)
                return False
            msg = f"{target} is a symlink to {os.readlink(link)}, not {source}"
            raise FileExistsError(msg)
        if link.is_dir():
            if any(link.iterdir()):
                msg = f"{target} is a non-empty directory"
                raise FileExistsError(msg)
            if not self.dry_run:
                link.rmdir()
                logger.info("Removed empty directory %s", target)
        elif link.exists():
            msg = f"{target} is an existing file"
            raise FileExistsError(msg)

        if self.dry_run:
            logger.info("Would link %s -> %s", target, source)
            return True

        link.parent.mkdir(parents=True, exist_ok=True)
        tmp_link = link.with_name(f".{link.name}.persistctl-tmp")
        if tmp_link.is_symlink():
            tmp_link.unlink()
        os.symlink(source, tmp_link)
        os.replace(tmp_link, link)
        logger.info("Linked %s -> %s", target, source)
        self._transition(target, EntryState.MOUNTED)
        return True

    def persist_file(self, source: str, target: str, method: LinkMethod) -> bool:
        """Make a persistent file visible at ``target``.

        With ``bind`` the file is bind-mounted when it already exists in
        persistent storage and symlinked otherwise, so it can be created
        through the link. With ``symlink`` it is always linked.

        Raises:
            FileExistsError: If a different file already occupies ``target``.
        """
        if method == LinkMethod.SYMLINK or not Path(source).is_file():
            return self.symlink(source, target)

        table = self.table()
        if table.shows_source(target, source):
            self._transition(target, EntryState.MOUNTED)
            return False

        target_file = Path(target)
        if target_file.is_symlink():
            if os.readlink(target_file) != source:
                msg = f"{target} is a symlink to {os.readlink(target_file)}, not {source}"
                raise FileExistsError(msg)
            # Replace the link left from when the file did not exist yet
            if not self.dry_run:
                target_file.unlink()
        elif target_file.exists() and target_file.stat().st_size > 0:
            msg = f"{target} is an existing file"
            raise FileExistsError(msg)

        if self.dry_run:
            logger.info("Would mount file %s on %s", source, target)
            return True

        target_file.touch(exist_ok=True)
        run_command(["mount", "-o", "bind", source, target]).check()
        logger.info("Mounted file %s on %s", source, target)
        self._transition(target, EntryState.MOUNTED)
        return True

    def unlink(self, target: str, source: str) -> bool:
        """Remove ``target`` if it is a symlink to ``source``.

        Returns:
            True if the link was (or would be) removed.
        """
        link = Path(target)
        if not link.is_symlink() or os.readlink(link) != source:
            logger.debug("%s is not a link to %s", target, source)
            return False
        self._transition(target, EntryState.UNMOUNTING)
        if self.dry_run:
            logger.info("Would remove link %s", target)
            return True
        link.unlink()
        logger.info("Removed link %s", target)
        self._transition(target, EntryState.UNMOUNTED)
        return True

    def cleanup_link_target(
        self, target: str, max_retries: int = 3, retry_delay: float = 1.0
    ) -> bool:
        """Clear a leftover mount and empty directory where a link goes.

        Returns:
            True if anything was (or would be) unmounted or removed.
        """
        changed = False
        mounted = self.table().mounted_at(target)
        if mounted is not None:
            changed = self.unmount(target, max_retries, retry_delay, fuse=mounted.is_fuse)
        path = Path(target)
        if path.is_dir() and not path.is_symlink() and not any(path.iterdir()):
            if self.dry_run:
                logger.info("Would remove empty directory %s", target)
            else:
                self._remove_empty_directory(target)
            changed = True
        return changed

    # === Internals ===

    def _mount_command(
        self, source: str, target: str, hide: bool, fuse: bool, allow_other: bool
    ) -> list[str]:
        if fuse:
            options = [] if allow_other else ["no-allow-other"]
            options.append(f"fsname={source}")
            if hide:
                options.append(HIDE_OPTION)
            return ["bindfs", "-o", ",".join(options), source, target]
        options = list(KERNEL_BIND_OPTIONS)
        if hide:
            options.append(HIDE_OPTION)
        return ["mount", "-o", ",".join(options), source, target]

    def _release(self, target: str, fuse: bool, max_retries: int, retry_delay: float) -> None:
        """Unmount with retries, then lazily.

        A command that times out counts as a failed attempt.

        Raises:
            UnmountTimeoutError: If the lazy unmount fails too.
        """
        regular = ["fusermount", "-u", target] if fuse else ["umount", target]
        lazy = ["fusermount", "-uz", target] if fuse else ["umount", "-l", target]

        for attempt in range(1, max_retries + 1):
            error = self._try_command(regular)
            if error is None:
                logger.debug("Unmounted %s (attempt %d/%d)", target, attempt, max_retries)
                return
            logger.debug(
                "Unmount of %s failed (attempt %d/%d): %s", target, attempt, max_retries, error
            )
            if attempt < max_retries:
                time.sleep(retry_delay)

        logger.warning("Couldn't perform regular unmount of %s. Attempting lazy unmount.", target)
        error = self._try_command(lazy)
        if error is not None:
            logger.error("Lazy unmount of %s failed: %s", target, error)
            raise UnmountTimeoutError(target, max_retries)

    @staticmethod
    def _try_command(args: list[str]) -> str | None:
        """Run a mount tool and return why it failed, or None on success."""
        try:
            result = run_command(args)
        except subprocess.TimeoutExpired as e:
            return f"timed out after {e.timeout} seconds"
        if result.success:
            return None
        return result.stderr.strip()

    def _remove_empty_directory(self, path: str) -> None:
        try:
            Path(path).rmdir()
            logger.info("Removed empty directory %s", path)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)

    def _transition(self, target: str, new_state: EntryState) -> None:
        current = self.state(target)
        if new_state != current and new_state not in ALLOWED_TRANSITIONS[current]:
            logger.debug("Unexpected state change for %s: %s -> %s", target, current, new_state)
        self.states[target] = new_state


def command_failure_detail(error: subprocess.CalledProcessError) -> str:
    """Readable message for a failed mount tool invocation."""
    command = " ".join(str(arg) for arg in error.cmd)
    stderr = (error.stderr or "").strip()
    if stderr:
        return f"{command} failed with exit code {error.returncode}: {stderr}"
    return f"{command} failed with exit code {error.returncode}"
