"""Unit tests for the mount operator.

Directory and link primitives run against tmp_path; mount tools are mocked
through run_command and the mount table is injected.
"""

import logging
import os
import stat
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest
from persistctl.core.errors import MountConflictError, UnmountTimeoutError
from persistctl.models.entries import LinkMethod, Permissions
from persistctl.models.operation import EntryState
from persistctl.mounts.operator import MountOperator, command_failure_detail
from persistctl.mounts.table import MountTable, parse_mountinfo_line
from persistctl.utils.shell import CommandResult

OK = CommandResult(args=(), stdout="", stderr="", returncode=0)
BUSY = CommandResult(args=(), stdout="", stderr="target is busy\n", returncode=32)


def _table(*lines: str) -> MountTable:
    return MountTable([parse_mountinfo_line(line) for line in lines])


def _operator(table: MountTable | None = None, dry_run: bool = False) -> MountOperator:
    current = table or MountTable([])
    return MountOperator(dry_run=dry_run, mount_table=lambda: current)


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestEnsureDirectory:
    """Tests for MountOperator.ensure_directory."""

    def test_creates_with_mode(self, tmp_path: Path) -> None:
        """A new directory gets the requested mode, parents included."""
        target = tmp_path / "a" / "b"
        operator = _operator()

        created = operator.ensure_directory(str(target), Permissions(None, None, "0700"))

        assert created is True
        assert _mode(target) == 0o700
        assert operator.state(str(target)) == EntryState.CREATED

    def test_chowns_when_owner_given(self, tmp_path: Path) -> None:
        """Owner and group are applied to a new directory."""
        target = tmp_path / "owned"

        with patch("persistctl.mounts.operator.shutil.chown") as mock_chown:
            _operator().ensure_directory(str(target), Permissions("alice", "users", "0755"))

        mock_chown.assert_called_once_with(str(target), "alice", "users")

    def test_existing_directory_untouched(self, tmp_path: Path) -> None:
        """An existing directory keeps its mode."""
        target = tmp_path / "existing"
        target.mkdir()
        target.chmod(0o751)

        created = _operator().ensure_directory(str(target), Permissions(None, None, "0700"))

        assert created is False
        assert _mode(target) == 0o751

    def test_copies_owner_and_mode(self, tmp_path: Path) -> None:
        """copy_from transfers mode (and owner) to the new directory."""
        source = tmp_path / "source"
        source.mkdir()
        source.chmod(0o750)
        target = tmp_path / "target"

        _operator().ensure_directory(str(target), copy_from=str(source))

        assert _mode(target) == 0o750
        assert target.stat().st_uid == source.stat().st_uid

    def test_file_in_the_way(self, tmp_path: Path) -> None:
        """A file at the path is an error."""
        target = tmp_path / "file"
        target.write_text("x")

        with pytest.raises(NotADirectoryError):
            _operator().ensure_directory(str(target))

    def test_dry_run(self, tmp_path: Path) -> None:
        """Dry-run reports a change without creating anything."""
        target = tmp_path / "new"

        assert _operator(dry_run=True).ensure_directory(str(target)) is True
        assert not target.exists()


class TestCreatePersistentDirectory:
    """Tests for MountOperator.create_persistent_directory."""

    def test_creates_both_sides(self, tmp_path: Path) -> None:
        """The live side copies the storage side's mode."""
        source = tmp_path / "persist" / "data"
        target = tmp_path / "live" / "data"
        operator = _operator()

        changed = operator.create_persistent_directory(
            str(source), str(target), Permissions(None, None, "0710")
        )

        assert changed is True
        assert _mode(source) == 0o710
        assert _mode(target) == 0o710
        assert str(target) in operator.created_mount_points

    def test_idempotent(self, tmp_path: Path) -> None:
        """A second run changes nothing."""
        source = tmp_path / "persist" / "data"
        target = tmp_path / "live" / "data"
        perms = Permissions(None, None, "0755")
        operator = _operator()
        operator.create_persistent_directory(str(source), str(target), perms)

        assert operator.create_persistent_directory(str(source), str(target), perms) is False

    def test_storage_only(self, tmp_path: Path) -> None:
        """Symlinked directories only exist in storage."""
        source = tmp_path / "persist" / "games"
        target = tmp_path / "live" / "games"

        _operator().create_persistent_directory(
            str(source), str(target), Permissions(None, None, "0755"), storage_only=True
        )

        assert source.is_dir()
        assert not target.exists()


class TestBindMount:
    """Tests for MountOperator.bind_mount."""

    @patch("persistctl.mounts.operator.run_command")
    def test_kernel_bind_mount(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A kernel bind mount is made, creating the target."""
        mock_run.return_value = OK
        source, target = str(tmp_path / "src"), str(tmp_path / "dst")
        operator = _operator()

        assert operator.bind_mount(source, target, hide=True) is True

        mock_run.assert_called_once_with(["mount", "-o", "bind,x-gvfs-hide", source, target])
        assert Path(target).is_dir()
        assert operator.state(target) == EntryState.MOUNTED

    @patch("persistctl.mounts.operator.run_command")
    def test_fuse_bind_mount(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """Session mounts use bindfs without allow_other by default."""
        mock_run.return_value = OK
        source, target = "/persistent/home/alice/Documents", str(tmp_path / "Documents")

        _operator().bind_mount(source, target, fuse=True)

        mock_run.assert_called_once_with(
            ["bindfs", "-o", f"no-allow-other,fsname={source}", source, target]
        )

    @patch("persistctl.mounts.operator.run_command")
    def test_fuse_allow_other(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """allow_other drops the no-allow-other option."""
        mock_run.return_value = OK
        source, target = "/persistent/data", str(tmp_path / "data")

        _operator().bind_mount(source, target, hide=True, fuse=True, allow_other=True)

        mock_run.assert_called_once_with(
            ["bindfs", "-o", f"fsname={source},x-gvfs-hide", source, target]
        )

    @patch("persistctl.mounts.operator.run_command")
    def test_already_mounted(self, mock_run: MagicMock, mountinfo_text: str) -> None:
        """A target already showing the source is left alone."""
        operator = _operator(MountTable.parse(mountinfo_text))

        assert operator.bind_mount("/persist/var/log", "/var/log") is False
        mock_run.assert_not_called()

    @patch("persistctl.mounts.operator.run_command")
    def test_mounted_below_conflicts(self, mock_run: MagicMock, mountinfo_text: str) -> None:
        """Nothing is mounted over existing mounts below the target."""
        operator = _operator(MountTable.parse(mountinfo_text))

        with pytest.raises(MountConflictError, match="mounted below"):
            operator.bind_mount("/persist/home/alice", "/home/alice")
        mock_run.assert_not_called()

    @patch("persistctl.mounts.operator.run_command")
    def test_remounts_different_source(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A different source at the target is unmounted first."""
        mock_run.return_value = OK
        target = tmp_path / "dst"
        target.mkdir()
        operator = _operator(_table(f"60 22 0:60 / {target} rw - tmpfs tmpfs rw"))

        assert operator.bind_mount("/persist/dst", str(target)) is True

        assert mock_run.call_args_list == [
            call(["umount", str(target)]),
            call(["mount", "-o", "bind", "/persist/dst", str(target)]),
        ]
        assert operator.state(str(target)) == EntryState.MOUNTED

    @patch("persistctl.mounts.operator.run_command")
    def test_mount_failure_raises(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A failing mount tool raises CalledProcessError."""
        mock_run.return_value = CommandResult(
            args=("mount",), stdout="", stderr="permission denied", returncode=32
        )

        with pytest.raises(subprocess.CalledProcessError):
            _operator().bind_mount("/persist/x", str(tmp_path / "x"))

    @patch("persistctl.mounts.operator.run_command")
    def test_dry_run(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """Dry-run neither mounts nor creates the target."""
        target = tmp_path / "dst"

        assert _operator(dry_run=True).bind_mount("/persist/dst", str(target)) is True

        mock_run.assert_not_called()
        assert not target.exists()


class TestUnmount:
    """Tests for MountOperator.unmount."""

    @patch("persistctl.mounts.operator.run_command")
    def test_not_mounted(self, mock_run: MagicMock) -> None:
        """Nothing mounted means nothing to do."""
        assert _operator().unmount("/var/log") is False
        mock_run.assert_not_called()

    @patch("persistctl.mounts.operator.time.sleep")
    @patch("persistctl.mounts.operator.run_command")
    def test_retries_then_lazy(
        self,
        mock_run: MagicMock,
        mock_sleep: MagicMock,
        mountinfo_text: str,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Three failed attempts are followed by a lazy unmount."""
        mock_run.side_effect = [BUSY, BUSY, BUSY, OK]
        operator = _operator(MountTable.parse(mountinfo_text))

        with caplog.at_level(logging.WARNING):
            assert operator.unmount("/var/log", max_retries=3, retry_delay=0.5) is True

        assert mock_run.call_args_list == [
            call(["umount", "/var/log"]),
            call(["umount", "/var/log"]),
            call(["umount", "/var/log"]),
            call(["umount", "-l", "/var/log"]),
        ]
        assert mock_sleep.call_args_list == [call(0.5), call(0.5)]
        assert "Attempting lazy unmount" in caplog.text
        assert operator.state("/var/log") == EntryState.UNMOUNTED

    @patch("persistctl.mounts.operator.time.sleep")
    @patch("persistctl.mounts.operator.run_command")
    def test_lazy_failure_raises(
        self, mock_run: MagicMock, mock_sleep: MagicMock, mountinfo_text: str
    ) -> None:
        """A failing lazy unmount raises UnmountTimeoutError."""
        mock_run.return_value = BUSY
        operator = _operator(MountTable.parse(mountinfo_text))

        with pytest.raises(UnmountTimeoutError) as exc_info:
            operator.unmount("/var/log", max_retries=2, retry_delay=0.0)

        assert exc_info.value.attempts == 2
        assert mock_run.call_count == 3

    @patch("persistctl.mounts.operator.time.sleep")
    @patch("persistctl.mounts.operator.run_command")
    def test_timeout_counts_as_failed_attempt(
        self, mock_run: MagicMock, mock_sleep: MagicMock, mountinfo_text: str
    ) -> None:
        """A hung umount is retried and then detached lazily."""
        mock_run.side_effect = [subprocess.TimeoutExpired(["umount"], 60), BUSY, OK]
        operator = _operator(MountTable.parse(mountinfo_text))

        assert operator.unmount("/var/log", max_retries=2, retry_delay=0.0) is True

        assert mock_run.call_args_list[-1] == call(["umount", "-l", "/var/log"])
        assert operator.state("/var/log") == EntryState.UNMOUNTED

    @patch("persistctl.mounts.operator.run_command")
    def test_fuse_uses_fusermount(self, mock_run: MagicMock, mountinfo_text: str) -> None:
        """FUSE mounts are released with fusermount."""
        mock_run.return_value = OK
        operator = _operator(MountTable.parse(mountinfo_text))

        operator.unmount("/home/alice/Documents", fuse=True)

        mock_run.assert_called_once_with(["fusermount", "-u", "/home/alice/Documents"])

    @patch("persistctl.mounts.operator.run_command")
    def test_removes_created_mount_point(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """Mount points created by the operator are removed afterwards."""
        mock_run.return_value = OK
        target = tmp_path / "dst"
        operator = _operator(_table(f"60 22 0:60 / {target} rw - tmpfs tmpfs rw"))
        operator.bind_mount("/persist/dst", str(target))

        operator.unmount(str(target), remove_mount_point=True)

        assert not target.exists()
        assert str(target) not in operator.created_mount_points

    @patch("persistctl.mounts.operator.run_command")
    def test_keeps_foreign_mount_point(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """Mount points not created by the operator stay."""
        mock_run.return_value = OK
        target = tmp_path / "dst"
        target.mkdir()
        operator = _operator(_table(f"60 22 0:60 / {target} rw - tmpfs tmpfs rw"))

        operator.unmount(str(target), remove_mount_point=True)

        assert target.is_dir()


class TestSymlink:
    """Tests for MountOperator.symlink and unlink."""

    def test_creates_link(self, tmp_path: Path) -> None:
        """The target points at the source, parents created."""
        target = tmp_path / "live" / ".screenrc"

        assert _operator().symlink("/persist/.screenrc", str(target)) is True
        assert os.readlink(target) == "/persist/.screenrc"

    def test_same_link_unchanged(self, tmp_path: Path) -> None:
        """An existing correct link is left alone."""
        target = tmp_path / "link"
        target.symlink_to("/persist/x")

        assert _operator().symlink("/persist/x", str(target)) is False

    def test_other_link_conflicts(self, tmp_path: Path) -> None:
        """A link elsewhere is not replaced."""
        target = tmp_path / "link"
        target.symlink_to("/elsewhere")

        with pytest.raises(FileExistsError):
            _operator().symlink("/persist/x", str(target))

    def test_replaces_empty_directory(self, tmp_path: Path) -> None:
        """An empty directory in the way is removed."""
        target = tmp_path / "Games"
        target.mkdir()

        assert _operator().symlink("/persist/Games", str(target)) is True
        assert target.is_symlink()

    def test_non_empty_directory_conflicts(self, tmp_path: Path) -> None:
        """A directory with content is never removed."""
        target = tmp_path / "Games"
        target.mkdir()
        (target / "save").write_text("x")

        with pytest.raises(FileExistsError, match="non-empty"):
            _operator().symlink("/persist/Games", str(target))

    def test_file_conflicts(self, tmp_path: Path) -> None:
        """A regular file is never replaced."""
        target = tmp_path / ".screenrc"
        target.write_text("x")

        with pytest.raises(FileExistsError):
            _operator().symlink("/persist/.screenrc", str(target))

    def test_dry_run(self, tmp_path: Path) -> None:
        """Dry-run leaves the empty directory in place."""
        target = tmp_path / "Games"
        target.mkdir()

        assert _operator(dry_run=True).symlink("/persist/Games", str(target)) is True
        assert target.is_dir()
        assert not target.is_symlink()

    def test_unlink_only_matching(self, tmp_path: Path) -> None:
        """unlink removes only links to the given source."""
        target = tmp_path / "link"
        target.symlink_to("/persist/x")
        operator = _operator()

        assert operator.unlink(str(target), "/persist/y") is False
        assert operator.unlink(str(target), "/persist/x") is True
        assert not target.is_symlink()


class TestPersistFile:
    """Tests for MountOperator.persist_file."""

    @patch("persistctl.mounts.operator.run_command")
    def test_missing_source_is_linked(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A file not yet in storage is symlinked."""
        source = tmp_path / "persist" / "machine-id"
        target = tmp_path / "etc" / "machine-id"

        assert _operator().persist_file(str(source), str(target), LinkMethod.BIND) is True

        assert os.readlink(target) == str(source)
        mock_run.assert_not_called()

    @patch("persistctl.mounts.operator.run_command")
    def test_existing_source_is_bind_mounted(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A stored file is bind-mounted onto an empty placeholder."""
        mock_run.return_value = OK
        source = tmp_path / "machine-id"
        source.write_text("abc\n")
        target = tmp_path / "live-machine-id"

        assert _operator().persist_file(str(source), str(target), LinkMethod.BIND) is True

        assert target.is_file()
        mock_run.assert_called_once_with(["mount", "-o", "bind", str(source), str(target)])

    @patch("persistctl.mounts.operator.run_command")
    def test_replaces_earlier_link(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """The link made while the file was missing gives way to a mount."""
        mock_run.return_value = OK
        source = tmp_path / "machine-id"
        source.write_text("abc\n")
        target = tmp_path / "live-machine-id"
        target.symlink_to(source)

        _operator().persist_file(str(source), str(target), LinkMethod.BIND)

        assert not target.is_symlink()
        mock_run.assert_called_once()

    @patch("persistctl.mounts.operator.run_command")
    def test_existing_content_conflicts(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """A non-empty live file is not mounted over."""
        source = tmp_path / "machine-id"
        source.write_text("abc\n")
        target = tmp_path / "live-machine-id"
        target.write_text("other\n")

        with pytest.raises(FileExistsError):
            _operator().persist_file(str(source), str(target), LinkMethod.BIND)
        mock_run.assert_not_called()

    @patch("persistctl.mounts.operator.run_command")
    def test_symlink_method(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """The symlink method always links."""
        source = tmp_path / "machine-id"
        source.write_text("abc\n")
        target = tmp_path / "live-machine-id"

        _operator().persist_file(str(source), str(target), LinkMethod.SYMLINK)

        assert target.is_symlink()
        mock_run.assert_not_called()


class TestCleanupLinkTarget:
    """Tests for MountOperator.cleanup_link_target."""

    def test_removes_empty_directory(self, tmp_path: Path) -> None:
        """An empty leftover directory is removed."""
        target = tmp_path / "Games"
        target.mkdir()

        assert _operator().cleanup_link_target(str(target)) is True
        assert not target.exists()

    def test_keeps_non_empty_directory(self, tmp_path: Path) -> None:
        """A directory with content is kept."""
        target = tmp_path / "Games"
        target.mkdir()
        (target / "save").write_text("x")

        assert _operator().cleanup_link_target(str(target)) is False
        assert target.is_dir()

    @patch("persistctl.mounts.operator.run_command")
    def test_unmounts_leftover_fuse_mount(self, mock_run: MagicMock, mountinfo_text: str) -> None:
        """A leftover bind mount is released with the matching tool."""
        mock_run.return_value = OK
        operator = _operator(MountTable.parse(mountinfo_text))

        assert operator.cleanup_link_target("/home/alice/Documents", 1, 0.0) is True
        mock_run.assert_called_once_with(["fusermount", "-u", "/home/alice/Documents"])


class TestCommandFailureDetail:
    """Tests for command_failure_detail function."""

    def test_with_stderr(self) -> None:
        """stderr is appended to the message."""
        error = subprocess.CalledProcessError(1, ["umount", "/x"], stderr="busy\n")

        assert command_failure_detail(error) == "umount /x failed with exit code 1: busy"

    def test_without_stderr(self) -> None:
        """Without stderr only the exit code is reported."""
        error = subprocess.CalledProcessError(2, ["bindfs"])

        assert command_failure_detail(error) == "bindfs failed with exit code 2"
