"""Unit tests for plan execution.

The MountOperator is mostly mocked; these tests cover how outcomes propagate
through a plan.
"""

import subprocess
from unittest.mock import MagicMock, call, patch

import pytest
from persistctl.core.errors import MountConflictError, UnmountTimeoutError
from persistctl.core.executor import SKIPPED_ABORTED, PlanRunner, has_failures
from persistctl.core.plan import build_plan
from persistctl.models.entries import LinkMethod, PersistenceSnapshot
from persistctl.models.operation import OperationStatus, Plan
from persistctl.mounts.operator import MountOperator
from persistctl.mounts.table import MountTable


@pytest.fixture
def operator() -> MagicMock:
    """Operator whose primitives all report a change."""
    mock = MagicMock(spec=MountOperator)
    mock.dry_run = False
    mock.create_persistent_directory.return_value = True
    mock.bind_mount.return_value = True
    mock.persist_file.return_value = True
    mock.symlink.return_value = True
    mock.cleanup_link_target.return_value = False
    mock.unmount.return_value = True
    mock.unlink.return_value = True
    return mock


@pytest.fixture
def system_plan(system_snapshot: PersistenceSnapshot) -> Plan:
    """Plan for the system-scope fixture."""
    return build_plan(system_snapshot)


@pytest.fixture
def session_plan(session_snapshot: PersistenceSnapshot) -> Plan:
    """Plan for the session-scope fixture."""
    return build_plan(session_snapshot)


def _statuses(results) -> dict[str, OperationStatus]:
    return {result.operation.id: result.status for result in results}


class TestApply:
    """Tests for PlanRunner.apply."""

    def test_all_succeed(self, operator: MagicMock, system_plan: Plan) -> None:
        """Every operation runs once, in plan order."""
        results = PlanRunner(operator).apply(system_plan)

        assert [r.operation.id for r in results] == [op.id for op in system_plan.operations]
        assert all(r.status == OperationStatus.SUCCESS for r in results)
        assert has_failures(results) is False

    def test_unchanged(self, operator: MagicMock, system_plan: Plan) -> None:
        """Primitives reporting no change yield UNCHANGED."""
        operator.create_persistent_directory.return_value = False
        operator.bind_mount.return_value = False
        operator.persist_file.return_value = False

        results = PlanRunner(operator).apply(system_plan)

        assert {r.status for r in results} == {OperationStatus.UNCHANGED}

    def test_dry_run_reports_commands(self, operator: MagicMock, system_plan: Plan) -> None:
        """Dry-run results carry the command that would run."""
        operator.dry_run = True

        results = PlanRunner(operator).apply(system_plan)

        assert results[0].status == OperationStatus.DRY_RUN
        assert results[0].message is not None
        assert results[0].message.startswith("persistctl mkdir /persist/etc /etc")

    def test_dispatches_primitives(self, operator: MagicMock, system_plan: Plan) -> None:
        """Each kind is executed by its primitive."""
        PlanRunner(operator).apply(system_plan)

        colord = system_plan.get("mkdir:/var/lib/colord")
        assert colord is not None
        operator.create_persistent_directory.assert_any_call(
            "/persist/var/lib/colord", "/var/lib/colord", colord.entry.perms, storage_only=False
        )
        operator.bind_mount.assert_any_call(
            "/persist/var/log", "/var/log", hide=True, fuse=False, allow_other=False
        )
        operator.persist_file.assert_any_call(
            "/persist/etc/machine-id", "/etc/machine-id", LinkMethod.BIND
        )

    def test_failure_skips_dependents_only(self, operator: MagicMock, system_plan: Plan) -> None:
        """Dependents of a failure are skipped, independent paths continue."""

        def create(source: str, target: str, perms, storage_only: bool = False) -> bool:
            if target == "/home/alice":
                raise PermissionError("permission denied")
            return True

        operator.create_persistent_directory.side_effect = create

        results = PlanRunner(operator).apply(system_plan)
        statuses = _statuses(results)

        assert statuses["mkdir:/home/alice"] == OperationStatus.FAILED
        for dependent in (
            "bindmount:/home/alice/.screenrc",
            "mkdir:/home/alice/.ssh",
            "bindmount:/home/alice/.ssh",
            "mkdir:/home/alice/Documents",
            "bindmount:/home/alice/Documents",
        ):
            assert statuses[dependent] == OperationStatus.SKIPPED
        assert statuses["bindmount:/var/log"] == OperationStatus.SUCCESS
        assert statuses["mkdir:/home"] == OperationStatus.SUCCESS

        skipped = next(r for r in results if r.operation.id == "bindmount:/home/alice/.ssh")
        assert skipped.error is not None
        assert "prerequisite failure" in skipped.error
        assert has_failures(results) is True

    def test_conflict(self, operator: MagicMock, system_plan: Plan) -> None:
        """Something mounted below a target is a conflict."""
        operator.bind_mount.side_effect = MountConflictError("/var/log", "mounted below")

        statuses = _statuses(PlanRunner(operator).apply(system_plan))

        assert statuses["bindmount:/var/log"] == OperationStatus.CONFLICT

    def test_command_failure_detail(self, operator: MagicMock, system_plan: Plan) -> None:
        """A failing mount tool is reported with its stderr."""
        operator.persist_file.side_effect = subprocess.CalledProcessError(
            32, ["mount", "-o", "bind"], stderr="mount: permission denied\n"
        )

        results = PlanRunner(operator).apply(system_plan)
        result = next(r for r in results if r.operation.id == "bindmount:/etc/machine-id")

        assert result.status == OperationStatus.FAILED
        assert result.error == "mount -o bind failed with exit code 32: mount: permission denied"

    def test_fail_fast(self, operator: MagicMock, system_plan: Plan) -> None:
        """With fail_fast everything after the first failure is skipped."""
        operator.create_persistent_directory.side_effect = OSError("read-only file system")

        results = PlanRunner(operator).apply(system_plan, fail_fast=True)

        assert results[0].status == OperationStatus.FAILED
        assert all(r.status == OperationStatus.SKIPPED for r in results[1:])
        assert results[-1].error == SKIPPED_ABORTED
        operator.create_persistent_directory.assert_called_once()

    def test_session_failure_unmounts_made_mounts(
        self, operator: MagicMock, session_plan: Plan
    ) -> None:
        """Mounts made by a failing session pass are released in reverse."""

        def symlink(source: str, target: str) -> bool:
            if target == "/home/alice/Games":
                raise FileExistsError(f"{target} is a non-empty directory")
            return True

        operator.symlink.side_effect = symlink

        results = PlanRunner(operator, max_retries=2, retry_delay=0.0).apply(session_plan)

        assert _statuses(results)["symlink:/home/alice/Games"] == OperationStatus.CONFLICT
        assert operator.unmount.call_args_list == [
            call("/home/alice/Documents", 2, 0.0, fuse=True),
            call("/home/alice/.local/share/keyrings", 2, 0.0, fuse=True),
        ]

    def test_session_rollback_tolerates_unmount_timeout(
        self, operator: MagicMock, session_plan: Plan
    ) -> None:
        """An unmount timeout during rollback does not raise."""
        operator.symlink.side_effect = FileExistsError("in the way")
        operator.unmount.side_effect = UnmountTimeoutError("/home/alice/Documents", 3)

        results = PlanRunner(operator).apply(session_plan)

        assert has_failures(results) is True
        assert operator.unmount.call_count == 2

    def test_system_failure_keeps_mounts(self, operator: MagicMock, system_plan: Plan) -> None:
        """System passes do not roll back mounts."""
        operator.persist_file.side_effect = OSError("busy")

        PlanRunner(operator).apply(system_plan)

        operator.unmount.assert_not_called()

    def test_session_directory_symlink_cleans_target(
        self, operator: MagicMock, session_plan: Plan
    ) -> None:
        """A session directory link first clears a leftover mount."""
        PlanRunner(operator, max_retries=5, retry_delay=0.5).apply(session_plan)

        operator.cleanup_link_target.assert_called_once_with("/home/alice/Games", 5, 0.5)
        operator.create_persistent_directory.assert_any_call(
            "/persistent/home/alice/Games",
            "/home/alice/Games",
            session_plan.get("mkdir:/home/alice/Games").entry.perms,
            storage_only=True,
        )


class TestTeardown:
    """Tests for PlanRunner.teardown."""

    def test_reverse_order_of_links(self, operator: MagicMock, session_plan: Plan) -> None:
        """Links are released in reverse plan order; mkdirs are left alone."""
        results = PlanRunner(operator, max_retries=1, retry_delay=0.0).teardown(session_plan)

        assert [r.operation.id for r in results] == [
            "symlink:/home/alice/Games",
            "bindmount:/home/alice/Documents",
            "symlink:/home/alice/.screenrc",
            "bindmount:/home/alice/.local/share/keyrings",
        ]
        operator.unmount.assert_any_call(
            "/home/alice/Documents", 1, 0.0, fuse=True, remove_mount_point=True
        )
        operator.unlink.assert_any_call("/home/alice/Games", "/persistent/home/alice/Games")
        operator.create_persistent_directory.assert_not_called()

    def test_file_falls_back_to_unlink(self, operator: MagicMock, system_plan: Plan) -> None:
        """An unmounted file target is unlinked instead."""
        operator.unmount.return_value = False

        PlanRunner(operator).teardown(system_plan)

        operator.unlink.assert_any_call("/etc/machine-id", "/persist/etc/machine-id")

    def test_continues_after_errors(self, operator: MagicMock, system_plan: Plan) -> None:
        """Teardown never stops early."""
        operator.unmount.side_effect = UnmountTimeoutError("/var/log", 3)

        results = PlanRunner(operator).teardown(system_plan)

        assert len(results) == len(system_plan.link_operations())
        assert all(r.status == OperationStatus.FAILED for r in results)

    @patch("persistctl.mounts.operator.time.sleep")
    @patch("persistctl.mounts.operator.run_command")
    def test_hung_unmount_tool(
        self, mock_run: MagicMock, mock_sleep: MagicMock, system_plan: Plan
    ) -> None:
        """A timed-out umount fails its operation and teardown goes on."""
        mock_run.side_effect = subprocess.TimeoutExpired(["umount"], 60)
        table = MagicMock(spec=MountTable)
        table.is_mounted.return_value = True
        runner = PlanRunner(MountOperator(mount_table=lambda: table), max_retries=2)

        results = runner.teardown(system_plan)

        assert len(results) == len(system_plan.link_operations())
        assert all(r.status == OperationStatus.FAILED for r in results)
        # Two regular attempts and one lazy attempt per target
        assert mock_run.call_count == 3 * len(results)
