"""Unit tests for plan and fstab commands."""

import json
from typing import Any
from unittest.mock import patch

from persistctl.cli.main import app
from persistctl.mounts.table import MountTable
from typer.testing import CliRunner

runner = CliRunner()


class TestPlanCommand:
    """Tests for the plan command."""

    def test_json_output(self, write_config, system_config_data: dict[str, Any]) -> None:
        """JSON output lists every operation in order."""
        path = write_config(system_config_data)

        result = runner.invoke(app, ["--config", str(path), "plan", "--format", "json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["scope"] == "system"
        assert len(data["operations"]) == 15
        first = data["operations"][0]
        assert first["id"] == "mkdir:/etc"
        assert first["after_mounts"] == ["/persist", "/"]

    def test_table_output(self, write_config, session_config_data: dict[str, Any]) -> None:
        """The table output carries a title."""
        path = write_config(session_config_data)

        result = runner.invoke(app, ["--config", str(path), "plan"])

        assert result.exit_code == 0
        assert "Persistence Plan" in result.stdout

    def test_nothing_to_persist(self, write_config) -> None:
        """An empty configuration has nothing to show."""
        path = write_config({"persistence": {}})

        result = runner.invoke(app, ["--config", str(path), "plan"])

        assert result.exit_code == 0
        assert "Nothing to persist." in result.output

    def test_live_mounts(
        self, write_config, system_config_data: dict[str, Any], mountinfo_text: str
    ) -> None:
        """--live-mounts resolves mounts from the host mount table."""
        del system_config_data["file_systems"]
        path = write_config(system_config_data)

        with patch.object(MountTable, "read", return_value=MountTable.parse(mountinfo_text)):
            result = runner.invoke(
                app, ["--config", str(path), "plan", "--format", "json", "--live-mounts"]
            )

        assert result.exit_code == 0
        operations = {op["id"]: op for op in json.loads(result.stdout)["operations"]}
        assert operations["mkdir:/etc"]["after_mounts"] == ["/persist", "/"]

    def test_unreadable_mount_table(
        self, write_config, system_config_data: dict[str, Any]
    ) -> None:
        """A mount table that cannot be read exits with 1."""
        path = write_config(system_config_data)

        with patch.object(MountTable, "read", side_effect=OSError("no procfs")):
            result = runner.invoke(app, ["--config", str(path), "plan", "--live-mounts"])

        assert result.exit_code == 1
        assert "Failed to read the mount table" in result.output


class TestFstabCommand:
    """Tests for the fstab command."""

    def test_system_lines(self, write_config, system_config_data: dict[str, Any]) -> None:
        """Directory bind mounts are printed as fstab lines."""
        path = write_config(system_config_data)

        result = runner.invoke(app, ["--config", str(path), "fstab"])

        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert "/persist/var/log /var/log none bind,X-fstrim.notrim,x-gvfs-hide 0 0" in lines
        assert all(" none bind" in line for line in lines)

    def test_session_scope_rejected(
        self, write_config, session_config_data: dict[str, Any]
    ) -> None:
        """Session scope has no fstab lines."""
        path = write_config(session_config_data)

        result = runner.invoke(app, ["--config", str(path), "fstab"])

        assert result.exit_code == 1
        assert "only available in system scope" in result.output
