"""Pytest configuration and shared fixtures.

This module contains fixtures used across all test modules.
"""

from pathlib import Path
from typing import Any

import pytest
import tomli_w
from persistctl.core.config import parse_config
from persistctl.core.normalize import normalize_config
from persistctl.models.config import PersistenceFile
from persistctl.models.entries import PersistenceSnapshot


@pytest.fixture
def system_config_data() -> dict[str, Any]:
    """System-scope configuration with a root-level and a per-user scope."""
    return {
        "users": {"alice": {"home": "/home/alice", "uid": 1000}},
        "file_systems": [
            {"mount_point": "/", "device": "none", "fs_type": "tmpfs"},
            {
                "mount_point": "/persist",
                "device": "/dev/sda2",
                "fs_type": "ext4",
                "needed_for_boot": True,
            },
        ],
        "persistence": {
            "/persist": {
                "hide_mounts": True,
                "directories": [
                    "/var/log",
                    {
                        "directory": "/var/lib/colord",
                        "user": "colord",
                        "group": "colord",
                        "mode": "u=rwx,g=rx,o=",
                    },
                ],
                "files": ["/etc/machine-id"],
                "users": {
                    "alice": {
                        "directories": [{"directory": ".ssh", "mode": "0700"}, "Documents"],
                        "files": [".screenrc"],
                    },
                },
            },
        },
    }


@pytest.fixture
def session_config_data() -> dict[str, Any]:
    """Session-scope configuration for alice."""
    return {
        "settings": {"scope": "session", "user": "alice", "home": "/home/alice"},
        "persistence": {
            "/persistent/home/alice": {
                "allow_other": False,
                "directories": [
                    "Documents",
                    {"directory": ".local/share/keyrings", "mode": "0700"},
                    {"directory": "Games", "method": "symlink"},
                ],
                "files": [".screenrc"],
            },
        },
    }


@pytest.fixture
def system_config(system_config_data: dict[str, Any]) -> PersistenceFile:
    """Validated system-scope configuration."""
    return parse_config(system_config_data)


@pytest.fixture
def session_config(session_config_data: dict[str, Any]) -> PersistenceFile:
    """Validated session-scope configuration."""
    return parse_config(session_config_data)


@pytest.fixture
def system_snapshot(system_config: PersistenceFile) -> PersistenceSnapshot:
    """Normalized system-scope configuration."""
    return normalize_config(system_config)


@pytest.fixture
def session_snapshot(session_config: PersistenceFile) -> PersistenceSnapshot:
    """Normalized session-scope configuration."""
    return normalize_config(session_config)


@pytest.fixture
def write_config(tmp_path: Path):
    """Write configuration data to a TOML file and return its path."""

    def _write(data: dict[str, Any], name: str = "persistence.toml") -> Path:
        path = tmp_path / name
        with open(path, "wb") as f:
            tomli_w.dump(data, f)
        return path

    return _write


@pytest.fixture
def mountinfo_text() -> str:
    """Sample /proc/self/mountinfo content.

    ``/persist`` is an ext4 volume; ``/var/log`` is a kernel bind mount of
    ``/persist/var/log``; ``/home/alice/Documents`` is a bindfs mount.
    """
    return "\n".join(
        [
            "22 1 0:21 / / rw,relatime shared:1 - tmpfs none rw,mode=755",
            "25 22 8:2 / /persist rw,relatime shared:2 - ext4 /dev/sda2 rw",
            "31 22 8:2 /var/log /var/log rw,relatime shared:2 - ext4 /dev/sda2 rw",
            "40 22 0:45 / /home/alice/Documents rw,nosuid,nodev shared:20 - "
            "fuse.bindfs /persistent/home/alice/Documents rw,user_id=1000,group_id=100",
            r"41 22 0:46 / /mnt/with\040space rw shared:21 - tmpfs tmpfs rw",
        ]
    )
