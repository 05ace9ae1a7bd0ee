"""Configuration file locations for persistctl.

System scope reads /etc/persistctl/persistence.toml. Session scope follows
the XDG Base Directory Specification (~/.config/persistctl/).
"""

import os
from pathlib import Path

# Application identifier for directory naming
APP_NAME = "persistctl"

CONFIG_FILENAME = "persistence.toml"

# Environment variable overriding the configuration file location
CONFIG_ENV_VAR = "PERSISTCTL_CONFIG"

SYSTEM_CONFIG_DIR = Path("/etc") / APP_NAME


def _get_xdg_dir(env_var: str, default_subdir: str) -> Path:
    """Get XDG directory respecting environment variable override.

    Args:
        env_var: XDG environment variable name (e.g., "XDG_CONFIG_HOME").
        default_subdir: Default subdirectory under home (e.g., ".config").

    Returns:
        Path to the application-specific directory.
    """
    base = os.environ.get(env_var)
    if base:
        return Path(base) / APP_NAME
    return Path.home() / default_subdir / APP_NAME


def get_user_config_dir() -> Path:
    """Get the per-user configuration directory path.

    Returns:
        Path to ~/.config/persistctl/ (or XDG_CONFIG_HOME/persistctl/).
    """
    return _get_xdg_dir("XDG_CONFIG_HOME", ".config")


def get_config_path() -> Path:
    """Get the default configuration file path.

    Priority:
    1. ``$PERSISTCTL_CONFIG``
    2. /etc/persistctl/persistence.toml when running as root
    3. ~/.config/persistctl/persistence.toml otherwise

    Returns:
        Path to the configuration file.
    """
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    if os.geteuid() == 0:
        return SYSTEM_CONFIG_DIR / CONFIG_FILENAME
    return get_user_config_dir() / CONFIG_FILENAME
