"""Configuration file I/O operations.

This module provides functions for loading and saving persistence
configuration files in TOML format with validation using Pydantic models.
"""

import tomllib
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import ValidationError

from persistctl.core.paths import get_config_path
from persistctl.models.config import PersistenceFile


class ConfigError(Exception):
    """Base exception for configuration file errors."""


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file is not found."""


class ConfigParseError(ConfigError):
    """Raised when the configuration file cannot be parsed."""


class ConfigValidationError(ConfigError):
    """Raised when the configuration content is invalid."""


def load_config(path: Path | None = None) -> PersistenceFile:
    """Load and validate a persistence configuration from a TOML file.

    Args:
        path: Path to the configuration file. If None, uses the default path.

    Returns:
        Validated PersistenceFile object.

    Raises:
        ConfigNotFoundError: If the configuration file doesn't exist.
        ConfigParseError: If the TOML syntax is invalid.
        ConfigValidationError: If the content doesn't match the schema.
    """
    config_path = path or get_config_path()

    if not config_path.exists():
        raise ConfigNotFoundError(f"Configuration not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Invalid TOML syntax: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read configuration: {e}") from e

    return parse_config(data)


def parse_config(data: dict[str, Any]) -> PersistenceFile:
    """Validate already-parsed configuration data.

    Args:
        data: Dictionary as produced by tomllib.

    Returns:
        Validated PersistenceFile object.

    Raises:
        ConfigValidationError: If the content doesn't match the schema.
    """
    try:
        return PersistenceFile.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration content: {e}") from e


def save_config(config: PersistenceFile, path: Path | None = None) -> Path:
    """Save a configuration to a TOML file.

    The file is written atomically by first writing to a temporary file
    in the same directory and then using os.replace() for atomic rename.
    The temporary file is cleaned up on failure.

    Args:
        config: The PersistenceFile object to save.
        path: Path to save to. If None, uses the default path.

    Returns:
        Path where the configuration was saved.

    Raises:
        ConfigError: If the file cannot be written.
    """
    import os
    from tempfile import NamedTemporaryFile

    config_path = path or get_config_path()

    # Ensure parent directory exists
    config_path.parent.mkdir(parents=True, exist_ok=True)

    # TOML has no null, drop unset fields
    data = config.model_dump(mode="json", exclude_none=True)

    tmp_path: Path | None = None
    try:
        with NamedTemporaryFile(
            mode="wb",
            dir=config_path.parent,
            delete=False,
            suffix=".tmp",
        ) as f:
            tmp_path = Path(f.name)
            tomli_w.dump(data, f)
        os.replace(str(tmp_path), str(config_path))
    except OSError as e:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
        raise ConfigError(f"Failed to write configuration: {e}") from e

    return config_path


def config_exists(path: Path | None = None) -> bool:
    """Check if a configuration file exists.

    Args:
        path: Path to check. If None, uses the default path.

    Returns:
        True if the configuration file exists, False otherwise.
    """
    config_path = path or get_config_path()
    return config_path.exists()


def require_config(config_path: Path | None = None) -> PersistenceFile:
    """Load configuration or exit with helpful error message.

    This is a convenience wrapper around load_config() that handles
    common error cases by printing user-friendly messages and exiting.

    Args:
        config_path: Optional custom configuration path.

    Returns:
        Loaded and validated PersistenceFile.

    Raises:
        typer.Exit: If the configuration cannot be loaded.
    """
    import typer

    from persistctl.utils.formatting import print_error, print_info

    path = config_path or get_config_path()
    try:
        return load_config(path)
    except ConfigNotFoundError as e:
        print_error(f"Configuration not found: {path}")
        print_info("Run 'persistctl init' to create a starter configuration.")
        raise typer.Exit(code=1) from e
    except ConfigError as e:
        print_error(f"Failed to load configuration: {e}")
        raise typer.Exit(code=1) from e
