"""Pure path helpers for planning persistence operations.

All functions work on POSIX path strings and never touch the filesystem.
Ancestor checks compare whole path segments, so ``/persist`` is never
considered a parent of ``/persistent``.
"""

import re
from collections.abc import Iterable

_SYSTEMD_SAFE_CHARS = re.compile(r"[A-Za-z0-9:_.]")


def split_path(paths: str | Iterable[str]) -> list[str]:
    """Split one or more paths into their non-empty segments.

    ``.`` segments are dropped, ``..`` is kept verbatim.

    Args:
        paths: A single path or an iterable of paths to split in order.

    Returns:
        List of path segments.
    """
    if isinstance(paths, str):
        paths = [paths]
    segments: list[str] = []
    for path in paths:
        segments.extend(part for part in path.split("/") if part not in ("", "."))
    return segments


def concat_paths(paths: Iterable[str]) -> str:
    """Join paths into one, collapsing duplicate separators.

    The result is absolute when the first path is absolute. Joining only
    relative empty segments yields ``"."``.

    Args:
        paths: Paths to join, in order.

    Returns:
        The joined path.
    """
    items = list(paths)
    absolute = bool(items) and items[0].startswith("/")
    joined = "/".join(split_path(items))
    if absolute:
        return "/" + joined
    return joined or "."


def dir_of(path: str) -> str:
    """Return the parent directory of a path.

    Args:
        path: Absolute or relative path.

    Returns:
        ``"/"`` for top-level absolute paths, ``"."`` for single-segment
        relative paths, the parent path otherwise.
    """
    segments = split_path(path)
    absolute = path.startswith("/")
    if len(segments) <= 1:
        return "/" if absolute else "."
    parent = "/".join(segments[:-1])
    return "/" + parent if absolute else parent


def parents_of(path: str) -> list[str]:
    """List every proper ancestor of a path, shortest first.

    The filesystem root and the relative root ``.`` are never included.

    Args:
        path: Absolute or relative path.

    Returns:
        Ancestor paths ordered from the outermost to the direct parent.
    """
    segments = split_path(path)
    prefix = "/" if path.startswith("/") else ""
    return [prefix + "/".join(segments[:i]) for i in range(1, len(segments))]


def is_path_prefix(prefix: str, path: str) -> bool:
    """Check whether ``prefix`` is ``path`` or one of its ancestors."""
    if prefix.startswith("/") != path.startswith("/"):
        return False
    prefix_segments = split_path(prefix)
    path_segments = split_path(path)
    return path_segments[: len(prefix_segments)] == prefix_segments


def is_parent_of(parent: str, child: str) -> bool:
    """Check whether ``parent`` is a strict ancestor of ``child``."""
    return is_path_prefix(parent, child) and len(split_path(parent)) < len(split_path(child))


def remove_prefix_directory(path: str) -> str:
    """Drop the first segment of a relative path.

    ``"screen/.screenrc"`` becomes ``".screenrc"``.
    """
    return concat_paths(split_path(path)[1:])


def escape_systemd_path(path: str) -> str:
    """Escape a path the way ``systemd-escape --path`` does.

    Examples:
        >>> escape_systemd_path("/var/log")
        'var-log'
        >>> escape_systemd_path("/")
        '-'
    """
    segments = split_path(path)
    if not segments:
        return "-"
    escaped: list[str] = []
    for index, char in enumerate("/".join(segments)):
        if char == "/":
            escaped.append("-")
        elif _SYSTEMD_SAFE_CHARS.match(char) and not (index == 0 and char == "."):
            escaped.append(char)
        else:
            escaped.extend(f"\\x{byte:02x}" for byte in char.encode())
    return "".join(escaped)
