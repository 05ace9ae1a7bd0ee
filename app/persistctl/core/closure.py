"""Directory closure computation.

Derives every directory that must exist before any bind mount or link can
be created: declared directories, parents of declared files, home
directories and all their ancestors. Each live path appears exactly once.
When several sources produce the same path, the one with the lowest rank
wins:

0. declared directories
1. parent directories of declared files
2. home boundaries (system scope)
3. ancestors of home boundaries, forced to home-parent permissions
4. implied ancestors of declared directories and file parents

The result is sorted by live path. A path's ancestors are string prefixes
of it, so a plain lexicographic sort places every ancestor first.
"""

import dataclasses
from collections.abc import Iterable

from persistctl.core.pathops import concat_paths, parents_of
from persistctl.models.entries import (
    DirectoryEntry,
    DirectoryKind,
    PersistenceSnapshot,
    Scope,
)

RANK_DECLARED = 0
RANK_FILE_PARENT = 1
RANK_HOME = 2
RANK_HOME_PARENT = 3
RANK_IMPLIED = 4


class _Candidates:
    """Keeps the lowest-ranked entry per live path."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[int, DirectoryEntry]] = {}

    def add(self, entry: DirectoryEntry, rank: int) -> None:
        current = self._entries.get(entry.live_path)
        if current is None or rank < current[0]:
            self._entries[entry.live_path] = (rank, entry)

    def add_all(self, entries: Iterable[DirectoryEntry], rank: int) -> None:
        for entry in entries:
            self.add(entry, rank)

    def entries(self) -> list[DirectoryEntry]:
        return [entry for _, entry in self._entries.values()]


def _home_boundary(entry: DirectoryEntry, home: str) -> DirectoryEntry:
    """Home directory entry of a user-scope entry, owned by the user."""
    return DirectoryEntry(
        live_path=home,
        storage_relative=home,
        root=entry.root,
        perms=entry.default_perms,
        default_perms=entry.default_perms,
        kind=DirectoryKind.HOME_BOUNDARY,
        relative_path=home,
        site=entry.site,
    )


def _home_parents(home: DirectoryEntry, snapshot: PersistenceSnapshot) -> list[DirectoryEntry]:
    """Ancestors of a home directory, all with home-parent permissions."""
    return [
        DirectoryEntry(
            live_path=path,
            storage_relative=path,
            root=home.root,
            perms=snapshot.home_parent_perms,
            default_perms=snapshot.home_parent_perms,
            relative_path=path,
            site=home.site,
        )
        for path in parents_of(home.live_path)
    ]


def _implied_parents(entry: DirectoryEntry) -> list[DirectoryEntry]:
    """Ancestors of an entry up to its scope root, with its default permissions.

    The storage side may be longer than the live side (a session root with
    ``remove_prefix_directory``); ancestors are matched from the end.
    """
    live_parents = parents_of(entry.relative_path)
    if not live_parents:
        return []
    storage_parents = parents_of(entry.storage_relative)[-len(live_parents) :]
    return [
        DirectoryEntry(
            live_path=concat_paths([entry.home, relative]) if entry.home else relative,
            storage_relative=storage_relative,
            root=entry.root,
            perms=entry.default_perms,
            default_perms=entry.default_perms,
            home=entry.home,
            relative_path=relative,
            site=entry.site,
        )
        for relative, storage_relative in zip(live_parents, storage_parents, strict=True)
    ]


def build_directory_closure(snapshot: PersistenceSnapshot) -> list[DirectoryEntry]:
    """Compute the ordered set of directories to create.

    Args:
        snapshot: Normalized configuration.

    Returns:
        Directory entries sorted so that every ancestor precedes its
        descendants, ties broken lexicographically.
    """
    candidates = _Candidates()
    declared = list(snapshot.directories)
    file_parents = [file_entry.parent for file_entry in snapshot.files]
    candidates.add_all(declared, RANK_DECLARED)
    candidates.add_all(file_parents, RANK_FILE_PARENT)

    homes: set[str] = set()
    if snapshot.scope == Scope.SYSTEM:
        for entry in [*declared, *file_parents]:
            if entry.home is None:
                continue
            home = _home_boundary(entry, entry.home)
            homes.add(home.live_path)
            candidates.add(home, RANK_HOME)
            candidates.add_all(_home_parents(home, snapshot), RANK_HOME_PARENT)

    for entry in [*declared, *file_parents]:
        candidates.add_all(_implied_parents(entry), RANK_IMPLIED)

    closure: list[DirectoryEntry] = []
    for entry in candidates.entries():
        if entry.live_path in homes and not entry.is_home_boundary:
            # A declared directory or file parent that is itself a home
            entry = dataclasses.replace(
                entry,
                kind=DirectoryKind.HOME_BOUNDARY,
                home=None,
                relative_path=entry.live_path,
            )
        closure.append(entry)

    return sorted(closure, key=lambda entry: entry.live_path)


def schedulable_directories(closure: Iterable[DirectoryEntry]) -> list[DirectoryEntry]:
    """Drop scope-root entries, which are never scheduled on their own.

    A scope root (``.`` inside a home, ``/`` at root level) is the root of a
    persistent path itself and exists by the time anything inside it runs.
    """
    return [entry for entry in closure if not entry.is_scope_root]
