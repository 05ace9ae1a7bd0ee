"""Data models for persistctl.

This module exports the core data structures used throughout the application.
"""

from persistctl.models.config import (
    DirectoryDecl,
    FileDecl,
    FileSystemConfig,
    GroupAccount,
    PermsConfig,
    PersistenceConfig,
    PersistenceFile,
    Settings,
    UserAccount,
    UserScopeConfig,
)
from persistctl.models.entries import (
    BindMountSpec,
    DirectoryEntry,
    DirectoryKind,
    FileEntry,
    LinkMethod,
    MountPoint,
    Permissions,
    PersistenceSnapshot,
    PersistentRoot,
    Scope,
    parse_mode,
)
from persistctl.models.operation import (
    EntryState,
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
    Plan,
)

__all__ = [
    "BindMountSpec",
    "DirectoryDecl",
    "DirectoryEntry",
    "DirectoryKind",
    "EntryState",
    "FileDecl",
    "FileEntry",
    "FileSystemConfig",
    "GroupAccount",
    "LinkMethod",
    "MountPoint",
    "Operation",
    "OperationKind",
    "OperationResult",
    "OperationStatus",
    "PermsConfig",
    "Permissions",
    "PersistenceConfig",
    "PersistenceFile",
    "PersistenceSnapshot",
    "PersistentRoot",
    "Plan",
    "Scope",
    "Settings",
    "UserAccount",
    "UserScopeConfig",
    "parse_mode",
]
