"""Configuration models for declarative persistence.

This module defines the Pydantic models representing the persistence.toml
structure: persistent storage roots, the files and directories stored in
them, per-user scopes and the file systems they live on.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Type alias for the environment the configuration is applied in
ScopeType = Literal["system", "session"]


class PermsConfig(BaseModel):
    """Ownership and mode for a directory, each field optional.

    Unset fields are inherited from the enclosing default layer.

    Attributes:
        user: Owning user name.
        group: Owning group name.
        mode: Octal ("0755") or symbolic ("u=rwx,g=rx,o=") mode.
    """

    model_config = ConfigDict(extra="forbid")

    user: Annotated[str | None, Field(description="Owning user")] = None
    group: Annotated[str | None, Field(description="Owning group")] = None
    mode: Annotated[str | None, Field(description="Directory mode")] = None

    def as_overrides(self) -> dict[str, str]:
        """Return only the fields this layer sets."""
        return {key: value for key, value in self.model_dump().items() if value is not None}


class DirectoryDecl(BaseModel):
    """A directory to store in persistent storage.

    Attributes:
        directory: Path of the directory (absolute at root level, relative
            to the home directory in user and session scopes).
        user: Owner override.
        group: Group override.
        mode: Mode override.
        method: Linking method, "bind" or "symlink".
        hide_mount: Whether to hide the bind mount from file managers.
    """

    model_config = ConfigDict(extra="forbid")

    directory: Annotated[str, Field(min_length=1, description="Directory path")]
    user: Annotated[str | None, Field(description="Owner override")] = None
    group: Annotated[str | None, Field(description="Group override")] = None
    mode: Annotated[str | None, Field(description="Mode override")] = None
    method: Annotated[str | None, Field(description="Linking method")] = None
    hide_mount: Annotated[bool | None, Field(description="Hide the bind mount")] = None

    def perms_overrides(self) -> dict[str, str]:
        """Return the permission fields set on this entry."""
        return PermsConfig(user=self.user, group=self.group, mode=self.mode).as_overrides()


class FileDecl(BaseModel):
    """A file to store in persistent storage.

    Attributes:
        file: Path of the file.
        method: Linking method, "bind" or "symlink".
        parent_directory: Permission overrides for the file's parent directory.
    """

    model_config = ConfigDict(extra="forbid")

    file: Annotated[str, Field(min_length=1, description="File path")]
    method: Annotated[str | None, Field(description="Linking method")] = None
    parent_directory: Annotated[
        PermsConfig,
        Field(default_factory=PermsConfig, description="Parent directory permissions"),
    ]


def _coerce_entries(value: Any, key: str) -> Any:
    """Turn bare path strings into single-key tables."""
    if not isinstance(value, list):
        return value
    return [{key: item} if isinstance(item, str) else item for item in value]


class _EntryLists(BaseModel):
    """Shared ``files``/``directories`` lists accepting strings or tables."""

    model_config = ConfigDict(extra="forbid")

    files: Annotated[
        list[FileDecl],
        Field(default_factory=list, description="Files to persist"),
    ]
    directories: Annotated[
        list[DirectoryDecl],
        Field(default_factory=list, description="Directories to persist"),
    ]

    @field_validator("files", mode="before")
    @classmethod
    def coerce_files(cls, value: Any) -> Any:
        """Accept bare strings as file entries."""
        return _coerce_entries(value, "file")

    @field_validator("directories", mode="before")
    @classmethod
    def coerce_directories(cls, value: Any) -> Any:
        """Accept bare strings as directory entries."""
        return _coerce_entries(value, "directory")


class UserScopeConfig(_EntryLists):
    """Files and directories persisted inside one user's home directory.

    Attributes:
        home: The user's home directory. Falls back to ``[users.<name>].home``.
        default_perms: Permission overrides for this user's directories.
    """

    home: Annotated[str | None, Field(description="Home directory")] = None
    default_perms: Annotated[
        PermsConfig,
        Field(default_factory=PermsConfig, description="Per-user default permissions"),
    ]


class PersistenceConfig(_EntryLists):
    """A persistent storage location and everything stored in it.

    Attributes:
        persistent_storage_path: Storage path; defaults to the table key.
        enable: Whether this location is active.
        hide_mounts: Default for ``hide_mount`` of its directories.
        allow_other: Allow other users through FUSE bind mounts (session scope).
        remove_prefix_directory: Drop the first segment of each path on the
            live side (session scope).
        enable_warnings: Emit non-critical warnings for this location.
        default_perms: Permission overrides for this location's directories.
        users: Per-user scopes (system scope only).
    """

    persistent_storage_path: Annotated[
        str | None, Field(description="Persistent storage path")
    ] = None
    enable: Annotated[bool, Field(description="Enable this location")] = True
    hide_mounts: Annotated[bool, Field(description="Hide bind mounts")] = False
    allow_other: Annotated[bool | None, Field(description="FUSE allow_other")] = None
    remove_prefix_directory: Annotated[
        bool, Field(description="Strip first path segment on the live side")
    ] = False
    enable_warnings: Annotated[bool, Field(description="Emit warnings")] = True
    default_perms: Annotated[
        PermsConfig,
        Field(default_factory=PermsConfig, description="Per-root default permissions"),
    ]
    users: Annotated[
        dict[str, UserScopeConfig],
        Field(default_factory=dict, description="Per-user scopes"),
    ]


class UserAccount(BaseModel):
    """A user account known to the system.

    Attributes:
        home: Home directory as configured for the account.
        group: Primary group.
        uid: Fixed user id. Unset ids are allocated dynamically.
    """

    model_config = ConfigDict(extra="forbid")

    home: Annotated[str, Field(min_length=1, description="Home directory")]
    group: Annotated[str, Field(description="Primary group")] = "users"
    uid: Annotated[int | None, Field(ge=0, description="Fixed user id")] = None


class GroupAccount(BaseModel):
    """A group known to the system."""

    model_config = ConfigDict(extra="forbid")

    gid: Annotated[int | None, Field(ge=0, description="Fixed group id")] = None


class FileSystemConfig(BaseModel):
    """A file system mounted by the host, e.g. the persistent volume.

    Attributes:
        mount_point: Where the file system is mounted.
        device: Device path, if known.
        label: File system label, used when no device is given.
        fs_type: File system type.
        options: Mount options.
        needed_for_boot: Whether it is mounted in early boot.
    """

    model_config = ConfigDict(extra="forbid")

    mount_point: Annotated[str, Field(min_length=1, description="Mount point")]
    device: Annotated[str | None, Field(description="Device path")] = None
    label: Annotated[str | None, Field(description="File system label")] = None
    fs_type: Annotated[str, Field(description="File system type")] = "auto"
    options: Annotated[
        list[str],
        Field(default_factory=lambda: ["defaults"], description="Mount options"),
    ]
    needed_for_boot: Annotated[bool, Field(description="Mounted in early boot")] = False


class UnmountPolicy(BaseModel):
    """Retry policy for unmounting.

    Attributes:
        max_retries: Regular unmount attempts before a lazy unmount.
        retry_delay: Seconds between attempts.
    """

    model_config = ConfigDict(extra="forbid")

    max_retries: Annotated[int, Field(ge=1, description="Regular unmount attempts")] = 3
    retry_delay: Annotated[float, Field(ge=0, description="Seconds between attempts")] = 1.0


class Settings(BaseModel):
    """Global settings.

    Attributes:
        scope: "system" for the system manager, "session" for a user session.
        user: Session user (session scope).
        home: Session user's home directory (session scope).
        default_perms: Global default directory permissions.
        user_default_perms: Default permissions for directories in user scopes.
        home_parent_perms: Forced permissions for ancestors of home directories.
        unmount: Unmount retry policy.
        staging_root: Where persistent volumes are mounted temporarily while
            preparing needed-for-boot directories.
        id_state_directory: Where dynamically allocated user and group ids
            are recorded.
    """

    model_config = ConfigDict(extra="forbid")

    scope: Annotated[ScopeType, Field(description="Execution scope")] = "system"
    user: Annotated[str | None, Field(description="Session user")] = None
    home: Annotated[str | None, Field(description="Session home directory")] = None
    default_perms: Annotated[
        PermsConfig,
        Field(description="Global default permissions"),
    ] = PermsConfig(user="root", group="root", mode="0755")
    user_default_perms: Annotated[
        PermsConfig,
        Field(description="Default permissions in user scopes"),
    ] = PermsConfig(mode="0755")
    home_parent_perms: Annotated[
        PermsConfig,
        Field(description="Permissions of home directory parents"),
    ] = PermsConfig(user="root", group="users", mode="0755")
    unmount: Annotated[
        UnmountPolicy,
        Field(default_factory=UnmountPolicy, description="Unmount retry policy"),
    ]
    staging_root: Annotated[
        str, Field(description="Temporary mount root for boot preparation")
    ] = "/persist-tmp-mnt"
    id_state_directory: Annotated[
        str, Field(min_length=1, description="State directory of allocated ids")
    ] = "/var/lib/nixos"

    @model_validator(mode="after")
    def validate_session_identity(self) -> "Settings":
        """Validate that session scope names its user and home directory."""
        if self.scope == "session" and (not self.user or not self.home):
            msg = "Session scope requires both 'user' and 'home' in [settings]"
            raise ValueError(msg)
        return self


class PersistenceFile(BaseModel):
    """Complete persistence configuration.

    Attributes:
        settings: Global settings.
        users: Known user accounts.
        groups: Known groups.
        file_systems: File systems mounted by the host.
        persistence: Persistent storage locations keyed by storage path.
    """

    model_config = ConfigDict(extra="forbid")

    settings: Annotated[
        Settings, Field(default_factory=Settings, description="Global settings")
    ]
    users: Annotated[
        dict[str, UserAccount],
        Field(default_factory=dict, description="Known user accounts"),
    ]
    groups: Annotated[
        dict[str, GroupAccount],
        Field(default_factory=dict, description="Known groups"),
    ]
    file_systems: Annotated[
        list[FileSystemConfig],
        Field(default_factory=list, description="Host file systems"),
    ]
    persistence: Annotated[
        dict[str, PersistenceConfig],
        Field(default_factory=dict, description="Persistent storage locations"),
    ]

    @model_validator(mode="after")
    def validate_scope_layout(self) -> "PersistenceFile":
        """Validate that per-user scopes are only used in system scope."""
        if self.settings.scope == "session":
            nested = [key for key, root in self.persistence.items() if root.users]
            if nested:
                msg = f"Per-user scopes are not allowed in session scope: {nested}"
                raise ValueError(msg)
        return self

    @property
    def enabled_persistence(self) -> dict[str, PersistenceConfig]:
        """Enabled storage locations keyed by their table key."""
        return {key: root for key, root in self.persistence.items() if root.enable}
