"""Entry normalization from configuration to an immutable snapshot.

Turns heterogeneous declarations (bare strings or tables) into fully
populated DirectoryEntry and FileEntry records. Permission defaults are
merged in an explicit layer order, each layer overriding only the fields
it sets:

1. ``[settings].default_perms`` (global)
2. ``persistence.<root>.default_perms`` (per root)
3. user layer: owner and group of the user, ``[settings].user_default_perms``,
   ``persistence.<root>.users.<name>.default_perms`` (user scopes only)
4. fields set on the entry itself

Every problem found is collected and raised as a single ConfigurationError
before anything touches the filesystem.
"""

import logging
from collections.abc import Sequence

from persistctl.core.errors import ConfigIssue, ConfigurationError
from persistctl.core.pathops import (
    concat_paths,
    dir_of,
    parents_of,
    remove_prefix_directory,
)
from persistctl.models.config import (
    DirectoryDecl,
    FileDecl,
    PersistenceConfig,
    PersistenceFile,
    UserScopeConfig,
)
from persistctl.models.entries import (
    DirectoryEntry,
    FileEntry,
    LinkMethod,
    MountPoint,
    Permissions,
    PersistenceSnapshot,
    PersistentRoot,
    Scope,
    parse_mode,
)

logger = logging.getLogger(__name__)

FALLBACK_PERMS = Permissions(user="root", group="root", mode="0755")

LINK_METHODS: dict[str, LinkMethod] = {method.value: method for method in LinkMethod}


def mount_points_from_config(config: PersistenceFile) -> list[MountPoint]:
    """Convert the declared file systems to MountPoint records."""
    return [
        MountPoint(
            mount_path=concat_paths([fs.mount_point]),
            device=fs.device,
            label=fs.label,
            fs_type=fs.fs_type,
            options=tuple(fs.options),
            needed_for_boot=fs.needed_for_boot,
        )
        for fs in config.file_systems
    ]


class EntryNormalizer:
    """Resolves a PersistenceFile into a PersistenceSnapshot.

    Attributes:
        _config: The validated configuration.
        _scope: System or session scope.
        _issues: Problems collected so far.
    """

    def __init__(self, config: PersistenceFile) -> None:
        """Initialize the normalizer.

        Args:
            config: Validated configuration to normalize.
        """
        self._config = config
        self._scope = Scope(config.settings.scope)
        self._issues: list[ConfigIssue] = []

    def normalize(self, mount_points: Sequence[MountPoint] | None = None) -> PersistenceSnapshot:
        """Build the snapshot.

        Args:
            mount_points: Known host mount points. Defaults to the declared
                ``file_systems``.

        Returns:
            Immutable snapshot of every enabled root and its entries.

        Raises:
            ConfigurationError: If any issue was found.
        """
        self._issues = []
        settings = self._config.settings
        known_mounts = (
            list(mount_points)
            if mount_points is not None
            else mount_points_from_config(self._config)
        )

        global_perms = self._global_perms()
        roots: list[PersistentRoot] = []
        directories: list[DirectoryEntry] = []
        files: list[FileEntry] = []

        for key, root_cfg in self._config.enabled_persistence.items():
            root = self._make_root(key, root_cfg, global_perms)
            if root is None:
                continue
            roots.append(root)
            self._check_needed_for_boot(key, root)
            site = f'persistence."{key}"'

            if self._scope == Scope.SESSION:
                self._warn_allow_other(key, root_cfg)
                perms = self._merge(
                    root.default_perms, settings.user_default_perms.as_overrides(), site
                )
                self._add_entries(
                    root_cfg, root, perms, settings.home, site, directories, files
                )
                continue

            self._add_entries(root_cfg, root, root.default_perms, None, site, directories, files)
            for name, user_cfg in root_cfg.users.items():
                user_site = f"{site}.users.{name}"
                resolved = self._resolve_user(name, user_cfg, user_site)
                if resolved is None:
                    continue
                home, group = resolved
                layer = {
                    "user": name,
                    "group": group,
                    **settings.user_default_perms.as_overrides(),
                    **user_cfg.default_perms.as_overrides(),
                }
                perms = self._merge(root.default_perms, layer, user_site)
                self._add_entries(user_cfg, root, perms, home, user_site, directories, files)

        self._check_duplicates(directories, files)

        if self._issues:
            raise ConfigurationError(self._issues)

        if self._scope == Scope.SYSTEM:
            self._warn_id_state(directories, known_mounts)

        home_parent = global_perms.merged({"group": "users"}).merged(
            settings.home_parent_perms.as_overrides()
        )
        return PersistenceSnapshot(
            scope=self._scope,
            roots=tuple(roots),
            directories=tuple(directories),
            files=tuple(files),
            mount_points=tuple(known_mounts),
            home_parent_perms=home_parent,
            unmount_retries=settings.unmount.max_retries,
            unmount_delay=settings.unmount.retry_delay,
            staging_root=settings.staging_root,
        )

    # === Layers ===

    def _global_perms(self) -> Permissions:
        """Global default permissions, filled in from built-in defaults."""
        configured = self._config.settings.default_perms
        if self._scope == Scope.SESSION:
            # Session directories belong to the session user and are never chowned
            base = Permissions(user=None, group=None, mode=FALLBACK_PERMS.mode)
            overrides = {"mode": configured.mode} if configured.mode else {}
            return self._merge(base, overrides, "settings.default_perms")
        return self._merge(FALLBACK_PERMS, configured.as_overrides(), "settings.default_perms")

    def _merge(self, base: Permissions, overrides: dict[str, str], site: str) -> Permissions:
        """Apply one override layer, recording an issue for invalid modes."""
        mode = overrides.get("mode")
        if mode is not None:
            try:
                parse_mode(mode)
            except ValueError:
                self._issue("invalid-mode", mode, f"Invalid mode '{mode}'", site)
                overrides = {k: v for k, v in overrides.items() if k != "mode"}
        return base.merged(overrides)

    def _make_root(
        self, key: str, root_cfg: PersistenceConfig, global_perms: Permissions
    ) -> PersistentRoot | None:
        """Create the PersistentRoot for one ``[persistence]`` table."""
        storage_path = root_cfg.persistent_storage_path or key
        site = f'persistence."{key}"'
        if not storage_path.startswith("/"):
            self._issue(
                "invalid-path", storage_path, "Persistent storage path must be absolute", site
            )
            return None
        return PersistentRoot(
            storage_path=concat_paths([storage_path]),
            default_perms=self._merge(global_perms, root_cfg.default_perms.as_overrides(), site),
            hide_mounts=root_cfg.hide_mounts,
            enabled=root_cfg.enable,
            allow_other=bool(root_cfg.allow_other),
            remove_prefix_directory=root_cfg.remove_prefix_directory,
        )

    def _resolve_user(
        self, name: str, user_cfg: UserScopeConfig, site: str
    ) -> tuple[str, str] | None:
        """Resolve a user scope's home directory and group.

        Returns:
            Tuple of (home, group), or None if the home cannot be resolved.
        """
        account = self._config.users.get(name)
        if user_cfg.home is not None and account is not None:
            if concat_paths([user_cfg.home]) != concat_paths([account.home]):
                self._issue(
                    "home-mismatch",
                    name,
                    f"{user_cfg.home} != {account.home}",
                    site,
                )
                return None
        home = user_cfg.home or (account.home if account is not None else None)
        if home is None:
            self._issue("unknown-home", name, "User has no resolvable home directory", site)
            return None
        if not home.startswith("/"):
            self._issue("invalid-path", home, "Home directory must be absolute", site)
            return None
        group = account.group if account is not None else "users"
        return concat_paths([home]), group

    # === Entries ===

    def _add_entries(
        self,
        scope_cfg: PersistenceConfig | UserScopeConfig,
        root: PersistentRoot,
        perms: Permissions,
        home: str | None,
        site: str,
        directories: list[DirectoryEntry],
        files: list[FileEntry],
    ) -> None:
        """Normalize the ``directories`` and ``files`` of one scope."""
        hide_default = root.hide_mounts
        for index, decl in enumerate(scope_cfg.directories):
            entry = self._make_directory(
                decl, root, perms, home, hide_default, f"{site}.directories[{index}]"
            )
            if entry is not None:
                directories.append(entry)
        for index, file_decl in enumerate(scope_cfg.files):
            file_entry = self._make_file(file_decl, root, perms, home, f"{site}.files[{index}]")
            if file_entry is not None:
                files.append(file_entry)

    def _paths(self, declared: str, root: PersistentRoot, home: str | None) -> tuple[str, str, str]:
        """Compute (live path, storage-relative path, live-relative path).

        Root-level system entries are absolute. User-scope system entries are
        stored under their full live path. Session entries are stored under
        their declared path, and may drop their first segment on the live side.
        """
        if home is None:
            live = concat_paths(["/", declared])
            return live, live, live
        if self._scope == Scope.SYSTEM:
            live = concat_paths([home, declared])
            return live, live, concat_paths([declared])
        live_relative = (
            remove_prefix_directory(declared) if root.remove_prefix_directory else declared
        )
        return concat_paths([home, live_relative]), concat_paths([declared]), concat_paths(
            [live_relative]
        )

    def _method(self, method: str | None, path: str, site: str) -> LinkMethod | None:
        value = method or LinkMethod.BIND.value
        if value not in LINK_METHODS:
            self._issue(
                "invalid-method",
                path,
                f"Unknown method '{value}' (expected one of: {', '.join(LINK_METHODS)})",
                site,
            )
            return None
        return LINK_METHODS[value]

    def _make_directory(
        self,
        decl: DirectoryDecl,
        root: PersistentRoot,
        perms: Permissions,
        home: str | None,
        hide_default: bool,
        site: str,
    ) -> DirectoryEntry | None:
        method = self._method(decl.method, decl.directory, site)
        if method is None:
            return None
        live, storage_relative, relative = self._paths(decl.directory, root, home)
        return DirectoryEntry(
            live_path=live,
            storage_relative=storage_relative,
            root=root,
            perms=self._merge(perms, decl.perms_overrides(), site),
            default_perms=perms,
            method=method,
            hide_mount=hide_default if decl.hide_mount is None else decl.hide_mount,
            home=home,
            relative_path=relative,
            site=site,
        )

    def _make_file(
        self,
        decl: FileDecl,
        root: PersistentRoot,
        perms: Permissions,
        home: str | None,
        site: str,
    ) -> FileEntry | None:
        method = self._method(decl.method, decl.file, site)
        if method is None:
            return None
        live, storage_relative, relative = self._paths(decl.file, root, home)
        parent = DirectoryEntry(
            live_path=dir_of(live),
            storage_relative=dir_of(storage_relative),
            root=root,
            perms=self._merge(
                perms, decl.parent_directory.as_overrides(), f"{site}.parent_directory"
            ),
            default_perms=perms,
            home=home,
            relative_path=dir_of(relative),
            site=f"{site}.parent_directory",
        )
        return FileEntry(
            live_path=live,
            storage_relative=storage_relative,
            root=root,
            method=method,
            parent=parent,
            relative_path=relative,
            site=site,
        )

    # === Checks ===

    def _check_needed_for_boot(self, key: str, root: PersistentRoot) -> None:
        """Persistent volumes must be mounted in early boot (system scope)."""
        if self._scope != Scope.SYSTEM:
            return
        for fs in self._config.file_systems:
            if concat_paths([fs.mount_point]) == root.storage_path and not fs.needed_for_boot:
                self._issue(
                    "not-needed-for-boot",
                    root.storage_path,
                    "File systems used for persistent storage must set needed_for_boot",
                    f'persistence."{key}"',
                )

    def _check_duplicates(self, directories: list[DirectoryEntry], files: list[FileEntry]) -> None:
        """Record one issue per path declared more than once."""
        by_kind: dict[str, dict[str, list[str]]] = {}
        for kind, entries in (
            ("duplicate-file", files),
            ("duplicate-directory", directories),
        ):
            sites = by_kind.setdefault(kind, {})
            for entry in entries:
                sites.setdefault(entry.live_path, []).append(entry.site)
            for path, declared_at in sites.items():
                if len(declared_at) > 1:
                    noun = "file" if kind == "duplicate-file" else "directory"
                    self._issue(
                        kind,
                        path,
                        f"The {noun} was specified {len(declared_at)} times",
                        *declared_at,
                    )

        # Both kinds would be linked at the same live path
        file_sites = by_kind["duplicate-file"]
        for path, declared_at in by_kind["duplicate-directory"].items():
            if path in file_sites:
                self._issue(
                    "file-directory-conflict",
                    path,
                    "The path was specified both as a file and as a directory",
                    *file_sites[path],
                    *declared_at,
                )

    def _warn_id_state(
        self, directories: list[DirectoryEntry], known_mounts: Sequence[MountPoint]
    ) -> None:
        """Warn when dynamically allocated ids are not kept across reboots."""
        if not any(root.enable_warnings for root in self._config.enabled_persistence.values()):
            return
        users = [name for name, account in self._config.users.items() if account.uid is None]
        groups = [name for name, group in self._config.groups.items() if group.gid is None]
        if not users and not groups:
            return

        state_dir = self._config.settings.id_state_directory
        kept = {entry.live_path for entry in directories}
        kept.update(mount.mount_path for mount in known_mounts)
        if any(path in kept for path in [*parents_of(state_dir), state_dir]):
            return

        logger.warning(
            "Neither %s nor any of its parents are persisted; users and groups "
            "without fixed ids get them reassigned on reboot (users: %s; groups: %s)",
            state_dir,
            ", ".join(users) or "none",
            ", ".join(groups) or "none",
        )

    def _warn_allow_other(self, key: str, root_cfg: PersistenceConfig) -> None:
        if root_cfg.allow_other is None and root_cfg.enable_warnings:
            logger.warning(
                'persistence."%s".allow_other not set; assuming false',
                key,
            )

    def _issue(self, kind: str, path: str, message: str, *sites: str) -> None:
        self._issues.append(ConfigIssue(kind=kind, path=path, message=message, sites=sites))


def normalize_config(
    config: PersistenceFile,
    mount_points: Sequence[MountPoint] | None = None,
) -> PersistenceSnapshot:
    """Normalize a configuration into an immutable snapshot.

    Args:
        config: Validated configuration.
        mount_points: Known host mount points. Defaults to ``file_systems``.

    Returns:
        The snapshot consumed by the planning components.

    Raises:
        ConfigurationError: If the configuration has any issue.
    """
    return EntryNormalizer(config).normalize(mount_points)

