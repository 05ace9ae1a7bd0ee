"""Exception hierarchy for persistence planning and execution.

Configuration problems are collected and raised together so a user can fix
every offending declaration in one pass. Runtime problems are raised per
operation and turned into results by the plan runner.
"""

from dataclasses import dataclass, field


class PersistctlError(Exception):
    """Base exception for persistctl errors."""


@dataclass(frozen=True, slots=True)
class ConfigIssue:
    """A single problem found while normalizing the configuration.

    Attributes:
        kind: Short machine-readable issue kind (e.g. "duplicate-file").
        path: The offending path, user name or value.
        message: Human-readable explanation.
        sites: Every declaration site involved, e.g.
            ``persistence."/persist".files[0]``.
    """

    kind: str
    path: str
    message: str
    sites: tuple[str, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        if not self.sites:
            return f"{self.path}: {self.message}"
        return f"{self.path}: {self.message} ({', '.join(self.sites)})"


class ConfigurationError(PersistctlError):
    """Raised when the configuration cannot be turned into a valid plan.

    Attributes:
        issues: Every issue found, in discovery order.
    """

    def __init__(self, issues: list[ConfigIssue]) -> None:
        self.issues = list(issues)
        lines = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"{len(self.issues)} configuration issue(s):\n{lines}")

    def paths(self, kind: str | None = None) -> list[str]:
        """Return offending paths, optionally filtered by issue kind."""
        return [issue.path for issue in self.issues if kind is None or issue.kind == kind]


class MountConflictError(PersistctlError):
    """Raised when something is already mounted at or below a target."""

    def __init__(self, target: str, detail: str) -> None:
        self.target = target
        self.detail = detail
        super().__init__(f"{target}: {detail}")


class UnmountTimeoutError(PersistctlError):
    """Raised when neither regular nor lazy unmounting released a target."""

    def __init__(self, target: str, attempts: int) -> None:
        self.target = target
        self.attempts = attempts
        super().__init__(
            f"Could not unmount {target} after {attempts} attempt(s) and a lazy unmount"
        )
