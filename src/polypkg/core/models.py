"""Data models shared by every package manager backend."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class PackageStatus(str, Enum):
    """Normalised package states.

    The first four are common to every backend; the rest are
    backend-local extensions and dry-run markers.
    """

    INSTALLED = "installed"
    AVAILABLE = "available"
    UPGRADABLE = "upgradable"
    UNKNOWN = "unknown"

    CONFIG_FILES = "config-files"
    BROKEN = "broken"

    WOULD_INSTALL = "would-install"
    WOULD_REMOVE = "would-remove"
    WOULD_UPGRADE = "would-upgrade"

    def __str__(self) -> str:
        return self.value


class ListFilter(str, Enum):
    """Which packages a list operation should return."""

    INSTALLED = "installed"
    AVAILABLE = "available"
    UPGRADABLE = "upgradable"
    ALL = "all"


class Category:
    """Backend categories used for best-match resolution."""

    SYSTEM = "system"
    LANGUAGE = "language"
    VERSION = "version"
    CONTAINER = "container"
    GAME = "game"
    SCIENTIFIC = "scientific"
    BUILD = "build"
    APP = "app"


@dataclass(frozen=True)
class PackageInfo:
    """One package as known to one backend at one point in time.

    Built by a parser from a single command's output and never mutated.
    """

    name: str
    version: str = ""
    new_version: str = ""
    status: PackageStatus = PackageStatus.UNKNOWN
    description: str = ""
    category: str = ""
    manager_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status is PackageStatus.UPGRADABLE:
            if not self.version or not self.new_version:
                raise ValueError(
                    f"upgradable package '{self.name}' needs both version and new_version"
                )
            if self.version == self.new_version:
                raise ValueError(
                    f"upgradable package '{self.name}' has identical versions"
                )

    def evolve(self, **changes: Any) -> PackageInfo:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ManagerStatus:
    """Health snapshot of a single backend, built on demand."""

    available: bool = False
    healthy: bool = False
    version: str = ""
    last_refresh: str = "unknown"
    cache_size: int = 0
    package_count: int = 0
    installed_count: int = 0
    issues: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Options:
    """Configuration threaded unchanged through every operation.

    ``None`` is accepted wherever Options is expected and means the
    defaults below: non-interactive, global scope, no dry-run.
    """

    # Execution mode
    dry_run: bool = False
    interactive: bool = False
    verbose: bool = False
    debug: bool = False
    quiet: bool = False

    # Authorisation
    assume_yes: bool = False
    no_confirm: bool = False

    # Scope and filtering
    global_scope: bool = True
    skip_broken: bool = False
    only_enabled: bool = True
    show_status: bool = False
    arch: str = ""
    tags: list[str] = field(default_factory=list)

    # Backend-specific knobs
    custom_args: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # 0 means "use the default"
    timeout_secs: int = 0
    retries: int = 0

    @classmethod
    def resolve(cls, opts: Options | None) -> Options:
        """Return ``opts`` or a fresh default instance."""
        return opts if opts is not None else cls()

    @property
    def auto_confirm(self) -> bool:
        """Whether native prompts should be answered automatically.

        A non-interactive run can never answer a prompt, so it confirms.
        """
        return self.assume_yes or self.no_confirm or not self.interactive


@dataclass
class OperationResult(Generic[T]):
    """Outcome of one backend's part of a fan-out."""

    manager: str
    value: T | None = None
    error: BaseException | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None
