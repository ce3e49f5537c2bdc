"""The PackageManager contract and the BaseManager default implementation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from polypkg.core.config import get_settings
from polypkg.core.errors import (
    InvalidPackageNameError,
    OperationNotSupportedError,
    PolypkgError,
    Status,
    StatusError,
    retry_on_transient,
)
from polypkg.core.logging import get_logger
from polypkg.core.models import (
    Category,
    ListFilter,
    ManagerStatus,
    Options,
    PackageInfo,
    PackageStatus,
)
from polypkg.core.security import validate_package_names
from polypkg.core.shell import CommandResult, CommandRunner, DefaultCommandRunner

log = get_logger(__name__)

DRY_RUN_STATUS = {
    "install": PackageStatus.WOULD_INSTALL,
    "remove": PackageStatus.WOULD_REMOVE,
    "upgrade": PackageStatus.WOULD_UPGRADE,
}

_STDERR_PREFIXES = ("E: ", "Error: ", "error: ")


@runtime_checkable
class PackageManager(Protocol):
    """Operations every backend exposes.

    A backend that cannot perform an operation raises
    OperationNotSupportedError rather than faking a result.
    """

    name: str
    category: str

    async def is_available(self) -> bool:
        """Whether the native tool is usable on this host."""
        ...

    async def get_version(self) -> str:
        """Version string of the native tool."""
        ...

    async def search(self, query: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        """Find packages matching every query term."""
        ...

    async def list_packages(
        self, filter: ListFilter = ListFilter.INSTALLED, opts: Options | None = None
    ) -> list[PackageInfo]:
        """List installed, available or upgradable packages."""
        ...

    async def install(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        """Install packages and report what was set up."""
        ...

    async def remove(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        """Remove packages and report what was removed."""
        ...

    async def get_info(self, package: str, opts: Options | None = None) -> PackageInfo:
        """Detailed information about one package."""
        ...

    async def refresh(self, opts: Options | None = None) -> None:
        """Update the package database."""
        ...

    async def upgrade(
        self, packages: Sequence[str] = (), opts: Options | None = None
    ) -> list[PackageInfo]:
        """Upgrade the named packages, or everything when none are given."""
        ...

    async def clean(self, opts: Options | None = None) -> None:
        """Remove cached downloads."""
        ...

    async def autoremove(self, opts: Options | None = None) -> list[PackageInfo]:
        """Remove orphaned dependencies."""
        ...

    async def verify(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        """Check integrity of installed packages."""
        ...

    async def status(self, opts: Options | None = None) -> ManagerStatus:
        """Health snapshot of the backend."""
        ...


class Plugin(Protocol):
    """Factory for one backend, with a priority for category tie-breaks."""

    priority: int

    def create_manager(self) -> PackageManager:
        ...


@dataclass(frozen=True)
class SimplePlugin:
    """Plugin built from a factory callable."""

    factory: Callable[[], PackageManager]
    priority: int = 50

    def create_manager(self) -> PackageManager:
        return self.factory()


def clean_stderr(text: str) -> str:
    """Trim a tool's stderr down to its first meaningful line."""
    for line in text.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        for prefix in _STDERR_PREFIXES:
            if line.startswith(prefix):
                line = line[len(prefix):]
                break
        return line
    return ""


class BaseManager:
    """Default implementation of the PackageManager contract.

    Every operation raises OperationNotSupportedError; adapters override
    only what their native tool supports. The helpers below centralise
    validation, dry-run planning, command execution and exit-status
    classification so adapters stay small.
    """

    name: str = "base"
    category: str = Category.SYSTEM
    executable: str | None = None

    def __init__(self, runner: CommandRunner | None = None) -> None:
        if runner is None:
            runner = DefaultCommandRunner(timeout=get_settings().command_timeout)
        self.runner = runner
        self.log = log.bind(manager=self.name)

    @property
    def command(self) -> str:
        return self.executable or self.name

    ## Basic information ##

    async def is_available(self) -> bool:
        try:
            result = await self.runner.run(self.command, ["--version"])
        except PolypkgError as e:
            self.log.debug("availability_check_failed", error=str(e))
            return False
        return result.ok

    async def get_version(self) -> str:
        try:
            result = await self.runner.run(self.command, ["--version"])
        except PolypkgError as e:
            raise StatusError(
                Status.UNAVAILABLE_ERROR,
                f"unable to get version for {self.name}",
                cause=e,
                context={"manager": self.name},
            ) from e
        if not result.ok:
            raise self.fail(result, "version")
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines else ""

    ## Core operations (default: not supported) ##

    async def search(self, query: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        raise self.not_supported("search")

    async def list_packages(
        self, filter: ListFilter = ListFilter.INSTALLED, opts: Options | None = None
    ) -> list[PackageInfo]:
        raise self.not_supported("list")

    async def install(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        raise self.not_supported("install")

    async def remove(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        raise self.not_supported("remove")

    async def get_info(self, package: str, opts: Options | None = None) -> PackageInfo:
        raise self.not_supported("info")

    async def refresh(self, opts: Options | None = None) -> None:
        raise self.not_supported("refresh")

    async def upgrade(
        self, packages: Sequence[str] = (), opts: Options | None = None
    ) -> list[PackageInfo]:
        raise self.not_supported("upgrade")

    async def clean(self, opts: Options | None = None) -> None:
        raise self.not_supported("clean")

    async def autoremove(self, opts: Options | None = None) -> list[PackageInfo]:
        raise self.not_supported("autoremove")

    async def verify(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        raise self.not_supported("verify")

    async def status(self, opts: Options | None = None) -> ManagerStatus:
        status = ManagerStatus(available=await self.is_available(), healthy=True)

        if status.available:
            try:
                status.version = await self.get_version()
            except PolypkgError as e:
                status.issues.append(str(e))
        else:
            status.healthy = False
            status.issues.append(f"{self.name} is not available on this system")

        return status

    ## Helpers ##

    def not_supported(self, operation: str) -> OperationNotSupportedError:
        return OperationNotSupportedError(manager=self.name, operation=operation)

    def validate_package_names(self, packages: Sequence[str]) -> list[str]:
        """Validate names before any of them reach a subprocess."""
        try:
            return validate_package_names(packages)
        except InvalidPackageNameError as e:
            raise e.with_context(manager=self.name)

    def dry_run_result(
        self, opts: Options, operation: str, packages: Sequence[str]
    ) -> list[PackageInfo] | None:
        """Plan instead of executing when ``opts.dry_run`` is set.

        Returns:
            One "would-do" record per requested name, or None when the
            operation should really run.
        """
        if not opts.dry_run:
            return None

        self.log.info("dry_run", operation=operation, packages=list(packages))
        status = DRY_RUN_STATUS.get(operation, PackageStatus.UNKNOWN)
        return [
            PackageInfo(name=name, status=status, manager_name=self.name)
            for name in packages
        ]

    def log_verbose(self, opts: Options | None, event: str, **kw: Any) -> None:
        if opts is not None and opts.verbose:
            self.log.info(event, **kw)

    def log_debug(self, opts: Options | None, event: str, **kw: Any) -> None:
        if opts is not None and opts.debug:
            self.log.debug(event, **kw)

    async def execute(
        self,
        args: Sequence[str],
        *env: str,
        opts: Options | None = None,
        command: str | None = None,
    ) -> CommandResult:
        """Run the native tool honouring verbosity, timeout and retries.

        Args:
            args: Arguments for the tool.
            *env: Extra ``KEY=VALUE`` environment entries.
            opts: Operation options.
            command: Executable to run; defaults to this backend's tool.

        Returns:
            The CommandResult; a non-zero exit status is not raised.
        """
        opts = Options.resolve(opts)
        command = command or self.command
        args = [*args, *opts.custom_args] if opts.custom_args else list(args)
        timeout = float(opts.timeout_secs) if opts.timeout_secs > 0 else None
        run = self.runner.run_verbose if opts.verbose else self.runner.run

        @retry_on_transient(max_retries=opts.retries + 1, base_delay=1.0)
        async def attempt() -> CommandResult:
            return await run(command, args, *env, timeout=timeout)

        self.log_debug(opts, "execute", command=command, args=args, env=list(env))
        return await attempt()

    async def execute_interactive(
        self,
        args: Sequence[str],
        *env: str,
        opts: Options | None = None,
        command: str | None = None,
    ) -> CommandResult:
        """Run attached to the terminal so the tool can prompt the user."""
        opts = Options.resolve(opts)
        command = command or self.command
        args = [*args, *opts.custom_args] if opts.custom_args else list(args)
        timeout = float(opts.timeout_secs) if opts.timeout_secs > 0 else None

        returncode = await self.runner.run_interactive(command, args, *env, timeout=timeout)
        return CommandResult(command=command, args=args, returncode=returncode)

    def interpret(self, result: CommandResult, operation: str) -> Status:
        """Map a finished command onto the Status taxonomy.

        Adapters override this; exit-code meaning is tool-specific and no
        shared table exists. The default only knows that 0 is success.
        """
        return Status.SUCCESS if result.returncode == 0 else Status.GENERAL_ERROR

    def fail(
        self,
        result: CommandResult,
        operation: str,
        packages: Sequence[str] = (),
        message: str | None = None,
    ) -> StatusError:
        """Build the typed error for a failed command."""
        status = self.interpret(result, operation)
        if status is Status.SUCCESS:
            status = Status.GENERAL_ERROR

        detail = clean_stderr(result.stderr) or clean_stderr(result.stdout)
        if message is None:
            message = f"{self.name} {operation} failed"
        if detail:
            message = f"{message}: {detail}"

        context: dict[str, Any] = {
            "manager": self.name,
            "operation": operation,
            "returncode": result.returncode,
        }
        if packages:
            context["packages"] = list(packages)

        self.log.warning(
            "operation_failed",
            operation=operation,
            returncode=result.returncode,
            status=status.value,
            error=detail,
        )
        error = StatusError(status, message, context=context)
        error.__cause__ = result.failure()
        return error
