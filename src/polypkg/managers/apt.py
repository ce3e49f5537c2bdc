"""APT backend for Debian and Ubuntu systems."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from polypkg.core.errors import PackageNotFoundError, PolypkgError, Status, StatusError
from polypkg.core.models import (
    Category,
    ListFilter,
    ManagerStatus,
    Options,
    PackageInfo,
    PackageStatus,
)
from polypkg.core.shell import CommandResult
from polypkg.managers.apt_parser import (
    apply_dpkg_status,
    parse_cache_stats,
    parse_dpkg_status,
    parse_install_output,
    parse_list_installed,
    parse_list_upgradable,
    parse_remove_output,
    parse_search_output,
    parse_show_output,
)
from polypkg.managers.base import BaseManager

NONINTERACTIVE = "DEBIAN_FRONTEND=noninteractive"

# dpkg-query expands the escape itself, it is not a Python newline.
STATUS_FORMAT = r"${binary:Package} ${Status} ${Version}\n"
LIST_FORMAT = r"${binary:Package} ${Version} ${Architecture}\n"

_PERMISSION_HINTS = (
    "could not open lock file",
    "unable to acquire",
    "unable to lock",
    "are you root",
    "permission denied",
)
_UNAVAILABLE_HINTS = (
    "unable to locate package",
    "has no installation candidate",
    "no packages found",
    "is not installed",
)
_USAGE_HINTS = (
    "invalid operation",
    "command line option",
    "not understood in combination",
)


def interpret_exit_status(returncode: int, stderr: str) -> Status:
    """Classify an apt/apt-get/dpkg exit.

    APT uses 100 for nearly every failure, so the category comes from the
    error text; an unrecognised failure is a general error.
    """
    if returncode == 0:
        return Status.SUCCESS

    text = stderr.lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return Status.PERMISSION_ERROR
    if any(hint in text for hint in _UNAVAILABLE_HINTS):
        return Status.UNAVAILABLE_ERROR
    if any(hint in text for hint in _USAGE_HINTS):
        return Status.USAGE_ERROR
    return Status.GENERAL_ERROR


class AptManager(BaseManager):
    """Package manager backed by apt, apt-get, apt-cache and dpkg.

    Mutating operations use apt-get, whose output is stable for scripts.
    """

    name = "apt"
    category = Category.SYSTEM
    executable = "apt"

    update_stamp = Path("/var/lib/apt/periodic/update-success-stamp")
    lists_dir = Path("/var/lib/apt/lists")
    archives_dir = Path("/var/cache/apt/archives")

    def interpret(self, result: CommandResult, operation: str) -> Status:
        return interpret_exit_status(result.returncode, result.stderr)

    ## Basic information ##

    async def is_available(self) -> bool:
        try:
            result = await self.runner.run(self.command, ["--version"])
        except PolypkgError as e:
            self.log.debug("availability_check_failed", error=str(e))
            return False

        # macOS ships an unrelated Java tool called apt.
        output = result.stdout.lower()
        return result.ok and output.startswith("apt") and "java" not in output

    async def get_version(self) -> str:
        line = await super().get_version()
        # apt 2.4.9 (amd64)
        parts = line.split()
        return parts[1] if len(parts) > 1 and parts[0] == "apt" else line

    ## Queries ##

    async def search(self, query: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        terms = [t for t in query if t]
        if not terms:
            raise StatusError(
                Status.USAGE_ERROR,
                "search requires at least one term",
                context={"manager": self.name},
            )
        terms = self.validate_package_names(terms)

        result = await self.execute(["search", *terms], opts=opts)
        if not result.ok:
            raise self.fail(result, "search", terms)

        packages = parse_search_output(result.stdout)
        self.log_verbose(opts, "search_parsed", query=terms, count=len(packages))

        if opts.show_status and packages:
            packages = apply_dpkg_status(packages, await self._dpkg_states(packages, opts))
        return packages

    async def list_packages(
        self, filter: ListFilter = ListFilter.INSTALLED, opts: Options | None = None
    ) -> list[PackageInfo]:
        opts = Options.resolve(opts)

        if filter is ListFilter.INSTALLED:
            result = await self.execute(["-W", "-f", LIST_FORMAT], opts=opts, command="dpkg-query")
            if not result.ok:
                raise self.fail(result, "list")
            return parse_list_installed(result.stdout)

        if filter is ListFilter.UPGRADABLE:
            result = await self.execute(["list", "--upgradable"], opts=opts)
            if not result.ok:
                raise self.fail(result, "list")
            return parse_list_upgradable(result.stdout)

        # Every package in every configured repository is what search is for.
        raise self.not_supported(f"list {filter.value}")

    async def get_info(self, package: str, opts: Options | None = None) -> PackageInfo:
        opts = Options.resolve(opts)
        name = self.validate_package_names([package])[0]

        result = await self.execute(["show", name], opts=opts, command="apt-cache")
        if not result.ok:
            raise self.fail(result, "info", [name])

        info = parse_show_output(result.stdout)
        if info is None:
            raise PackageNotFoundError(package=name, manager=self.name)

        if opts.show_status:
            info = apply_dpkg_status([info], await self._dpkg_states([info], opts))[0]
        return info

    async def _dpkg_states(
        self, packages: Sequence[PackageInfo], opts: Options
    ) -> dict[str, tuple[str, str]]:
        names = [p.name for p in packages]
        result = await self.execute(["-W", "-f", STATUS_FORMAT, *names], opts=opts, command="dpkg-query")
        # Exit 1 only means some names are unknown to dpkg; the rest still print.
        if result.returncode not in (0, 1):
            raise self.fail(result, "status", names)
        return parse_dpkg_status(result.stdout)

    ## Mutations ##

    async def install(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)

        planned = self.dry_run_result(opts, "install", names)
        if planned is not None:
            return planned
        if not names:
            return []

        targets = [f"{n}:{opts.arch}" if opts.arch and ":" not in n else n for n in names]
        if not opts.auto_confirm:
            return await self._run_interactive(
                ["install", *targets], "install", names, PackageStatus.INSTALLED, opts
            )

        result = await self.execute(["install", "-y", *targets], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "install", names)

        installed = parse_install_output(result.stdout)
        self.log.info("install_complete", requested=names, installed=[p.name for p in installed])
        return installed

    async def remove(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)

        planned = self.dry_run_result(opts, "remove", names)
        if planned is not None:
            return planned
        if not names:
            return []

        if not opts.auto_confirm:
            return await self._run_interactive(
                ["remove", *names], "remove", names, PackageStatus.AVAILABLE, opts
            )

        result = await self.execute(["remove", "-y", *names], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "remove", names)

        removed = parse_remove_output(result.stdout)
        self.log.info("remove_complete", requested=names, removed=[p.name for p in removed])
        return removed

    async def refresh(self, opts: Options | None = None) -> None:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="refresh")
            return

        result = await self.execute(["update"], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "refresh")

    async def upgrade(
        self, packages: Sequence[str] = (), opts: Options | None = None
    ) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)

        planned = self.dry_run_result(opts, "upgrade", names)
        if planned is not None:
            return planned

        verb = ["install", "--only-upgrade"] if names else ["upgrade"]
        if not opts.auto_confirm:
            return await self._run_interactive(
                [*verb, *names], "upgrade", names, PackageStatus.INSTALLED, opts
            )

        result = await self.execute([*verb, "-y", *names], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "upgrade", names)
        return parse_install_output(result.stdout)

    async def clean(self, opts: Options | None = None) -> None:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="clean")
            return

        result = await self.execute(["autoclean"], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "clean")

    async def autoremove(self, opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="autoremove")
            return []

        if not opts.auto_confirm:
            return await self._run_interactive(
                ["autoremove"], "autoremove", [], PackageStatus.AVAILABLE, opts
            )

        result = await self.execute(["autoremove", "-y"], NONINTERACTIVE, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, "autoremove")
        return parse_remove_output(result.stdout)

    async def _run_interactive(
        self,
        args: list[str],
        operation: str,
        names: list[str],
        status: PackageStatus,
        opts: Options,
    ) -> list[PackageInfo]:
        """Let apt-get prompt the user; output is not captured so records
        are built from the requested names."""
        result = await self.execute_interactive(args, opts=opts, command="apt-get")
        if not result.ok:
            raise self.fail(result, operation, names)
        return [PackageInfo(name=n, status=status, manager_name=self.name) for n in names]

    ## Maintenance ##

    async def verify(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)
        if not names:
            raise StatusError(
                Status.USAGE_ERROR,
                "verify requires at least one package",
                context={"manager": self.name},
            )

        records: list[PackageInfo] = []
        for name in names:
            result = await self.execute(["--verify", name], opts=opts, command="dpkg")
            issues = [line.strip() for line in result.stdout.splitlines() if line.strip()]

            if issues:
                records.append(PackageInfo(
                    name=name,
                    status=PackageStatus.BROKEN,
                    manager_name=self.name,
                    metadata={"issues": issues},
                ))
            elif result.ok:
                records.append(PackageInfo(name=name, status=PackageStatus.INSTALLED, manager_name=self.name))
            elif self.interpret(result, "verify") is Status.UNAVAILABLE_ERROR:
                records.append(PackageInfo(
                    name=name,
                    status=PackageStatus.UNKNOWN,
                    manager_name=self.name,
                    metadata={"error": result.stderr.strip()},
                ))
            else:
                raise self.fail(result, "verify", [name])

        return records

    async def status(self, opts: Options | None = None) -> ManagerStatus:
        opts = Options.resolve(opts)
        status = await super().status(opts)
        if not status.available:
            return status

        installed = await self.execute(["-W", "-f", LIST_FORMAT], opts=opts, command="dpkg-query")
        if installed.ok:
            status.installed_count = len(parse_list_installed(installed.stdout))
        else:
            status.issues.append("unable to list installed packages")

        stats = await self.execute(["stats"], opts=opts, command="apt-cache")
        if stats.ok:
            status.package_count = parse_cache_stats(stats.stdout)
        else:
            status.issues.append("unable to read package cache statistics")

        status.last_refresh = self._last_refresh()
        status.cache_size = self._cache_size()
        status.healthy = not status.issues
        return status

    def _last_refresh(self) -> str:
        for path in (self.update_stamp, self.lists_dir):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(timespec="seconds")
        return "unknown"

    def _cache_size(self) -> int:
        try:
            return sum(p.stat().st_size for p in self.archives_dir.glob("*.deb"))
        except OSError:
            return 0
