"""YUM backend for RHEL, CentOS and Fedora style systems."""

from __future__ import annotations

import re
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
from polypkg.managers.base import BaseManager

MANAGER = "yum"

RPM_QUERY_FORMAT = r"%{NAME} %{VERSION}-%{RELEASE}\n"

# vim-enhanced.x86_64 : A version of the VIM editor which includes recent
_SEARCH_RE = re.compile(r"^(?P<name>\S+)\.(?P<arch>[\w]+)\s+:\s*(?P<summary>.*)$")

# bash.x86_64    4.2.46-35.el7_9    @updates
_LIST_RE = re.compile(r"^(?P<name>\S+)\.(?P<arch>[\w]+)\s+(?P<version>\S+)\s+(?P<repo>\S+)\s*$")

# "Installed:", "Dependency Updated:", ...
_SECTION_RE = re.compile(r"^(?:Dependency )?(?P<kind>Installed|Updated|Upgraded|Removed|Erased):\s*$")

# vim-enhanced.x86_64 2:7.4.629-8.el7_9
_TRANSACTION_ITEM_RE = re.compile(r"(?P<name>\S+)\.(?P<arch>[\w]+)\s+(?P<version>[\w.:+~-]+)")

_PERMISSION_HINTS = ("you need to be root", "permission denied", "another app is currently holding the yum lock")
_UNAVAILABLE_HINTS = (
    "no matching packages",
    "no package",
    "unable to find a match",
    "no packages marked for removal",
    "is not installed",
)
_USAGE_HINTS = ("command line error", "no such command", "usage:")


def interpret_exit_status(returncode: int, output: str, operation: str = "") -> Status:
    """Classify a yum or rpm exit.

    ``yum check-update`` exits 100 when updates are available, which is a
    successful query. Everywhere else yum reports failure as 1 and the
    category comes from the message text.
    """
    if returncode == 0:
        return Status.SUCCESS
    if returncode == 100 and operation == "check-update":
        return Status.SUCCESS

    text = output.lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return Status.PERMISSION_ERROR
    if any(hint in text for hint in _UNAVAILABLE_HINTS):
        return Status.UNAVAILABLE_ERROR
    if any(hint in text for hint in _USAGE_HINTS):
        return Status.USAGE_ERROR
    return Status.GENERAL_ERROR


def _is_noise(line: str) -> bool:
    return line.startswith(("Loaded plugins", "Loading mirror", "Last metadata", " * ", "=", "Repodata"))


def parse_search_output(text: str) -> list[PackageInfo]:
    """Parse ``yum search``; summaries may wrap onto ``   : more`` lines."""
    packages: list[PackageInfo] = []
    seen: set[str] = set()
    for line in text.splitlines():
        if not line.strip() or _is_noise(line):
            continue
        match = _SEARCH_RE.match(line)
        if not match or match["name"] in seen:
            continue
        seen.add(match["name"])
        packages.append(PackageInfo(
            name=match["name"],
            status=PackageStatus.AVAILABLE,
            description=match["summary"].strip(),
            manager_name=MANAGER,
            metadata={"arch": match["arch"]},
        ))
    return packages


def _unwrap_list_lines(text: str) -> list[str]:
    # yum wraps long names: the version and repo land on the next line.
    lines: list[str] = []
    pending = ""
    for raw in text.splitlines():
        if not raw.strip() or _is_noise(raw):
            continue
        if raw.endswith("Packages") or raw.startswith("Obsoleting"):
            pending = ""
            lines.append(raw)
            continue
        if pending:
            lines.append(f"{pending} {raw.strip()}")
            pending = ""
        elif len(raw.split()) == 1:
            pending = raw.strip()
        else:
            lines.append(raw)
    return lines


def parse_list_output(text: str, status: PackageStatus) -> list[PackageInfo]:
    """Parse ``yum list installed`` or ``yum check-update`` rows.

    For check-update the version column is the candidate version; rows
    after ``Obsoleting Packages`` are ignored.
    """
    packages: list[PackageInfo] = []
    for line in _unwrap_list_lines(text):
        if line.startswith("Obsoleting"):
            break
        match = _LIST_RE.match(line)
        if not match:
            continue
        fields = {"version": match["version"]} if status is PackageStatus.INSTALLED else {}
        packages.append(PackageInfo(
            name=match["name"],
            status=status,
            category=match["repo"].lstrip("@"),
            manager_name=MANAGER,
            metadata={"arch": match["arch"], "candidate": match["version"]},
            **fields,
        ))
    return packages


def parse_rpm_query(text: str) -> dict[str, str]:
    """Parse ``rpm -q --qf '%{NAME} %{VERSION}-%{RELEASE}\\n'`` output."""
    versions: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        # "package foo is not installed"
        if len(parts) != 2 or parts[0] == "package":
            continue
        versions[parts[0]] = parts[1]
    return versions


def parse_transaction(text: str, kinds: Sequence[str]) -> list[tuple[str, str, str]]:
    """Collect ``(name, arch, version)`` items listed under result sections.

    Args:
        text: yum stdout after a transaction.
        kinds: Section names to collect, e.g. ("Installed", "Updated").
    """
    items: list[tuple[str, str, str]] = []
    collecting = False
    for line in text.splitlines():
        header = _SECTION_RE.match(line.strip())
        if header:
            collecting = header["kind"] in kinds
            continue
        if not line.strip():
            collecting = False
            continue
        if collecting:
            for match in _TRANSACTION_ITEM_RE.finditer(line):
                items.append((match["name"], match["arch"], match["version"]))
    return items


def parse_info_output(text: str) -> PackageInfo | None:
    """Parse ``yum info``; installed and available stanzas are merged."""
    stanzas: list[tuple[str, dict[str, str]]] = []
    section = ""
    fields: dict[str, str] = {}
    last_key = ""

    def flush() -> None:
        if fields.get("Name"):
            stanzas.append((section, dict(fields)))
        fields.clear()

    for line in text.splitlines():
        stripped = line.strip()
        if stripped in ("Installed Packages", "Available Packages", "Updated Packages"):
            flush()
            section = stripped.split()[0].lower()
            continue
        if not stripped:
            flush()
            continue
        key, sep, value = line.partition(":")
        key = key.strip()
        if sep and key:
            if key == "Name" and fields.get("Name"):
                flush()
            fields[key] = value.strip()
            last_key = key
        elif sep and last_key == "Description":
            fields["Description"] = f"{fields['Description']} {value.strip()}".strip()
    flush()

    if not stanzas:
        return None

    installed = next((f for s, f in stanzas if s == "installed"), None)
    candidate = next((f for s, f in stanzas if s != "installed"), None)
    base = installed or candidate or stanzas[0][1]

    def full_version(f: dict[str, str]) -> str:
        version = f.get("Version", "")
        return f"{version}-{f['Release']}" if f.get("Release") else version

    version = full_version(installed) if installed else ""
    new_version = full_version(candidate) if candidate else ""

    if installed and candidate and new_version and new_version != version:
        status = PackageStatus.UPGRADABLE
    elif installed:
        status = PackageStatus.INSTALLED
    else:
        status = PackageStatus.AVAILABLE

    metadata = {"arch": base.get("Arch", "")}
    if base.get("Repo") or base.get("From repo"):
        metadata["repo"] = base.get("Repo") or base.get("From repo")
    if base.get("License"):
        metadata["license"] = base["License"]

    return PackageInfo(
        name=base["Name"],
        version=version,
        new_version=new_version,
        status=status,
        description=base.get("Summary", ""),
        manager_name=MANAGER,
        metadata=metadata,
    )


class YumManager(BaseManager):
    """Package manager backed by yum and rpm."""

    name = "yum"
    category = Category.SYSTEM
    executable = "yum"

    cache_dir = Path("/var/cache/yum")

    def interpret(self, result: CommandResult, operation: str) -> Status:
        # yum prints several of its errors on stdout.
        return interpret_exit_status(
            result.returncode, f"{result.stderr}\n{result.stdout}", operation
        )

    def _confirm_flag(self, opts: Options) -> list[str]:
        return ["-y"] if opts.auto_confirm else []

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
            if "no matches found" in f"{result.stdout}{result.stderr}".lower():
                return []
            raise self.fail(result, "search", terms)

        packages = parse_search_output(result.stdout)
        if opts.show_status and packages:
            installed = await self._installed_versions([p.name for p in packages], opts)
            packages = [
                p.evolve(version=installed[p.name], status=PackageStatus.INSTALLED)
                if p.name in installed else p
                for p in packages
            ]
        return packages

    async def list_packages(
        self, filter: ListFilter = ListFilter.INSTALLED, opts: Options | None = None
    ) -> list[PackageInfo]:
        opts = Options.resolve(opts)

        if filter is ListFilter.INSTALLED:
            result = await self.execute(["list", "installed"], opts=opts)
            if not result.ok:
                raise self.fail(result, "list")
            return parse_list_output(result.stdout, PackageStatus.INSTALLED)

        if filter is ListFilter.UPGRADABLE:
            return await self._check_update(opts)

        raise self.not_supported(f"list {filter.value}")

    async def _check_update(self, opts: Options) -> list[PackageInfo]:
        result = await self.execute(["check-update"], opts=opts)
        if self.interpret(result, "check-update") is not Status.SUCCESS:
            raise self.fail(result, "check-update")
        if result.returncode == 0:
            return []

        candidates = parse_list_output(result.stdout, PackageStatus.UNKNOWN)
        installed = await self._installed_versions([p.name for p in candidates], opts)

        upgradable: list[PackageInfo] = []
        for pkg in candidates:
            current = installed.get(pkg.name, "")
            new = pkg.metadata["candidate"]
            if not current or current == new:
                self.log.debug("upgrade_candidate_skipped", package=pkg.name, installed=current)
                continue
            upgradable.append(pkg.evolve(version=current, new_version=new, status=PackageStatus.UPGRADABLE))
        return upgradable

    async def _installed_versions(self, names: Sequence[str], opts: Options) -> dict[str, str]:
        if not names:
            return {}
        result = await self.execute(["-q", "--qf", RPM_QUERY_FORMAT, *names], opts=opts, command="rpm")
        # rpm exits with the number of names it could not find.
        return parse_rpm_query(result.stdout)

    async def get_info(self, package: str, opts: Options | None = None) -> PackageInfo:
        opts = Options.resolve(opts)
        name = self.validate_package_names([package])[0]

        result = await self.execute(["info", name], opts=opts)
        if not result.ok:
            raise self.fail(result, "info", [name])

        info = parse_info_output(result.stdout)
        if info is None:
            raise PackageNotFoundError(package=name, manager=self.name)
        return info

    ## Mutations ##

    async def install(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)

        planned = self.dry_run_result(opts, "install", names)
        if planned is not None:
            return planned
        if not names:
            return []

        targets = [f"{n}.{opts.arch}" if opts.arch else n for n in names]
        result = await self._transaction(["install", *self._confirm_flag(opts), *targets], opts)
        if not result.ok:
            text = f"{result.stdout}{result.stderr}".lower()
            if "nothing to do" in text or "already installed" in text:
                return []
            raise self.fail(result, "install", names)

        return self._records(result, ("Installed",), PackageStatus.INSTALLED, names)

    async def remove(self, packages: Sequence[str], opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        names = self.validate_package_names(packages)

        planned = self.dry_run_result(opts, "remove", names)
        if planned is not None:
            return planned
        if not names:
            return []

        result = await self._transaction(["remove", *self._confirm_flag(opts), *names], opts)
        if not result.ok:
            raise self.fail(result, "remove", names)
        return self._records(result, ("Removed", "Erased"), PackageStatus.AVAILABLE, names)

    async def refresh(self, opts: Options | None = None) -> None:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="refresh")
            return

        result = await self.execute(["makecache", "fast"], opts=opts)
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

        result = await self._transaction(["update", *self._confirm_flag(opts), *names], opts)
        if not result.ok:
            if "no packages marked for update" in f"{result.stdout}{result.stderr}".lower():
                return []
            raise self.fail(result, "upgrade", names)
        return self._records(result, ("Updated", "Upgraded", "Installed"), PackageStatus.INSTALLED, names)

    async def clean(self, opts: Options | None = None) -> None:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="clean")
            return

        result = await self.execute(["clean", "all"], opts=opts)
        if not result.ok:
            raise self.fail(result, "clean")

    async def autoremove(self, opts: Options | None = None) -> list[PackageInfo]:
        opts = Options.resolve(opts)
        if opts.dry_run:
            self.log.info("dry_run", operation="autoremove")
            return []

        result = await self._transaction(["autoremove", *self._confirm_flag(opts)], opts)
        if not result.ok:
            raise self.fail(result, "autoremove")
        return self._records(result, ("Removed", "Erased"), PackageStatus.AVAILABLE)

    async def _transaction(self, args: list[str], opts: Options) -> CommandResult:
        if opts.auto_confirm:
            return await self.execute(args, opts=opts)
        return await self.execute_interactive(args, opts=opts)

    def _records(
        self,
        result: CommandResult,
        kinds: Sequence[str],
        status: PackageStatus,
        names: Sequence[str] = (),
    ) -> list[PackageInfo]:
        if not result.stdout:
            # Interactive runs are not captured.
            return [PackageInfo(name=n, status=status, manager_name=self.name) for n in names]
        return [
            PackageInfo(
                name=name,
                version=version,
                new_version=version if status is PackageStatus.INSTALLED else "",
                status=status,
                manager_name=self.name,
                metadata={"arch": arch},
            )
            for name, arch, version in parse_transaction(result.stdout, kinds)
        ]

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
            result = await self.execute(["-V", name], opts=opts, command="rpm")
            output = result.stdout.strip()

            if "is not installed" in output.lower() or "is not installed" in result.stderr.lower():
                records.append(PackageInfo(
                    name=name,
                    status=PackageStatus.UNKNOWN,
                    manager_name=self.name,
                    metadata={"error": (output or result.stderr).strip()},
                ))
            elif output:
                records.append(PackageInfo(
                    name=name,
                    status=PackageStatus.BROKEN,
                    manager_name=self.name,
                    metadata={"issues": [line.strip() for line in output.splitlines() if line.strip()]},
                ))
            elif result.ok:
                records.append(PackageInfo(name=name, status=PackageStatus.INSTALLED, manager_name=self.name))
            else:
                raise self.fail(result, "verify", [name])

        return records

    async def status(self, opts: Options | None = None) -> ManagerStatus:
        opts = Options.resolve(opts)
        status = await super().status(opts)
        if not status.available:
            return status

        try:
            result = await self.execute(["-qa"], opts=opts, command="rpm")
        except PolypkgError as e:
            status.issues.append(str(e))
        else:
            if result.ok:
                status.installed_count = len([line for line in result.stdout.splitlines() if line.strip()])
            else:
                status.issues.append("unable to query the rpm database")

        try:
            stat = self.cache_dir.stat()
        except OSError:
            pass
        else:
            status.last_refresh = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(
                timespec="seconds"
            )
            try:
                status.cache_size = sum(p.stat().st_size for p in self.cache_dir.rglob("*") if p.is_file())
            except OSError:
                status.cache_size = 0

        status.healthy = not status.issues
        return status
