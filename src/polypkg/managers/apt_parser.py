"""Parsers for APT and dpkg text output.

All functions take the raw stdout of one command (run with LC_ALL=C) and
return fresh PackageInfo records tagged with the ``apt`` manager name.
"""

from __future__ import annotations

import re
from typing import Iterable

from polypkg.core.models import PackageInfo, PackageStatus

MANAGER = "apt"

# vim/jammy-updates,jammy-security 2:8.2.3995-1ubuntu2.15 amd64 [installed]
_SEARCH_HEADER_RE = re.compile(
    r"^(?P<name>[^/\s]+)/(?P<suite>\S+)\s+(?P<version>\S+)\s+(?P<arch>\S+)"
    r"(?:\s+\[(?P<flags>[^\]]*)\])?\s*$"
)

# libssl3/jammy-updates 3.0.2-0ubuntu1.10 amd64 [upgradable from: 3.0.2-0ubuntu1.9]
_UPGRADABLE_RE = re.compile(
    r"^(?P<name>[^/\s]+)/(?P<suite>\S+)\s+(?P<new>\S+)\s+(?P<arch>\S+)"
    r"\s+\[upgradable from: (?P<old>[^\]]+)\]"
)

# Setting up libssl3:amd64 (3.0.2-0ubuntu1.9) ...
_SETTING_UP_RE = re.compile(r"^Setting up (?P<name>[^\s:]+)(?::(?P<arch>\S+))? \((?P<version>[^)]+)\)")

# Removing vim:amd64 (2:8.2.3995-1ubuntu2.15) ...
_REMOVING_RE = re.compile(r"^Removing (?P<name>[^\s:]+)(?::(?P<arch>\S+))? \((?P<version>[^)]+)\)")

# vim is already the newest version (2:8.2.3995-1ubuntu2.15).
_NEWEST_RE = re.compile(r"^(?P<name>[^\s:]+)(?::(?P<arch>\S+))? is already the newest version \((?P<version>[^)]+)\)")

# Total package names: 63213 (1,264 k)
_TOTAL_NAMES_RE = re.compile(r"^Total package names:\s*(?P<count>\d+)")


def _lines(text: str) -> Iterable[str]:
    return text.replace("\r\n", "\n").split("\n")


def parse_search_output(text: str) -> list[PackageInfo]:
    """Parse ``apt search`` output.

    Each hit is a header line followed by an indented description line::

        Sorting...
        Full Text Search...
        vim/jammy 2:8.2.3995-1ubuntu2 amd64
          Vi IMproved - enhanced vi editor

    Installed and upgradable hits carry a bracketed flag on the header.
    """
    packages: list[PackageInfo] = []
    current: dict | None = None

    def flush() -> None:
        if current is not None:
            packages.append(_search_record(**current))

    for line in _lines(text):
        if not line.strip() or line.startswith(("Sorting...", "Full Text Search...", "WARNING:")):
            continue

        match = _SEARCH_HEADER_RE.match(line)
        if match:
            flush()
            current = {**match.groupdict(), "description": ""}
        elif current is not None and line.startswith(" ") and not current["description"]:
            current["description"] = line.strip()

    flush()
    return packages


def _search_record(
    name: str, suite: str, version: str, arch: str, flags: str | None, description: str
) -> PackageInfo:
    flags = flags or ""
    category = suite.split(",")[0]
    metadata = {"arch": arch}

    if flags.startswith("upgradable from:"):
        old = flags.split(":", 1)[1].strip()
        return PackageInfo(
            name=name,
            version=old,
            new_version=version,
            status=PackageStatus.UPGRADABLE,
            description=description,
            category=category,
            manager_name=MANAGER,
            metadata=metadata,
        )

    if "installed" in flags.split(","):
        return PackageInfo(
            name=name,
            version=version,
            new_version=version,
            status=PackageStatus.INSTALLED,
            description=description,
            category=category,
            manager_name=MANAGER,
            metadata=metadata,
        )

    return PackageInfo(
        name=name,
        new_version=version,
        status=PackageStatus.AVAILABLE,
        description=description,
        category=category,
        manager_name=MANAGER,
        metadata=metadata,
    )


def parse_dpkg_status(text: str) -> dict[str, tuple[str, str]]:
    """Parse ``dpkg-query -W -f '${binary:Package} ${Status} ${Version}\\n'``.

    Returns:
        Mapping of package name to ``(state, version)`` where state is the
        last word of dpkg's status triple (installed, config-files, ...).
        Names dpkg does not know are absent.
    """
    states: dict[str, tuple[str, str]] = {}
    for line in _lines(text):
        parts = line.split()
        if len(parts) < 4 or line.startswith("dpkg-query:"):
            continue
        # want flag, error flag, state; not-installed rows have no version
        name = parts[0].split(":")[0]
        states[name] = (parts[3], parts[4] if len(parts) > 4 else "")
    return states


def apply_dpkg_status(
    packages: list[PackageInfo], states: dict[str, tuple[str, str]]
) -> list[PackageInfo]:
    """Return search results re-tagged with the real dpkg state."""
    merged: list[PackageInfo] = []
    for pkg in packages:
        state, installed = states.get(pkg.name, ("", ""))
        repo = pkg.new_version

        if state == "installed" and installed:
            if repo and repo != installed:
                merged.append(pkg.evolve(
                    version=installed, new_version=repo, status=PackageStatus.UPGRADABLE
                ))
            else:
                merged.append(pkg.evolve(
                    version=installed, new_version=repo or installed, status=PackageStatus.INSTALLED
                ))
        elif state == "config-files":
            # Removed but configured: the same as not installed elsewhere.
            merged.append(pkg.evolve(
                version="", status=PackageStatus.AVAILABLE, metadata={**pkg.metadata, "config_files": True}
            ))
        else:
            merged.append(pkg.evolve(version="", status=PackageStatus.AVAILABLE))
    return merged


def parse_list_installed(text: str) -> list[PackageInfo]:
    """Parse ``dpkg-query -W -f '${binary:Package} ${Version} ${Architecture}\\n'``."""
    packages: list[PackageInfo] = []
    for line in _lines(text):
        parts = line.split()
        if len(parts) < 2:
            continue
        name, _, qualifier = parts[0].partition(":")
        arch = parts[2] if len(parts) >= 3 else qualifier
        packages.append(PackageInfo(
            name=name,
            version=parts[1],
            status=PackageStatus.INSTALLED,
            manager_name=MANAGER,
            metadata={"arch": arch} if arch else {},
        ))
    return packages


def parse_list_upgradable(text: str) -> list[PackageInfo]:
    """Parse ``apt list --upgradable``."""
    packages: list[PackageInfo] = []
    for line in _lines(text):
        match = _UPGRADABLE_RE.match(line)
        if not match or match["old"] == match["new"]:
            continue
        packages.append(PackageInfo(
            name=match["name"],
            version=match["old"],
            new_version=match["new"],
            status=PackageStatus.UPGRADABLE,
            category=match["suite"].split(",")[0],
            manager_name=MANAGER,
            metadata={"arch": match["arch"]},
        ))
    return packages


def parse_install_output(text: str) -> list[PackageInfo]:
    """Parse ``apt-get install`` progress output.

    A package counts as installed only when dpkg reports
    ``Setting up name (version) ...``; packages already at the newest
    version are reported as installed too so callers can tell "nothing
    to do" from "did nothing".
    """
    packages: list[PackageInfo] = []
    seen: set[str] = set()
    for line in _lines(text):
        line = line.strip()
        match = _SETTING_UP_RE.match(line)
        already = False
        if not match:
            match = _NEWEST_RE.match(line)
            already = match is not None
        if not match or match["name"] in seen:
            continue

        seen.add(match["name"])
        metadata = {"arch": match["arch"]} if match["arch"] else {}
        if already:
            metadata["already_installed"] = True
        packages.append(PackageInfo(
            name=match["name"],
            version=match["version"],
            new_version=match["version"],
            status=PackageStatus.INSTALLED,
            manager_name=MANAGER,
            metadata=metadata,
        ))
    return packages


def parse_remove_output(text: str) -> list[PackageInfo]:
    """Parse ``Removing name:arch (version) ...`` lines from apt-get."""
    packages: list[PackageInfo] = []
    for line in _lines(text):
        match = _REMOVING_RE.match(line.strip())
        if not match:
            continue
        packages.append(PackageInfo(
            name=match["name"],
            version=match["version"],
            status=PackageStatus.AVAILABLE,
            manager_name=MANAGER,
            metadata={"arch": match["arch"]} if match["arch"] else {},
        ))
    return packages


def parse_show_output(text: str) -> PackageInfo | None:
    """Parse the first stanza of ``apt-cache show``.

    Returns:
        The package, or None when the output holds no ``Package:`` field.
    """
    fields: dict[str, str] = {}
    for line in _lines(text):
        if not line.strip():
            if fields:
                break
            continue
        if line.startswith(" "):
            continue
        key, sep, value = line.partition(":")
        if sep:
            fields.setdefault(key.strip(), value.strip())

    if not fields.get("Package"):
        return None

    metadata = {
        key.lower().replace("-", "_"): fields[key]
        for key in ("Architecture", "Maintainer", "Homepage", "Installed-Size", "Depends", "Priority")
        if key in fields
    }
    if "Architecture" in fields:
        metadata["arch"] = metadata.pop("architecture")

    return PackageInfo(
        name=fields["Package"],
        new_version=fields.get("Version", ""),
        status=PackageStatus.AVAILABLE,
        description=fields.get("Description", fields.get("Description-en", "")),
        category=fields.get("Section", ""),
        manager_name=MANAGER,
        metadata=metadata,
    )


def parse_cache_stats(text: str) -> int:
    """Total package names from ``apt-cache stats``; 0 when absent."""
    for line in _lines(text):
        match = _TOTAL_NAMES_RE.match(line.strip())
        if match:
            return int(match["count"])
    return 0
