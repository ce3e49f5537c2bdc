"""Package-name validation.

Names are passed to native tools as argv entries. Anything outside a
conservative character set is rejected before a subprocess starts.
"""

from __future__ import annotations

import re
from typing import Iterable

from polypkg.core.errors import InvalidPackageNameError

MAX_NAME_LENGTH = 255

# Letters, digits, - _ . + plus ':' (arch qualifier) and '/' (repo prefix).
_NAME_RE = re.compile(r"[A-Za-z0-9._+:/-]+")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def validate_package_name(name: str) -> str:
    """Validate a single package name.

    Args:
        name: Candidate package name.

    Returns:
        The name unchanged, for call chaining.

    Raises:
        InvalidPackageNameError: If the name is empty, too long, contains
            control characters, a leading dash, a path-traversal sequence,
            or any character outside the allowed set (this covers ``;``, ``|``, `````, ``&``,
            ``$``, whitespace and quotes).
    """
    if not isinstance(name, str) or name == "":
        raise InvalidPackageNameError("package name cannot be empty", package=name, reason="empty")

    if len(name) > MAX_NAME_LENGTH:
        raise InvalidPackageNameError(
            f"package name too long (max {MAX_NAME_LENGTH} characters)",
            package=name[:32] + "...",
            reason="too_long",
        )

    if name.startswith("-"):
        raise InvalidPackageNameError(
            "package name cannot start with '-'", package=name, reason="option"
        )

    if _CONTROL_RE.search(name):
        raise InvalidPackageNameError(
            "package name contains control characters", package=repr(name), reason="control"
        )

    if ".." in name.split("/") or "../" in name or name.startswith("/"):
        raise InvalidPackageNameError(
            "package name contains a path traversal sequence", package=name, reason="traversal"
        )

    if not _NAME_RE.fullmatch(name):
        raise InvalidPackageNameError(
            "package name contains potentially dangerous characters",
            package=name,
            reason="charset",
        )

    return name


def validate_package_names(names: Iterable[str]) -> list[str]:
    """Validate every name, stopping at the first invalid one.

    Returns:
        The names as a list.
    """
    return [validate_package_name(n) for n in names]
