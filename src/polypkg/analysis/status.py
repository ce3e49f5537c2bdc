"""Map errors and fan-out results onto the Status taxonomy and exit codes."""

from __future__ import annotations

import asyncio
from typing import Any, Iterator, Mapping

from polypkg.core.errors import (
    EXIT_GENERAL_ERROR,
    EXIT_INTERRUPTED,
    EXIT_NO_PERMISSION,
    EXIT_SUCCESS,
    EXIT_UNAVAILABLE,
    EXIT_USAGE_ERROR,
    CommandNotFoundError,
    ConfigError,
    InvalidPackageNameError,
    ManagerUnavailableError,
    OperationCancelledError,
    OperationNotSupportedError,
    PackageNotFoundError,
    Status,
    StatusError,
    TransientError,
)
from polypkg.core.models import OperationResult

EXIT_CODES = {
    Status.SUCCESS: EXIT_SUCCESS,
    Status.GENERAL_ERROR: EXIT_GENERAL_ERROR,
    Status.USAGE_ERROR: EXIT_USAGE_ERROR,
    Status.UNAVAILABLE_ERROR: EXIT_UNAVAILABLE,
    Status.PERMISSION_ERROR: EXIT_NO_PERMISSION,
}

# Sentinel errors with a fixed category, checked in order.
_SENTINELS: tuple[tuple[type[BaseException], Status], ...] = (
    (InvalidPackageNameError, Status.USAGE_ERROR),
    (ConfigError, Status.USAGE_ERROR),
    (OperationNotSupportedError, Status.UNAVAILABLE_ERROR),
    (ManagerUnavailableError, Status.UNAVAILABLE_ERROR),
    (PackageNotFoundError, Status.UNAVAILABLE_ERROR),
    (CommandNotFoundError, Status.UNAVAILABLE_ERROR),
    (TransientError, Status.GENERAL_ERROR),
    (OperationCancelledError, Status.GENERAL_ERROR),
)

_PERMISSION_KEYWORDS = (
    "permission denied",
    "are you root",
    "try with sudo",
    "access denied",
    "operation not permitted",
)
_UNAVAILABLE_KEYWORDS = ("not found", "not available", "unavailable")
_USAGE_KEYWORDS = ("requires", "invalid", "usage")


def _chain(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or getattr(current, "cause", None)


def classify_message(message: str) -> Status:
    """Guess a category from free text.

    Only used for errors that carry no type information. Keyword matching
    is unreliable across tools and locales, so a typed error always wins.
    """
    text = message.lower()
    if any(k in text for k in _PERMISSION_KEYWORDS):
        return Status.PERMISSION_ERROR
    if any(k in text for k in _UNAVAILABLE_KEYWORDS):
        return Status.UNAVAILABLE_ERROR
    if any(k in text for k in _USAGE_KEYWORDS):
        return Status.USAGE_ERROR
    return Status.GENERAL_ERROR


def classify(error: BaseException | None) -> Status:
    """Classify an error in three tiers.

    1. A StatusError anywhere in the cause chain supplies its status.
    2. Known sentinel errors map to fixed categories.
    3. Anything else falls back to classify_message().
    """
    if error is None:
        return Status.SUCCESS

    for link in _chain(error):
        if isinstance(link, StatusError):
            return link.status

    for link in _chain(error):
        for error_type, status in _SENTINELS:
            if isinstance(link, error_type):
                return status

    return classify_message(str(error))


def exit_code_for(status: Status) -> int:
    return EXIT_CODES[status]


def is_interrupt(error: BaseException) -> bool:
    return isinstance(error, (KeyboardInterrupt, asyncio.CancelledError, OperationCancelledError))


def exit_code_for_error(error: BaseException | None) -> int:
    """Process exit code for a single error; interrupts exit 130."""
    if error is not None and is_interrupt(error):
        return EXIT_INTERRUPTED
    return exit_code_for(classify(error))


def exit_code_for_results(results: Mapping[str, OperationResult[Any]]) -> int:
    """Process exit code for a multi-backend operation.

    Succeeds when at least one backend succeeded. When all failed, the
    shared category is used if every backend agrees, otherwise a general
    error. A run where every backend was cancelled exits 130 and a run
    with no backends at all is unavailable.
    """
    if not results:
        return EXIT_UNAVAILABLE

    errors = [r.error for r in results.values() if r.error is not None]
    if len(errors) < len(results):
        return EXIT_SUCCESS

    if all(is_interrupt(e) for e in errors):
        return EXIT_INTERRUPTED

    statuses = {classify(e) for e in errors}
    if len(statuses) == 1:
        return exit_code_for(statuses.pop())
    return EXIT_GENERAL_ERROR
