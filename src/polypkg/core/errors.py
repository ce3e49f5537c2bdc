"""Exceptions, the outcome taxonomy and process exit codes for polypkg."""

from __future__ import annotations

import asyncio
import functools
from enum import Enum
from typing import Any, Callable, Self, TypeVar

from polypkg.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Exit codes (POSIX, sysexits.h and shell conventions)
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_USAGE_ERROR = 2
EXIT_UNAVAILABLE = 69
EXIT_NO_PERMISSION = 77
EXIT_INTERRUPTED = 130


class Status(Enum):
    """Closed set of outcome categories, independent of any native tool."""

    SUCCESS = "success"
    USAGE_ERROR = "usage_error"
    PERMISSION_ERROR = "permission_error"
    UNAVAILABLE_ERROR = "unavailable_error"
    GENERAL_ERROR = "general_error"


class PolypkgError(Exception):
    """Base exception class with context propagation.

    All exceptions raised by polypkg inherit from this class.
    Context is a dictionary that accumulates relevant information
    as the exception propagates up the call stack.

    Example:
        raise PolypkgError("An error occurred", context={"package": "vim"})

        # Or with context propagation
        try:
            ...
        except PolypkgError as e:
            raise e.with_context(manager="apt", operation="install")
    """
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def with_context(self, **new_context: Any) -> Self:
        """Merge additional context into this exception and return it.

        Args:
            **new_context: Additional context to add to the exception.

        Returns:
            The same exception instance with merged context.
        """
        self.context.update(new_context)
        return self

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class TransientError(PolypkgError):
    """Errors that may succeed when retried.

    Typically timeouts or a package database lock held by another process.
    Operations raising this exception should be idempotent.
    """
    pass


class UserError(PolypkgError):
    """Errors caused by user input.

    These should not be retried without correcting the input.
    """
    pass


class SystemError(PolypkgError):
    """Errors due to the host environment.

    Missing tools, unreadable files and similar conditions that need
    intervention outside polypkg.
    """
    pass


## Taxonomy-carrying error ##

class StatusError(PolypkgError):
    """An operation outcome already classified into the Status taxonomy.

    Adapters raise this at the point where they inspect a subprocess
    result, so nothing further up has to re-parse stderr text.
    """
    def __init__(
        self,
        status: Status,
        message: str | None = None,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialise StatusError.

        Args:
            status: The taxonomy value for this outcome.
            message: Optional human-readable message.
            cause: Underlying exception, if any.
            context: Additional context information.
        """
        self.status = status
        self.cause = cause
        if message is None:
            message = status.value.replace("_", " ")
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, context=context)


## Sentinel errors ##

class OperationNotSupportedError(UserError):
    """The backend does not implement the requested operation."""

    def __init__(
        self,
        manager: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if manager:
            ctx["manager"] = manager
        if operation:
            ctx["operation"] = operation
        super().__init__("operation not supported by this package manager", context=ctx)


class InvalidPackageNameError(UserError):
    """A package name failed validation.

    Raised before any subprocess is launched; names reach the native
    tools as argv entries and must never carry shell syntax.
    """
    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        reason: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if package is not None:
            ctx["package"] = package
        if reason:
            ctx["reason"] = reason
        super().__init__(message or "invalid package name", context=ctx)


class PackageNotFoundError(UserError):
    """Requested package is unknown to the backend."""

    def __init__(
        self,
        package: str | None = None,
        manager: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if manager:
            ctx["manager"] = manager
        super().__init__(f"package '{package or 'unknown'}' not found", context=ctx)


class ManagerUnavailableError(SystemError):
    """The requested backend is not registered or not usable on this host."""

    def __init__(
        self,
        manager: str | None = None,
        message: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if manager:
            ctx["manager"] = manager
        if message is None:
            message = f"package manager '{manager or 'unknown'}' not available"
        super().__init__(message, context=ctx)


class RegistryError(PolypkgError):
    """Invalid use of the plugin registry."""
    pass


class ConfigError(UserError):
    """Invalid configuration value."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        value: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if key:
            ctx["key"] = key
        if value is not None:
            ctx["value"] = value
        super().__init__(message, context=ctx)


## Subprocess errors ##

class CommandNotFoundError(SystemError):
    """The native tool could not be launched."""

    def __init__(
        self,
        command: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        super().__init__(f"command not found: {command or 'unknown'}", context=ctx)


class CommandTimeoutError(TransientError):
    """A subprocess exceeded its time budget and was killed."""

    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        timeout: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if timeout is not None:
            ctx["timeout"] = timeout
        if message is None:
            message = f"Command timed out after {timeout or 'unknown'}s"
        super().__init__(message, context=ctx)


class CommandFailedError(PolypkgError):
    """A subprocess exited with a non-zero status.

    Carries the exit code and captured output so callers can inspect them.
    """
    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        returncode: int | None = None,
        stderr: str | None = None,
        stdout: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if returncode is not None:
            ctx["returncode"] = returncode
        if stderr:
            ctx["stderr"] = stderr
        self.returncode = returncode
        self.stderr = stderr or ""
        self.stdout = stdout or ""
        if message is None:
            message = f"Command failed with exit code {returncode if returncode is not None else 'unknown'}"
        super().__init__(message, context=ctx)


## Fan-out errors ##

class OperationTimeoutError(TransientError):
    """A backend did not finish its part of a fan-out before the deadline."""

    def __init__(
        self,
        manager: str | None = None,
        operation: str | None = None,
        timeout: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if manager:
            ctx["manager"] = manager
        if operation:
            ctx["operation"] = operation
        if timeout is not None:
            ctx["timeout"] = timeout
        super().__init__(f"{operation or 'operation'} timed out", context=ctx)


class OperationCancelledError(PolypkgError):
    """A backend's part of a fan-out was cancelled before it finished."""

    def __init__(
        self,
        manager: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if manager:
            ctx["manager"] = manager
        if operation:
            ctx["operation"] = operation
        super().__init__(f"{operation or 'operation'} cancelled", context=ctx)


def retry_on_transient(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry functions on transient errors with exponential backoff.

    Args:
        max_retries: Maximum number of attempts before giving up.
        base_delay: Initial delay between attempts in seconds.
        backoff: Multiplier for delay to implement exponential backoff.

    Returns:
        A decorator that applies the retry logic to the decorated function.

    Example:
        @retry_on_transient(max_retries=5, base_delay=2.0)
        async def refresh():
            ...

    Note:
        - Only retries on TransientError exceptions.
        - Decorates coroutine functions.
    """
    max_retries = max(1, max_retries)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except TransientError as e:
                    if attempt == max_retries:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=max_retries,
                            error=str(e),
                            context=e.context,
                        )
                        raise

                    delay = base_delay * (backoff ** (attempt - 1))
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return async_wrapper  # type: ignore

    return decorator


# CLI Error Message Templates

ERROR_TEMPLATES = {
    InvalidPackageNameError: (
        "❌ Invalid package name: {package}\n"
        "   Names may only contain letters, digits and - _ . + : /"
    ),
    PackageNotFoundError: (
        "❌ Package not found: {package}\n"
        "   Suggestion: Try 'polypkg search {package}' to find similar packages"
    ),
    ManagerUnavailableError: (
        "⚠️ {message}\n"
        "   Run 'polypkg managers' to see which package managers are available"
    ),
    CommandTimeoutError: (
        "⚠️ Command timed out after {timeout}s: {command}\n"
        "   The operation took too long - this may be due to network issues"
    ),
    CommandNotFoundError: (
        "⚠️ {message}"
    ),
    TransientError: (
        "⚠️ Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    UserError: (
        "❌ {message}"
    ),
    SystemError: (
        "⚠️ System error: {message}\n"
        "   Please check your system configuration and try again"
    ),
    PolypkgError: (
        "❌ {message}"
    ),
}


def format_error_message(error: PolypkgError) -> str:
    """Format an error message for CLI display based on the error type.

    Falls back along the class hierarchy so subclasses without their own
    template use their parent's.

    Args:
        error: The PolypkgError instance to format.

    Returns:
        A formatted string message for CLI display.
    """
    template = ERROR_TEMPLATES[PolypkgError]
    for cls in type(error).__mro__:
        if cls in ERROR_TEMPLATES:
            template = ERROR_TEMPLATES[cls]
            break
    fields = {**error.context, "message": error.message}
    try:
        return template.format(**fields)
    except KeyError:
        return f"❌ {error.message}"
