"""Centralised logging setup for polypkg."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.types import FilteringBoundLogger

_CONFIGURED = False
_HANDLERS: list[logging.Handler] = []

DEFAULT_LOG_DIR = Path.home() / ".polypkg" / "logs"


def sanitise_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Drop None values so renderers never see them.

    Args:
        logger: The logger instance.
        method_name: The name of the method called on the logger.
        event_dict: The event dictionary to sanitise.

    Returns:
        The sanitised event dictionary.
    """
    return {k: v for k, v in event_dict.items() if v is not None}


def _file_handler(log_file: Path | None, level: int) -> logging.Handler | None:
    """Build the rotating file handler, or None when the log path is unusable."""
    if log_file is None:
        env_path = os.environ.get("POLYPKG_LOG_FILE")
        log_file = Path(env_path) if env_path else DEFAULT_LOG_DIR / "polypkg.log"

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=2)
    except OSError:
        return None

    handler.setLevel(level)
    return handler


def configure_logging(
    level: str | None = None,
    log_file: Path | None = None,
    enable_console: bool = False,
    force: bool = False,
) -> None:
    """Configure logging for polypkg.

    Calling it again is a no-op unless ``force`` is set, which replaces
    the previous configuration.

    Args:
        level: The logging level as a string (e.g., "DEBUG", "INFO").
            Defaults to ``POLYPKG_LOG_LEVEL`` or INFO.
        log_file: Optional path to a log file for file logging.
        enable_console: Whether to render log events to stderr.
        force: Reconfigure even if logging was already set up.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    for handler in _HANDLERS:
        logging.root.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()

    level_name = (level or os.environ.get("POLYPKG_LOG_LEVEL") or "INFO").upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    shared_processors = [
        sanitise_context,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(console_handler)
        _HANDLERS.append(console_handler)

        renderers = [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    file_handler = _file_handler(log_file, numeric_level)
    if file_handler is not None:
        logging.root.addHandler(file_handler)
        _HANDLERS.append(file_handler)
    logging.root.setLevel(numeric_level)

    _CONFIGURED = True


def get_logger(name: str = "polypkg") -> FilteringBoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Optional name for the logger, typically the module name.

    Returns:
        A structlog FilteringBoundLogger instance.

    Usage:
        log = get_logger(__name__)
        log.info("event_name", manager="apt", duration_ms=123)

    Standard context keys:
        - manager (str): Backend name
        - operation (str): Contract operation being performed
        - command (str): Full command line of a subprocess
        - returncode (int): Subprocess exit status
        - duration_ms (int): Operation duration in milliseconds
        - error (str): Error message if applicable
    """
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name)
