"""Configuration module for the polypkg runtime environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Mapping

from polypkg.core.errors import ConfigError

DEFAULT_TIMEOUT = 300.0
DEFAULT_CANCEL_GRACE = 5.0


@dataclass(frozen=True)
class Settings:
    """Process-wide settings for polypkg."""

    timeout: float = DEFAULT_TIMEOUT
    command_timeout: float | None = None
    cancel_grace: float = DEFAULT_CANCEL_GRACE
    log_level: str = "INFO"
    log_file: Path | None = None
    disabled_managers: frozenset[str] = field(default_factory=frozenset)


def _float_var(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number", key=key, value=raw) from e
    if value < 0:
        raise ConfigError(f"{key} must not be negative", key=key, value=raw)
    return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from POLYPKG_* environment variables.

    Args:
        env: Mapping to read from; defaults to ``os.environ``.

    Returns:
        The resolved Settings.

    Raises:
        ConfigError: If a numeric variable cannot be parsed.
    """
    env = os.environ if env is None else env

    command_timeout = _float_var(env, "POLYPKG_COMMAND_TIMEOUT", 0.0)
    log_file = env.get("POLYPKG_LOG_FILE")
    disabled = env.get("POLYPKG_DISABLED_MANAGERS", "")

    return Settings(
        timeout=_float_var(env, "POLYPKG_TIMEOUT", DEFAULT_TIMEOUT),
        command_timeout=command_timeout or None,
        cancel_grace=_float_var(env, "POLYPKG_CANCEL_GRACE", DEFAULT_CANCEL_GRACE),
        log_level=env.get("POLYPKG_LOG_LEVEL", "INFO").upper(),
        log_file=Path(log_file) if log_file else None,
        disabled_managers=frozenset(n.strip() for n in disabled.split(",") if n.strip()),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for the current process, read once."""
    return load_settings()
