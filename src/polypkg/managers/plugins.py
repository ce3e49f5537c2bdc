"""Built-in backends and the registry wiring for them."""

from __future__ import annotations

from polypkg.core.config import Settings, get_settings
from polypkg.core.registry import Registry
from polypkg.core.shell import CommandRunner
from polypkg.managers.apt import AptManager
from polypkg.managers.base import SimplePlugin
from polypkg.managers.yum import YumManager

APT_PRIORITY = 90
YUM_PRIORITY = 80


def default_plugins(runner: CommandRunner | None = None) -> dict[str, SimplePlugin]:
    """Plugins for every backend polypkg ships, keyed by backend name.

    Args:
        runner: Runner handed to every manager; None means real subprocesses.
    """
    return {
        AptManager.name: SimplePlugin(lambda: AptManager(runner=runner), priority=APT_PRIORITY),
        YumManager.name: SimplePlugin(lambda: YumManager(runner=runner), priority=YUM_PRIORITY),
    }


def build_registry(
    runner: CommandRunner | None = None, settings: Settings | None = None
) -> Registry:
    """Registry holding the built-in backends, minus any disabled ones."""
    settings = settings or get_settings()
    registry = Registry(cancel_grace=settings.cancel_grace)
    for name, plugin in default_plugins(runner).items():
        if name in settings.disabled_managers:
            continue
        registry.register(name, plugin)
    return registry
