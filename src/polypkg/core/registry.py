"""Plugin registry: backend lookup, resolution and concurrent fan-out."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence, TypeVar

from polypkg.core.errors import (
    ManagerUnavailableError,
    OperationCancelledError,
    OperationTimeoutError,
    PolypkgError,
    RegistryError,
)
from polypkg.core.logging import get_logger
from polypkg.core.models import ListFilter, ManagerStatus, OperationResult, Options, PackageInfo

if TYPE_CHECKING:
    from polypkg.managers.base import PackageManager, Plugin

log = get_logger(__name__)

T = TypeVar("T")

Results = dict[str, OperationResult[T]]


@dataclass(frozen=True)
class FanOutSummary:
    """Aggregate view of one fan-out."""

    total: int
    succeeded: int
    failed: int
    package_count: int

    @property
    def any_succeeded(self) -> bool:
        return self.succeeded > 0


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class Registry:
    """Directory of backends keyed by name.

    Registration happens up front; the first lookup seals the registry and
    later registrations are rejected. Each backend's manager instance is
    created on first use and reused afterwards.

    Example:
        registry = Registry()
        registry.register("apt", SimplePlugin(AptManager, priority=90))
        results = await registry.search_all(["vim"], timeout=60)
    """

    def __init__(self, cancel_grace: float = 5.0) -> None:
        """
        Args:
            cancel_grace: Seconds to wait for cancelled backends to wind down.
        """
        self.cancel_grace = cancel_grace
        self._lock = threading.RLock()
        self._plugins: dict[str, Plugin] = {}
        self._instances: dict[str, PackageManager] = {}
        self._sealed = False

    ## Registration ##

    def register(self, name: str, plugin: Plugin) -> None:
        """Add a backend.

        Raises:
            RegistryError: If the name is empty or taken, the plugin is
                None, or the registry is already sealed.
        """
        if not name:
            raise RegistryError("package manager name cannot be empty")
        if plugin is None:
            raise RegistryError("plugin cannot be None", context={"manager": name})

        with self._lock:
            if self._sealed:
                raise RegistryError(
                    "registry is sealed; register managers before first use",
                    context={"manager": name},
                )
            if name in self._plugins:
                raise RegistryError(
                    f"package manager '{name}' is already registered", context={"manager": name}
                )
            self._plugins[name] = plugin

        log.debug("manager_registered", manager=name, priority=plugin.priority)

    def unregister(self, name: str) -> bool:
        """Remove a backend; returns whether it was registered."""
        with self._lock:
            self._instances.pop(name, None)
            return self._plugins.pop(name, None) is not None

    def clear(self) -> None:
        """Drop every backend and unseal."""
        with self._lock:
            self._plugins.clear()
            self._instances.clear()
            self._sealed = False

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    ## Lookup ##

    def get(self, name: str) -> PackageManager | None:
        """Manager for a registered name, or None."""
        with self._lock:
            self.seal()
            plugin = self._plugins.get(name)
            if plugin is None:
                return None
            manager = self._instances.get(name)
            if manager is None:
                manager = plugin.create_manager()
                self._instances[name] = manager
            return manager

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._plugins)

    def count(self) -> int:
        with self._lock:
            return len(self._plugins)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._plugins

    def priority(self, name: str) -> int:
        with self._lock:
            plugin = self._plugins.get(name)
        if plugin is None:
            raise ManagerUnavailableError(name, f"package manager '{name}' is not registered")
        return plugin.priority

    def managers(self) -> dict[str, PackageManager]:
        """Every registered manager, available or not, sorted by name."""
        managers: dict[str, PackageManager] = {}
        for name in self.names():
            manager = self.get(name)
            if manager is not None:
                managers[name] = manager
        return managers

    ## Resolution ##

    async def _check_available(self, name: str, manager: PackageManager) -> bool:
        try:
            return await manager.is_available()
        except PolypkgError as e:
            log.warning("availability_check_failed", manager=name, error=str(e))
            return False

    async def get_available(self) -> dict[str, PackageManager]:
        """Managers whose native tool works on this host, checked concurrently."""
        managers = self.managers()
        checks = await asyncio.gather(*(self._check_available(n, m) for n, m in managers.items()))
        available = {name: m for (name, m), ok in zip(managers.items(), checks) if ok}
        log.debug("managers_available", available=list(available), registered=list(managers))
        return available

    async def get_manager(self, name: str) -> PackageManager:
        """A single manager that must be both registered and available.

        Raises:
            ManagerUnavailableError: If either condition does not hold.
        """
        manager = self.get(name)
        if manager is None:
            raise ManagerUnavailableError(name, f"package manager '{name}' is not registered")
        if not await self._check_available(name, manager):
            raise ManagerUnavailableError(name)
        return manager

    async def get_by_category(self, category: str) -> dict[str, PackageManager]:
        available = await self.get_available()
        return {name: m for name, m in available.items() if m.category == category}

    async def get_best_match(self, category: str) -> PackageManager | None:
        """Highest-priority available manager in a category.

        Equal priorities are broken by name so the choice is stable.
        """
        candidates = await self.get_by_category(category)
        if not candidates:
            return None
        best = min(candidates, key=lambda name: (-self.priority(name), name))
        return candidates[best]

    ## Fan-out ##

    async def fan_out(
        self,
        operation: str,
        call: Callable[[PackageManager], Awaitable[T]],
        *,
        managers: Sequence[str] | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Results[T]:
        """Run ``call`` against several backends concurrently.

        Each backend runs in its own task, which first checks availability
        and then makes the call, reporting only through its own result
        slot; one backend's failure never affects another. The deadline and
        ``cancel`` cover those checks as well as the calls: unfinished
        backends are cancelled and reported as OperationTimeoutError or
        OperationCancelledError. On timeout, implicitly selected backends
        still probing count as unavailable and are left out.

        Args:
            operation: Operation name for logs and errors.
            call: Coroutine function applied to each manager.
            managers: Explicit backend names; defaults to every available one.
                Unregistered or unavailable names get an error result.
            timeout: Overall deadline in seconds; None waits indefinitely.
            cancel: Event that cancels the remaining work when set.

        Returns:
            Results keyed by backend name, sorted by name. Empty when no
            backend is selected.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        explicit = managers is not None
        names = list(dict.fromkeys(managers)) if managers is not None else self.names()
        if not names:
            return {}

        results: Results[Any] = {}
        ready: set[str] = set()
        start = time.perf_counter()
        log.info("fanout_start", operation=operation, managers=names, timeout=timeout)

        async def run_one(name: str) -> None:
            manager = self.get(name)
            if manager is None:
                if explicit:
                    error = ManagerUnavailableError(name, f"package manager '{name}' is not registered")
                    results[name] = OperationResult(manager=name, error=error)
                return
            if not await self._check_available(name, manager):
                if explicit:
                    results[name] = OperationResult(manager=name, error=ManagerUnavailableError(name))
                return

            ready.add(name)
            begin = time.perf_counter()
            try:
                value = await call(manager)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                results[name] = OperationResult(manager=name, error=e, duration_ms=_elapsed_ms(begin))
                log.warning("fanout_backend_failed", operation=operation, manager=name, error=str(e))
            else:
                results[name] = OperationResult(manager=name, value=value, duration_ms=_elapsed_ms(begin))

        tasks = {asyncio.create_task(run_one(name), name=f"{operation}:{name}"): name for name in names}
        stop = asyncio.create_task(cancel.wait()) if cancel is not None else None
        watched = set(tasks) | ({stop} if stop is not None else set())

        pending = set(tasks)
        reason = ""

        try:
            while pending:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
                watched -= done
                if stop is not None and stop in done:
                    reason = "cancelled"
                    break
                if not done:
                    reason = "timeout"
                    break
        except asyncio.CancelledError:
            log.warning("fanout_interrupted", operation=operation, pending=[tasks[t] for t in pending])
            await self._abandon(pending)
            raise
        finally:
            if stop is not None:
                stop.cancel()

        if pending:
            await self._abandon(pending)
            for task in pending:
                name = tasks[task]
                if name in results:
                    continue
                if reason == "timeout" and not explicit and name not in ready:
                    log.warning("availability_check_unfinished", manager=name, reason=reason)
                    continue
                error: PolypkgError
                if reason == "timeout":
                    error = OperationTimeoutError(manager=name, operation=operation, timeout=timeout)
                else:
                    error = OperationCancelledError(manager=name, operation=operation)
                results[name] = OperationResult(manager=name, error=error, duration_ms=_elapsed_ms(start))

        # Snapshot so a backend that ignored cancellation cannot write later.
        final = dict(sorted(results.items()))
        log.info(
            "fanout_complete",
            operation=operation,
            total=len(final),
            failed=sum(1 for r in final.values() if not r.ok),
            reason=reason or None,
            duration_ms=_elapsed_ms(start),
        )
        return final

    async def _abandon(self, pending: set[asyncio.Task[None]]) -> None:
        if not pending:
            return
        for task in pending:
            task.cancel()
        _, stuck = await asyncio.wait(pending, timeout=self.cancel_grace)
        if stuck:
            log.warning("fanout_tasks_unresponsive", tasks=[t.get_name() for t in stuck])

    async def search_all(
        self, query: Sequence[str], opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("search", lambda m: m.search(query, opts), **kw)

    async def list_all(
        self, filter: ListFilter = ListFilter.INSTALLED, opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("list", lambda m: m.list_packages(filter, opts), **kw)

    async def install_all(
        self, packages: Sequence[str], opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("install", lambda m: m.install(packages, opts), **kw)

    async def remove_all(
        self, packages: Sequence[str], opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("remove", lambda m: m.remove(packages, opts), **kw)

    async def get_info_all(
        self, package: str, opts: Options | None = None, **kw: Any
    ) -> Results[PackageInfo]:
        return await self.fan_out("info", lambda m: m.get_info(package, opts), **kw)

    async def upgrade_all(
        self, packages: Sequence[str] = (), opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("upgrade", lambda m: m.upgrade(packages, opts), **kw)

    async def refresh_all(self, opts: Options | None = None, **kw: Any) -> Results[None]:
        return await self.fan_out("refresh", lambda m: m.refresh(opts), **kw)

    async def clean_all(self, opts: Options | None = None, **kw: Any) -> Results[None]:
        return await self.fan_out("clean", lambda m: m.clean(opts), **kw)

    async def autoremove_all(
        self, opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("autoremove", lambda m: m.autoremove(opts), **kw)

    async def verify_all(
        self, packages: Sequence[str], opts: Options | None = None, **kw: Any
    ) -> Results[list[PackageInfo]]:
        return await self.fan_out("verify", lambda m: m.verify(packages, opts), **kw)

    async def status_all(self, opts: Options | None = None, **kw: Any) -> Results[ManagerStatus]:
        return await self.fan_out("status", lambda m: m.status(opts), **kw)


def summarize(results: dict[str, OperationResult[Any]]) -> FanOutSummary:
    """Count outcomes and returned packages across a fan-out."""
    succeeded = [r for r in results.values() if r.ok]
    package_count = 0
    for result in succeeded:
        if isinstance(result.value, list):
            package_count += len(result.value)
        elif isinstance(result.value, PackageInfo):
            package_count += 1
    return FanOutSummary(
        total=len(results),
        succeeded=len(succeeded),
        failed=len(results) - len(succeeded),
        package_count=package_count,
    )
