import asyncio
import time

import pytest

from polypkg.analysis.status import classify, exit_code_for_results
from polypkg.core.config import Settings
from polypkg.core.errors import (
    ManagerUnavailableError,
    OperationCancelledError,
    OperationTimeoutError,
    RegistryError,
    Status,
    StatusError,
)
from polypkg.core.models import Category, PackageStatus
from polypkg.core.registry import Registry, summarize
from polypkg.managers.base import SimplePlugin
from polypkg.managers.plugins import build_registry, default_plugins


def make_registry(*managers, priorities=None, cancel_grace=1.0):
    priorities = priorities or {}
    registry = Registry(cancel_grace=cancel_grace)
    for manager in managers:
        registry.register(
            manager.name,
            SimplePlugin(lambda m=manager: m, priority=priorities.get(manager.name, 50)),
        )
    return registry


## Registration ##

def test_register_rejects_bad_input(fake_manager):
    registry = Registry()
    plugin = SimplePlugin(lambda: fake_manager("a"))

    with pytest.raises(RegistryError):
        registry.register("", plugin)
    with pytest.raises(RegistryError):
        registry.register("a", None)

    registry.register("a", plugin)
    with pytest.raises(RegistryError):
        registry.register("a", plugin)


def test_first_lookup_seals(fake_manager):
    registry = make_registry(fake_manager("a"))
    assert not registry.sealed

    registry.get("a")

    assert registry.sealed
    with pytest.raises(RegistryError):
        registry.register("b", SimplePlugin(lambda: fake_manager("b")))


def test_clear_unseals(fake_manager):
    registry = make_registry(fake_manager("a"))
    registry.get("a")
    registry.clear()

    assert registry.count() == 0
    registry.register("b", SimplePlugin(lambda: fake_manager("b")))
    assert registry.names() == ["b"]


def test_instances_are_cached(fake_manager):
    created = []

    def factory():
        created.append(1)
        return fake_manager("a")

    registry = Registry()
    registry.register("a", SimplePlugin(factory))

    assert registry.get("a") is registry.get("a")
    assert len(created) == 1
    assert registry.get("missing") is None


def test_names_sorted_and_count(fake_manager):
    registry = make_registry(fake_manager("yum"), fake_manager("apt"), fake_manager("snap"))
    assert registry.names() == ["apt", "snap", "yum"]
    assert registry.count() == len(registry) == 3
    assert "apt" in registry


def test_unregister(fake_manager):
    registry = make_registry(fake_manager("a"))
    assert registry.unregister("a") is True
    assert registry.unregister("a") is False


## Resolution ##

@pytest.mark.asyncio
async def test_unavailable_backends_are_excluded(fake_manager):
    registry = make_registry(fake_manager("apt"), fake_manager("yum", available=False))

    available = await registry.get_available()

    assert list(available) == ["apt"]


@pytest.mark.asyncio
async def test_get_manager(fake_manager):
    registry = make_registry(fake_manager("apt"), fake_manager("yum", available=False))

    assert (await registry.get_manager("apt")).name == "apt"
    with pytest.raises(ManagerUnavailableError):
        await registry.get_manager("yum")
    with pytest.raises(ManagerUnavailableError):
        await registry.get_manager("nope")


@pytest.mark.asyncio
async def test_best_match_by_priority(fake_manager):
    registry = make_registry(
        fake_manager("apt"),
        fake_manager("yum"),
        fake_manager("flatpak", category=Category.APP),
        priorities={"apt": 90, "yum": 80, "flatpak": 100},
    )

    assert (await registry.get_best_match(Category.SYSTEM)).name == "apt"
    assert (await registry.get_best_match(Category.APP)).name == "flatpak"
    assert await registry.get_best_match(Category.GAME) is None


@pytest.mark.asyncio
async def test_best_match_tie_broken_by_name(fake_manager):
    registry = make_registry(fake_manager("zypper"), fake_manager("dnf"), priorities={"zypper": 70, "dnf": 70})
    assert (await registry.get_best_match(Category.SYSTEM)).name == "dnf"


@pytest.mark.asyncio
async def test_best_match_skips_unavailable(fake_manager):
    registry = make_registry(
        fake_manager("apt", available=False), fake_manager("yum"), priorities={"apt": 90, "yum": 80}
    )
    assert (await registry.get_best_match(Category.SYSTEM)).name == "yum"


@pytest.mark.asyncio
async def test_get_by_category(fake_manager):
    registry = make_registry(fake_manager("apt"), fake_manager("npm", category=Category.LANGUAGE))
    assert list(await registry.get_by_category(Category.LANGUAGE)) == ["npm"]


## Fan-out ##

@pytest.mark.asyncio
async def test_fan_out_isolates_failures(fake_manager):
    broken = StatusError(Status.PERMISSION_ERROR, "are you root?")
    registry = make_registry(
        fake_manager("apt"), fake_manager("yum", error=broken), fake_manager("snap")
    )

    results = await registry.install_all(["tree"])

    assert list(results) == ["apt", "snap", "yum"]
    assert results["apt"].ok and results["snap"].ok
    assert results["apt"].value[0].status is PackageStatus.INSTALLED
    assert results["yum"].error is broken


@pytest.mark.asyncio
async def test_fan_out_runs_concurrently(fake_manager):
    registry = make_registry(*(fake_manager(f"m{i}", delay=0.3) for i in range(4)))

    start = time.perf_counter()
    results = await registry.search_all(["vim"])

    assert time.perf_counter() - start < 0.9
    assert all(r.ok for r in results.values())


@pytest.mark.asyncio
async def test_fan_out_timeout_marks_unfinished(fake_manager):
    fast = fake_manager("fast")
    slow = fake_manager("slow", delay=5)
    registry = make_registry(fast, slow)

    start = time.perf_counter()
    results = await registry.search_all(["vim"], timeout=0.2)

    assert time.perf_counter() - start < 2
    assert results["fast"].ok
    assert isinstance(results["slow"].error, OperationTimeoutError)
    assert slow.cancelled and not slow.finished


@pytest.mark.asyncio
async def test_fan_out_cancel_event(fake_manager):
    slow = fake_manager("slow", delay=5)
    registry = make_registry(fake_manager("fast"), slow)
    cancel = asyncio.Event()

    async def trip():
        await asyncio.sleep(0.1)
        cancel.set()

    tripper = asyncio.create_task(trip())
    results = await registry.search_all(["vim"], cancel=cancel)
    await tripper

    assert results["fast"].ok
    assert isinstance(results["slow"].error, OperationCancelledError)
    assert slow.cancelled


@pytest.mark.asyncio
async def test_timeout_bounds_availability_checks(fake_manager):
    hung = fake_manager("hung", check_delay=3)
    registry = make_registry(fake_manager("fast"), hung)

    start = time.perf_counter()
    results = await registry.search_all(["vim"], timeout=0.2)

    assert time.perf_counter() - start < 2
    assert list(results) == ["fast"]
    assert hung.calls == []


@pytest.mark.asyncio
async def test_explicit_backend_stuck_checking_times_out(fake_manager):
    registry = make_registry(fake_manager("fast"), fake_manager("hung", check_delay=3))

    start = time.perf_counter()
    results = await registry.search_all(["vim"], managers=["fast", "hung"], timeout=0.2)

    assert time.perf_counter() - start < 2
    assert results["fast"].ok
    assert isinstance(results["hung"].error, OperationTimeoutError)


@pytest.mark.asyncio
async def test_cancel_event_interrupts_availability_checks(fake_manager):
    registry = make_registry(fake_manager("hung", check_delay=3))
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.1, cancel.set)

    start = time.perf_counter()
    results = await registry.search_all(["vim"], managers=["hung"], cancel=cancel)

    assert time.perf_counter() - start < 2
    assert isinstance(results["hung"].error, OperationCancelledError)


@pytest.mark.asyncio
async def test_cancel_before_start_cancels_everything(fake_manager):
    registry = make_registry(fake_manager("a", delay=1), fake_manager("b", delay=1))
    cancel = asyncio.Event()
    cancel.set()

    results = await registry.search_all(["vim"], cancel=cancel)

    assert list(results) == ["a", "b"]
    assert all(isinstance(r.error, OperationCancelledError) for r in results.values())


@pytest.mark.asyncio
async def test_outer_cancellation_propagates(fake_manager):
    slow = fake_manager("slow", delay=5)
    registry = make_registry(slow)

    task = asyncio.create_task(registry.search_all(["vim"]))
    await asyncio.sleep(0.1)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert slow.cancelled


@pytest.mark.asyncio
async def test_zero_backends_returns_empty(fake_manager):
    assert await Registry().search_all(["vim"]) == {}
    registry = make_registry(fake_manager("apt", available=False))
    assert await registry.search_all(["vim"]) == {}


@pytest.mark.asyncio
async def test_explicit_managers(fake_manager):
    apt = fake_manager("apt")
    yum = fake_manager("yum")
    registry = make_registry(apt, yum, fake_manager("gone", available=False))

    results = await registry.refresh_all(managers=["apt", "gone", "nope"])

    assert list(results) == ["apt", "gone", "nope"]
    assert results["apt"].ok
    assert isinstance(results["gone"].error, ManagerUnavailableError)
    assert isinstance(results["nope"].error, ManagerUnavailableError)
    assert yum.calls == []


@pytest.mark.asyncio
async def test_summarize(fake_manager):
    registry = make_registry(
        fake_manager("apt", packages=["a", "b"]),
        fake_manager("snap", packages=["c"]),
        fake_manager("yum", error=RuntimeError("boom")),
    )

    summary = summarize(await registry.search_all(["x"]))

    assert (summary.total, summary.succeeded, summary.failed, summary.package_count) == (3, 2, 1, 3)
    assert summary.any_succeeded


@pytest.mark.asyncio
async def test_partial_failure_end_to_end(fake_manager):
    registry = make_registry(
        fake_manager("a", packages=["pkg1", "pkg2"]),
        fake_manager("b", error=ManagerUnavailableError("b")),
    )

    results = await registry.search_all(["x"])

    assert list(results) == ["a", "b"]
    assert [p.name for p in results["a"].value] == ["pkg1", "pkg2"]
    assert isinstance(results["b"].error, ManagerUnavailableError)
    assert classify(results["b"].error) is Status.UNAVAILABLE_ERROR

    summary = summarize(results)
    assert (summary.succeeded, summary.total) == (1, 2)
    assert summary.package_count == 2
    assert exit_code_for_results(results) == 0


## Built-in plugins ##

def test_default_plugins(runner):
    plugins = default_plugins(runner)

    assert plugins["apt"].priority == 90
    assert plugins["yum"].priority == 80
    assert plugins["apt"].create_manager().runner is runner


def test_build_registry_honours_disabled(runner):
    registry = build_registry(runner, Settings(disabled_managers=frozenset({"yum"}), cancel_grace=2.0))
    assert registry.names() == ["apt"]
    assert registry.cancel_grace == 2.0
