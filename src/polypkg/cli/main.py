"""CLI entry point for polypkg."""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from polypkg.analysis.status import exit_code_for_error, exit_code_for_results
from polypkg.cli.renderers import (
    console,
    err_console,
    managers_table,
    package_details,
    package_table,
    print_errors,
    results_to_json,
    status_table,
    summary_line,
)
from polypkg.core.config import Settings, get_settings
from polypkg.core.errors import (
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_USAGE_ERROR,
    OperationTimeoutError,
    PolypkgError,
    format_error_message,
)
from polypkg.core.logging import configure_logging, get_logger
from polypkg.core.models import Category, ListFilter, OperationResult, Options
from polypkg.core.registry import Registry, summarize
from polypkg.managers.plugins import build_registry

log = get_logger(__name__)

T = TypeVar("T")

app = typer.Typer(
    help="polypkg: one interface to apt, yum and friends.",
    no_args_is_help=True,
    add_completion=False,
)


@dataclass
class CliState:
    """Global options shared by every command."""

    registry: Registry
    settings: Settings
    opts: Options
    managers: list[str] = field(default_factory=list)
    category: str | None = None
    json: bool = False
    timeout: float | None = None
    started: float = 0.0


def handle_error(error: BaseException) -> int:
    """Report an error that escaped a command and return its exit code."""
    if isinstance(error, PolypkgError):
        log.error(
            "cli_error",
            error_type=type(error).__name__,
            message=error.message,
            context=error.context,
        )
        err_console.print(
            f"\n{format_error_message(error)}\n", style="bold red", highlight=False, markup=False
        )
    else:
        log.error("unexpected_error", error=str(error), exc_info=True)
        err_console.print(f"\n⚠️ Unexpected error occurred: {error}\n", style="bold red", markup=False)
    return exit_code_for_error(error)


def run(state: CliState, main: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine, turning SIGINT and SIGTERM into cancellation.

    Cancellation reaches every running backend and kills its subprocess;
    the process then exits 130. The overall timeout, plus the grace period
    for cancelled backends, bounds the whole run including backend
    selection.
    """
    state.started = time.monotonic()
    limit = state.timeout + state.settings.cancel_grace if state.timeout is not None else None

    async def runner() -> T:
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []

        def on_signal(sig: signal.Signals) -> None:
            log.warning("signal_received", signal=sig.name)
            if task is not None:
                task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)

        try:
            async with asyncio.timeout(limit):
                return await main()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    try:
        return asyncio.run(runner())
    except TimeoutError as e:
        error = OperationTimeoutError(operation="polypkg", timeout=state.timeout)
        raise typer.Exit(handle_error(error)) from e
    except (asyncio.CancelledError, KeyboardInterrupt):
        err_console.print("\nInterrupted.", style="bold yellow")
        raise typer.Exit(EXIT_INTERRUPTED)
    except PolypkgError as e:
        raise typer.Exit(handle_error(e))


def read_packages(args: List[str]) -> list[str]:
    """Expand ``-`` into whitespace-separated names read from stdin.

    Blank lines and ``#`` comments in the piped input are ignored.
    """
    names: list[str] = []
    stdin_names: list[str] | None = None
    for arg in args:
        if arg != "-":
            names.append(arg)
            continue
        if stdin_names is None:
            stdin_names = []
            for line in sys.stdin.read().splitlines():
                line = line.split("#", 1)[0].strip()
                if line:
                    stdin_names.extend(line.split())
        names.extend(stdin_names)
    return names


def confirm(state: CliState, action: str, packages: List[str]) -> None:
    """Ask before changing the system unless the run is non-interactive.

    A positive answer is recorded as ``assume_yes`` so native tools do
    not prompt a second time.
    """
    opts = state.opts
    if opts.assume_yes or opts.dry_run or opts.quiet or state.json:
        return

    target = ", ".join(packages) if packages else "all packages"
    if not typer.confirm(f"{action} {target}?", default=False):
        console.print("Aborted.")
        raise typer.Exit(EXIT_SUCCESS)
    opts.assume_yes = True


async def select_managers(state: CliState, mutating: bool) -> list[str] | None:
    """Backends a command should target.

    Explicit ``--manager`` names win. Otherwise queries go to every
    available backend (optionally within ``--category``), and commands
    that change the system go to the best match of the category.

    Returns:
        Backend names, or None for "every available backend".
    """
    if state.managers:
        return state.managers

    if mutating:
        best = await state.registry.get_best_match(state.category or Category.SYSTEM)
        return [best.name] if best is not None else []

    if state.category:
        return list(await state.registry.get_by_category(state.category))
    return None


def remaining(state: CliState) -> float | None:
    """Seconds left of the overall timeout, or None without one."""
    if state.timeout is None:
        return None
    return max(0.0, state.timeout - (time.monotonic() - state.started))


def fan_out_kwargs(state: CliState, managers: list[str] | None) -> dict[str, Any]:
    return {"managers": managers, "timeout": remaining(state)}


def finish(state: CliState, results: dict[str, OperationResult[Any]], verb: str | None = None) -> None:
    """Print errors and the summary, then exit with the aggregate code."""
    if not results:
        err_console.print("No package managers available.", style="bold red")
    elif not state.json:
        print_errors(results)
        if verb and not state.opts.quiet:
            console.print(summary_line(verb, summarize(results)), style="dim")

    code = exit_code_for_results(results)
    if code != EXIT_SUCCESS:
        raise typer.Exit(code)


def show_packages(state: CliState, results: dict[str, OperationResult[Any]], verb: str | None) -> None:
    if state.json:
        console.print_json(data=results_to_json(results))
    elif state.opts.quiet:
        for name in sorted(results):
            for pkg in results[name].value or []:
                line = f"{name} {pkg.name} {pkg.version or pkg.new_version}".rstrip()
                console.print(line, highlight=False, markup=False)
    else:
        console.print(package_table(results))
    finish(state, results, verb)


def get_state(ctx: typer.Context) -> CliState:
    return ctx.obj


@app.callback()
def main(
    ctx: typer.Context,
    manager: Optional[List[str]] = typer.Option(
        None, "--manager", "-m", help="Use this package manager (repeatable)"
    ),
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Restrict to a category, e.g. system"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Show what would be done"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Echo native commands and output"),
    debug: bool = typer.Option(False, "--debug", help="Debug logging on stderr"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Minimal output"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Machine-readable output"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Assume yes to all prompts"),
    show_status: bool = typer.Option(False, "--status", help="Show real installation status"),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Overall timeout in seconds (default: POLYPKG_TIMEOUT or 300)"
    ),
) -> None:
    """Manage packages across every package manager on this system."""
    try:
        settings = get_settings()
    except PolypkgError as e:
        raise typer.Exit(handle_error(e))

    configure_logging(
        level="DEBUG" if debug else settings.log_level,
        log_file=settings.log_file,
        enable_console=verbose or debug,
        force=True,
    )

    opts = Options(
        dry_run=dry_run,
        verbose=verbose,
        debug=debug,
        quiet=quiet,
        assume_yes=yes,
        show_status=show_status,
    )
    effective_timeout = timeout if timeout is not None else settings.timeout

    ctx.obj = CliState(
        registry=build_registry(settings=settings),
        settings=settings,
        opts=opts,
        managers=list(manager or []),
        category=category,
        json=json_output,
        timeout=effective_timeout if effective_timeout > 0 else None,
    )


@app.command()
def search(ctx: typer.Context, query: List[str] = typer.Argument(..., help="Search terms")) -> None:
    """Search for packages in every available package manager."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.search_all(query, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "found")


@app.command("list")
def list_packages(
    ctx: typer.Context,
    what: ListFilter = typer.Argument(ListFilter.INSTALLED, help="installed | upgradable"),
) -> None:
    """List installed or upgradable packages."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.list_all(what, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "listed")


@app.command()
def install(
    ctx: typer.Context,
    packages: List[str] = typer.Argument(..., help="Package names, or - to read them from stdin"),
) -> None:
    """Install packages."""
    state = get_state(ctx)
    names = read_packages(packages)
    if not names:
        err_console.print("No packages given.", style="bold red")
        raise typer.Exit(EXIT_USAGE_ERROR)
    confirm(state, "Install", names)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=True)
        return await state.registry.install_all(names, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "would be installed" if state.opts.dry_run else "installed")


@app.command()
def remove(
    ctx: typer.Context,
    packages: List[str] = typer.Argument(..., help="Package names, or - to read them from stdin"),
) -> None:
    """Remove packages."""
    state = get_state(ctx)
    names = read_packages(packages)
    if not names:
        err_console.print("No packages given.", style="bold red")
        raise typer.Exit(EXIT_USAGE_ERROR)
    confirm(state, "Remove", names)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=True)
        return await state.registry.remove_all(names, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "would be removed" if state.opts.dry_run else "removed")


@app.command()
def info(ctx: typer.Context, package: str = typer.Argument(..., help="Package name")) -> None:
    """Show detailed information about a package."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.get_info_all(package, state.opts, **fan_out_kwargs(state, managers))

    results = run(state, go)
    if state.json:
        console.print_json(data=results_to_json(results))
    else:
        for name in sorted(results):
            if results[name].ok:
                console.print(package_details(results[name].value))
    finish(state, results)


@app.command()
def update(ctx: typer.Context) -> None:
    """Refresh package databases."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.refresh_all(state.opts, **fan_out_kwargs(state, managers))

    results = run(state, go)
    if state.json:
        console.print_json(data=results_to_json(results))
    elif not state.opts.quiet:
        for name in sorted(results):
            if results[name].ok:
                console.print(f"[green]✓[/green] {name} refreshed")
    finish(state, results)


@app.command()
def upgrade(
    ctx: typer.Context,
    packages: Optional[List[str]] = typer.Argument(None, help="Packages to upgrade (default: all)"),
) -> None:
    """Upgrade the given packages, or everything."""
    state = get_state(ctx)
    names = read_packages(packages or [])
    confirm(state, "Upgrade", names)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=True)
        return await state.registry.upgrade_all(names, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "would be upgraded" if state.opts.dry_run else "upgraded")


@app.command()
def clean(ctx: typer.Context) -> None:
    """Remove cached package downloads."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=True)
        return await state.registry.clean_all(state.opts, **fan_out_kwargs(state, managers))

    results = run(state, go)
    if state.json:
        console.print_json(data=results_to_json(results))
    elif not state.opts.quiet:
        for name in sorted(results):
            if results[name].ok:
                console.print(f"[green]✓[/green] {name} cache cleaned")
    finish(state, results)


@app.command()
def autoremove(ctx: typer.Context) -> None:
    """Remove packages that are no longer needed."""
    state = get_state(ctx)
    confirm(state, "Autoremove", [])

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=True)
        return await state.registry.autoremove_all(state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "removed")


@app.command()
def verify(
    ctx: typer.Context,
    packages: List[str] = typer.Argument(..., help="Package names, or - to read them from stdin"),
) -> None:
    """Verify the integrity of installed packages."""
    state = get_state(ctx)
    names = read_packages(packages)
    if not names:
        err_console.print("No packages given.", style="bold red")
        raise typer.Exit(EXIT_USAGE_ERROR)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.verify_all(names, state.opts, **fan_out_kwargs(state, managers))

    show_packages(state, run(state, go), "verified")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the health of each package manager."""
    state = get_state(ctx)

    async def go() -> dict[str, OperationResult[Any]]:
        managers = await select_managers(state, mutating=False)
        return await state.registry.status_all(state.opts, **fan_out_kwargs(state, managers))

    results = run(state, go)
    if state.json:
        console.print_json(data=results_to_json(results))
    else:
        console.print(status_table(results))
    finish(state, results)


@app.command()
def managers(ctx: typer.Context) -> None:
    """List registered package managers and whether they are usable here."""
    state = get_state(ctx)
    registry = state.registry

    async def go() -> list[tuple[str, str, int, bool]]:
        available = await registry.get_available()
        return [
            (name, manager.category, registry.priority(name), name in available)
            for name, manager in registry.managers().items()
        ]

    rows = run(state, go)
    if state.json:
        console.print_json(data=[
            {"name": n, "category": c, "priority": p, "available": a} for n, c, p, a in rows
        ])
    else:
        console.print(managers_table(rows))


if __name__ == "__main__":
    app()
