"""Renderers for displaying package manager results in the CLI using Rich."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from polypkg.analysis.status import classify
from polypkg.core.models import ManagerStatus, OperationResult, PackageInfo, PackageStatus
from polypkg.core.registry import FanOutSummary

console = Console()
err_console = Console(stderr=True)

STATUS_LABELS = {
    PackageStatus.INSTALLED: "[green]installed[/green]",
    PackageStatus.AVAILABLE: "available",
    PackageStatus.UPGRADABLE: "[yellow]upgradable[/yellow]",
    PackageStatus.UNKNOWN: "[dim]unknown[/dim]",
    PackageStatus.CONFIG_FILES: "[dim]config-files[/dim]",
    PackageStatus.BROKEN: "[red]broken[/red]",
    PackageStatus.WOULD_INSTALL: "[cyan]would install[/cyan]",
    PackageStatus.WOULD_REMOVE: "[cyan]would remove[/cyan]",
    PackageStatus.WOULD_UPGRADE: "[cyan]would upgrade[/cyan]",
}


def status_to_str(status: PackageStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def package_table(
    results: Mapping[str, OperationResult[list[PackageInfo]]], show_status: bool = True
) -> Table:
    """Create a Rich Table of packages grouped by backend.

    Args:
        results: Fan-out results; failed backends are skipped.
        show_status: Whether to include the Status column.

    Returns:
        A Rich Table with one row per package, backends in name order.
    """
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Manager", style="bold")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("New Version")
    if show_status:
        table.add_column("Status")
    table.add_column("Description", style="dim", overflow="fold")

    for name in sorted(results):
        result = results[name]
        if not result.ok or not result.value:
            continue
        for pkg in result.value:
            row = [name, escape(pkg.name), escape(pkg.version), escape(pkg.new_version)]
            if show_status:
                row.append(status_to_str(pkg.status))
            row.append(escape(pkg.description))
            table.add_row(*row)

    return table


def package_details(pkg: PackageInfo) -> Table:
    """Field/value table for a single package."""
    t = Table(box=box.MINIMAL_HEAVY_HEAD, title=escape(f"{pkg.manager_name}: {pkg.name}"))
    t.add_column("Field", style="bold")
    t.add_column("Value")
    t.add_row("Name", escape(pkg.name))
    t.add_row("Status", status_to_str(pkg.status))
    if pkg.version:
        t.add_row("Installed", escape(pkg.version))
    if pkg.new_version:
        t.add_row("Candidate", escape(pkg.new_version))
    if pkg.category:
        t.add_row("Category", pkg.category)
    if pkg.description:
        t.add_row("Description", escape(pkg.description))
    for key, value in sorted(pkg.metadata.items()):
        text = ", ".join(value) if isinstance(value, list) else str(value)
        t.add_row(key.replace("_", " ").title(), escape(text))
    return t


def status_table(results: Mapping[str, OperationResult[ManagerStatus]]) -> Table:
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Manager", style="bold")
    table.add_column("Version")
    table.add_column("Healthy")
    table.add_column("Installed", justify="right")
    table.add_column("Known", justify="right")
    table.add_column("Cache (MB)", justify="right")
    table.add_column("Last Refresh", style="dim")
    table.add_column("Issues", style="yellow")

    for name in sorted(results):
        status = results[name].value
        if status is None:
            continue
        table.add_row(
            name,
            escape(status.version),
            "[green]yes[/green]" if status.healthy else "[red]no[/red]",
            str(status.installed_count),
            str(status.package_count),
            f"{status.cache_size / (1024 * 1024):.1f}",
            status.last_refresh,
            escape("; ".join(status.issues)),
        )
    return table


def managers_table(rows: Iterable[tuple[str, str, int, bool]]) -> Table:
    """Registered backends as (name, category, priority, available) rows."""
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Manager", style="bold")
    table.add_column("Category")
    table.add_column("Priority", justify="right")
    table.add_column("Available")
    for name, category, priority, available in rows:
        table.add_row(name, category, str(priority), "[green]yes[/green]" if available else "[dim]no[/dim]")
    return table


def print_errors(results: Mapping[str, OperationResult[Any]]) -> None:
    """Report each failed backend against its name on stderr."""
    for name in sorted(results):
        error = results[name].error
        if error is not None:
            err_console.print(f"[bold red]{name}:[/bold red] {escape(str(error))}", highlight=False)


def summary_line(verb: str, summary: FanOutSummary) -> str:
    noun = "package" if summary.package_count == 1 else "packages"
    return (
        f"{summary.package_count} {noun} {verb} across "
        f"{summary.succeeded}/{summary.total} managers"
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, (PackageInfo, ManagerStatus)):
        return value.to_dict()
    return value


def results_to_json(results: Mapping[str, OperationResult[Any]]) -> dict[str, Any]:
    """JSON-friendly view of fan-out results keyed by backend name."""
    payload: dict[str, Any] = {}
    for name in sorted(results):
        result = results[name]
        entry: dict[str, Any] = {"ok": result.ok, "duration_ms": result.duration_ms}
        if result.error is not None:
            entry["error"] = str(result.error)
            entry["status"] = classify(result.error).value
        else:
            entry["result"] = _jsonable(result.value)
        payload[name] = entry
    return payload
