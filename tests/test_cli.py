import io
import json
import time

import pytest
from rich.console import Console
from typer.testing import CliRunner

from polypkg.cli import main as cli
from polypkg.cli import renderers
from polypkg.core.mock_runner import MockCommandRunner
from polypkg.core.models import OperationResult, PackageInfo
from polypkg.core.registry import Registry
from polypkg.managers.apt import AptManager
from polypkg.managers.base import SimplePlugin

from test_apt_parser import INSTALL_OUTPUT, SEARCH_OUTPUT

APT_VERSION = "apt 2.4.9 (amd64)\n"


@pytest.fixture
def mock_runner():
    runner = MockCommandRunner()
    runner.add_command("apt", ["--version"], stdout=APT_VERSION)
    return runner


@pytest.fixture
def cli_runner(monkeypatch, mock_runner):
    def build(runner=None, settings=None):
        registry = Registry(cancel_grace=1.0)
        registry.register("apt", SimplePlugin(lambda: AptManager(runner=mock_runner), priority=90))
        return registry

    monkeypatch.setattr(cli, "build_registry", build)
    return CliRunner()


def test_search_renders_table(cli_runner, mock_runner):
    mock_runner.add_command("apt", ["search", "vim"], stdout=SEARCH_OUTPUT)

    result = cli_runner.invoke(cli.app, ["search", "vim"])

    assert result.exit_code == 0, result.output
    assert "neovim" in result.output
    assert "3 packages found across 1/1 managers" in result.output


def test_search_json(cli_runner, mock_runner):
    mock_runner.add_command("apt", ["search", "vim"], stdout=SEARCH_OUTPUT)

    result = cli_runner.invoke(cli.app, ["--json", "search", "vim"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["apt"]["ok"] is True
    assert [p["name"] for p in payload["apt"]["result"]] == ["vim", "vim-tiny", "neovim"]


def test_install_confirmed_runs_apt(cli_runner, mock_runner):
    mock_runner.add_command("apt-get", ["install", "-y", "tree"], stdout=INSTALL_OUTPUT)

    result = cli_runner.invoke(cli.app, ["install", "tree"], input="y\n")

    assert result.exit_code == 0, result.output
    assert mock_runner.was_called("apt-get", ["install", "-y", "tree"])
    assert "2 packages installed across 1/1 managers" in result.output


def test_install_declined_runs_nothing(cli_runner, mock_runner):
    result = cli_runner.invoke(cli.app, ["install", "tree"], input="n\n")

    assert result.exit_code == 0
    assert "Aborted" in result.output
    assert not any(key.startswith("apt-get") for key in mock_runner.executed)


def test_install_dry_run_skips_prompt_and_runner(cli_runner, mock_runner):
    result = cli_runner.invoke(cli.app, ["--dry-run", "install", "tree", "vim"])

    assert result.exit_code == 0, result.output
    assert "2 packages would be installed across 1/1 managers" in result.output
    assert mock_runner.executed == ["apt --version"] * len(mock_runner.executed)


def test_install_reads_names_from_stdin(cli_runner, mock_runner):
    mock_runner.add_command("apt-get", ["install", "-y", "tree", "vim"], stdout=INSTALL_OUTPUT)

    result = cli_runner.invoke(cli.app, ["-y", "install", "-"], input="tree\n# comment\n\nvim\n")

    assert result.exit_code == 0, result.output
    assert mock_runner.was_called("apt-get", ["install", "-y", "tree", "vim"])


def test_invalid_name_is_usage_error(cli_runner, mock_runner):
    result = cli_runner.invoke(cli.app, ["-y", "install", "tree;reboot"])

    assert result.exit_code == 2
    assert not any(key.startswith("apt-get") for key in mock_runner.executed)


def test_permission_error_exit_code(cli_runner, mock_runner):
    mock_runner.add_command(
        "apt-get", ["install", "-y", "tree"], stderr="E: Unable to acquire the dpkg frontend lock, are you root?\n",
        returncode=100,
    )

    result = cli_runner.invoke(cli.app, ["-y", "install", "tree"])

    assert result.exit_code == 77
    assert "apt:" in result.output


def test_unknown_manager_is_unavailable(cli_runner):
    result = cli_runner.invoke(cli.app, ["-m", "pacman", "search", "vim"])
    assert result.exit_code == 69


def test_no_available_managers(cli_runner, mock_runner):
    mock_runner.add_command("apt", ["--version"], returncode=1)

    result = cli_runner.invoke(cli.app, ["search", "vim"])

    assert result.exit_code == 69
    assert "No package managers available" in result.output


def test_list_quiet(cli_runner, mock_runner):
    mock_runner.add_command(
        "dpkg-query", ["-W", "-f", r"${binary:Package} ${Version} ${Architecture}\n"], stdout="vim 2:8.2 amd64\n"
    )

    result = cli_runner.invoke(cli.app, ["-q", "list"])

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == "apt vim 2:8.2"


def test_managers_command(cli_runner):
    result = cli_runner.invoke(cli.app, ["--json", "managers"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == [
        {"name": "apt", "category": "system", "priority": 90, "available": True}
    ]


def test_invalid_configuration(cli_runner, monkeypatch):
    monkeypatch.setenv("POLYPKG_TIMEOUT", "later")
    result = cli_runner.invoke(cli.app, ["search", "vim"])
    assert result.exit_code == 2


def test_read_packages_expands_dash(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("a b\nc # trailing\n"))
    assert cli.read_packages(["x", "-", "y"]) == ["x", "a", "b", "c", "y"]


def test_timeout_bounds_hung_availability_check(cli_runner, mock_runner, monkeypatch):
    monkeypatch.setenv("POLYPKG_CANCEL_GRACE", "1")
    mock_runner.add_command("apt", ["--version"], stdout=APT_VERSION, delay=5)

    start = time.perf_counter()
    result = cli_runner.invoke(cli.app, ["--timeout", "0.2", "search", "vim"])

    assert time.perf_counter() - start < 3
    assert result.exit_code == 69
    assert "No package managers available" in result.output


def test_timeout_bounds_manager_listing(cli_runner, mock_runner, monkeypatch):
    monkeypatch.setenv("POLYPKG_CANCEL_GRACE", "0.1")
    mock_runner.add_command("apt", ["--version"], stdout=APT_VERSION, delay=5)

    start = time.perf_counter()
    result = cli_runner.invoke(cli.app, ["--timeout", "0.2", "managers"])

    assert time.perf_counter() - start < 3
    assert result.exit_code == 1
    assert "timed out" in result.output


def test_native_text_is_not_parsed_as_markup(monkeypatch):
    pkg = PackageInfo(name="odd", version="1.0", description="see [/docs] and [bold]", manager_name="apt")
    results = {
        "apt": OperationResult(manager="apt", value=[pkg]),
        "yum": OperationResult(manager="yum", error=RuntimeError("bad token [/x] in repo file")),
    }
    out = io.StringIO()
    err = io.StringIO()
    monkeypatch.setattr(renderers, "err_console", Console(file=err, width=200))

    Console(file=out, width=200).print(renderers.package_table(results))
    renderers.print_errors(results)

    assert "see [/docs] and [bold]" in out.getvalue()
    assert "bad token [/x] in repo file" in err.getvalue()
