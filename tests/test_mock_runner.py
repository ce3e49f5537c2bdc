import pytest

from polypkg.core.errors import CommandNotFoundError
from polypkg.core.mock_runner import MockCommandMissingError, MockCommandRunner
from polypkg.core.shell import CommandRunner


def test_satisfies_runner_protocol():
    assert isinstance(MockCommandRunner(), CommandRunner)


@pytest.mark.asyncio
async def test_replays_registered_response(runner):
    runner.add_command("apt", ["search", "vim"], stdout="vim/jammy 2 amd64\n", returncode=0)

    result = await runner.run("apt", ["search", "vim"], "LC_ALL=C", timeout=5)

    assert result.stdout == "vim/jammy 2 amd64\n"
    assert result.command_line == "apt search vim"
    assert runner.was_called("apt", ["search", "vim"])
    assert runner.env_for("apt", ["search", "vim"]) == ("LC_ALL=C",)
    assert runner.calls[0].timeout == 5


@pytest.mark.asyncio
async def test_unregistered_command_raises(runner):
    with pytest.raises(MockCommandMissingError):
        await runner.run("apt", ["moo"])
    assert runner.executed == ["apt moo"]


@pytest.mark.asyncio
async def test_error_injection(runner):
    runner.add_error("yum", ["--version"], CommandNotFoundError("yum"))
    with pytest.raises(CommandNotFoundError):
        await runner.run("yum", ["--version"])


@pytest.mark.asyncio
async def test_interactive_records_mode(runner):
    runner.add_command("apt-get", ["install", "vim"], returncode=1)

    assert await runner.run_interactive("apt-get", ["install", "vim"]) == 1
    assert runner.was_interactive_called("apt-get", ["install", "vim"])
    assert runner.interactive_calls == ["apt-get install vim"]


@pytest.mark.asyncio
async def test_verbose_mode_is_recorded(runner):
    runner.add_command("apt", ["update"])
    await runner.run_verbose("apt", ["update"])
    assert runner.calls[0].mode == "verbose"
