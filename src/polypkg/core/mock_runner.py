"""Deterministic CommandRunner for tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from polypkg.core.errors import PolypkgError
from polypkg.core.shell import CommandResult


class MockCommandMissingError(PolypkgError):
    """A command was run that the test never registered."""

    def __init__(self, key: str) -> None:
        super().__init__(f"no mock found for command: {key}", context={"command": key})


@dataclass
class MockResponse:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    error: BaseException | None = None
    delay: float = 0.0


@dataclass
class MockCall:
    key: str
    env: tuple[str, ...]
    mode: str
    timeout: float | None = None


def build_key(command: str, args: Sequence[str] = ()) -> str:
    return " ".join([command, *args])


@dataclass
class MockCommandRunner:
    """Replays registered responses instead of launching processes.

    Example:
        runner = MockCommandRunner()
        runner.add_command("apt", ["--version"], stdout="apt 2.4.9 (amd64)\\n")
        manager = AptManager(runner=runner)
    """

    responses: dict[str, MockResponse] = field(default_factory=dict)
    calls: list[MockCall] = field(default_factory=list)

    def add_command(
        self,
        command: str,
        args: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        """Register the response for an exact command line.

        Args:
            command: Executable name.
            args: Exact argument list.
            stdout: Captured stdout to return.
            stderr: Captured stderr to return.
            returncode: Exit status to return.
            error: Exception to raise instead of returning a result.
            delay: Seconds to sleep first, for cancellation tests.
        """
        self.responses[build_key(command, args)] = MockResponse(
            stdout=stdout, stderr=stderr, returncode=returncode, error=error, delay=delay
        )

    def add_error(self, command: str, args: Sequence[str], error: BaseException) -> None:
        self.add_command(command, args, error=error)

    @property
    def interactive_calls(self) -> list[str]:
        return [c.key for c in self.calls if c.mode == "interactive"]

    @property
    def executed(self) -> list[str]:
        """Every command line seen, in call order."""
        return [c.key for c in self.calls]

    def was_called(self, command: str, args: Sequence[str] = ()) -> bool:
        return build_key(command, args) in self.executed

    def was_interactive_called(self, command: str, args: Sequence[str] = ()) -> bool:
        return build_key(command, args) in self.interactive_calls

    def env_for(self, command: str, args: Sequence[str] = ()) -> tuple[str, ...] | None:
        """Extra env passed on the most recent call of this command line."""
        key = build_key(command, args)
        for call in reversed(self.calls):
            if call.key == key:
                return call.env
        return None

    async def _respond(
        self, mode: str, command: str, args: Sequence[str], env: tuple[str, ...], timeout: float | None
    ) -> CommandResult:
        key = build_key(command, args)
        self.calls.append(MockCall(key=key, env=env, mode=mode, timeout=timeout))

        response = self.responses.get(key)
        if response is None:
            raise MockCommandMissingError(key)
        if response.delay:
            await asyncio.sleep(response.delay)
        if response.error is not None:
            raise response.error

        return CommandResult(
            command=command,
            args=list(args),
            stdout=response.stdout,
            stderr=response.stderr,
            returncode=response.returncode,
        )

    async def run(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        return await self._respond("capture", command, args, env, timeout)

    async def run_verbose(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        return await self._respond("verbose", command, args, env, timeout)

    async def run_interactive(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> int:
        result = await self._respond("interactive", command, args, env, timeout)
        return result.returncode
