"""Asynchronous subprocess execution behind the CommandRunner interface."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Protocol, Sequence, runtime_checkable

from rich.console import Console
from rich.markup import escape

from polypkg.core.errors import CommandFailedError, CommandNotFoundError, CommandTimeoutError
from polypkg.core.logging import get_logger

log = get_logger(__name__)
console = Console(stderr=True, highlight=False)

# Parsers rely on untranslated tool output.
BASE_ENV = {
    "LC_ALL": "C",
    "LANG": "C",
}


@dataclass
class CommandResult:
    """Captured outcome of one subprocess invocation."""

    command: str
    args: list[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])

    def failure(self) -> CommandFailedError | None:
        """The CommandFailedError for a non-zero exit, or None."""
        if self.returncode == 0:
            return None
        return CommandFailedError(
            command=self.command_line,
            returncode=self.returncode,
            stderr=self.stderr.strip(),
            stdout=self.stdout,
        )


@runtime_checkable
class CommandRunner(Protocol):
    """Executes native tools.

    Every backend goes through a runner, so tests can substitute a
    MockCommandRunner and never launch a process.

    Extra environment entries are ``KEY=VALUE`` strings applied after the
    locale-forcing base, so a caller may override ``LC_ALL`` itself.
    """

    async def run(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        """Run and capture stdout, stderr and exit status."""
        ...

    async def run_verbose(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        """Like run(), echoing the command and its output to stderr."""
        ...

    async def run_interactive(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> int:
        """Run attached to the caller's terminal and return the exit status."""
        ...


def parse_env(entries: Sequence[str]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a mapping; later entries win."""
    parsed: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise ValueError(f"environment entry must look like KEY=VALUE: {entry!r}")
        parsed[key] = value
    return parsed


def build_env(extra: Sequence[str] = (), force_locale: bool = True) -> dict[str, str]:
    """Compose the child environment.

    Args:
        extra: Caller-supplied ``KEY=VALUE`` entries.
        force_locale: Whether to apply BASE_ENV before the extras.

    Returns:
        The full environment for the subprocess.
    """
    env = dict(os.environ)
    if force_locale:
        env.update(BASE_ENV)
    env.update(parse_env(extra))
    return env


async def _kill(process: asyncio.subprocess.Process, group: bool = True) -> None:
    """Kill a child and wait for it.

    With ``group`` the child's whole process group goes too, so helpers it
    spawned (dpkg, download methods) stop and release the output pipes.
    """
    try:
        if group:
            os.killpg(process.pid, signal.SIGKILL)
        elif process.returncode is None:
            process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def _pump(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        text = line.decode(errors="replace")
        sink.append(text)
        console.out(text.rstrip("\n"), style="dim", highlight=False)


class DefaultCommandRunner:
    """CommandRunner backed by real subprocesses."""

    def __init__(self, timeout: float | None = None) -> None:
        """
        Args:
            timeout: Default per-command timeout in seconds; None for no limit.
        """
        self.timeout = timeout

    async def run(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        return await self._capture(command, list(args), env, timeout, echo=False)

    async def run_verbose(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> CommandResult:
        console.print(f"[bold]Executing:[/bold] {escape(' '.join([command, *args]))}")
        if env:
            console.print(f"   Environment: {escape(' '.join(env))}")

        result = await self._capture(command, list(args), env, timeout, echo=True)

        verdict = "Completed" if result.ok else "Failed"
        console.print(f"{verdict} in {result.duration_ms} ms (exit code {result.returncode})")
        return result

    async def run_interactive(
        self, command: str, args: Sequence[str] = (), *env: str, timeout: float | None = None
    ) -> int:
        command_line = " ".join([command, *args])
        timeout = timeout if timeout is not None else self.timeout
        log.debug("interactive_start", command=command_line)

        try:
            # The user's own locale is kept for prompts. The child stays in the
            # terminal's process group so it can read from the tty.
            process = await asyncio.create_subprocess_exec(
                command, *args, env=build_env(env, force_locale=False)
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CommandNotFoundError(command) from e

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError as e:
            await _kill(process, group=False)
            raise CommandTimeoutError(command=command_line, timeout=timeout) from e
        except asyncio.CancelledError:
            await _kill(process, group=False)
            raise

        log.info("interactive_complete", command=command_line, returncode=returncode)
        return returncode

    async def _capture(
        self,
        command: str,
        args: list[str],
        env: Sequence[str],
        timeout: float | None,
        echo: bool,
    ) -> CommandResult:
        command_line = " ".join([command, *args])
        timeout = timeout if timeout is not None else self.timeout
        start = time.perf_counter()
        log.debug("command_start", command=command_line, timeout=timeout)

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_env(env),
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            log.error("command_not_found", command=command)
            raise CommandNotFoundError(command) from e

        try:
            if echo:
                out_lines: list[str] = []
                err_lines: list[str] = []

                async def tee() -> None:
                    await asyncio.gather(
                        _pump(process.stdout, out_lines), _pump(process.stderr, err_lines)
                    )
                    await process.wait()

                await asyncio.wait_for(tee(), timeout)
                stdout, stderr = "".join(out_lines), "".join(err_lines)
            else:
                out, err = await asyncio.wait_for(process.communicate(), timeout)
                stdout = out.decode(errors="replace")
                stderr = err.decode(errors="replace")

        except asyncio.TimeoutError as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            log.error(
                "command_timeout",
                command=command_line,
                timeout=timeout,
                duration_ms=duration_ms,
            )
            await _kill(process)
            raise CommandTimeoutError(
                command=command_line,
                timeout=timeout,
                context={"duration_ms": duration_ms},
            ) from e

        except asyncio.CancelledError:
            log.warning("command_cancelled", command=command_line)
            await _kill(process)
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "command_complete",
            command=command_line,
            returncode=process.returncode,
            duration_ms=duration_ms,
        )

        return CommandResult(
            command=command,
            args=args,
            stdout=stdout,
            stderr=stderr,
            returncode=process.returncode if process.returncode is not None else -1,
            duration_ms=duration_ms,
        )
