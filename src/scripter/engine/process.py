"""Process runner implementation.

SubprocessRunner spawns one external command with asyncio, streams its
stdout and stderr incrementally to a callback, and waits for whichever
comes first: the child exiting or a stop request. The child leads its own
process group. A stop sends SIGTERM to the group, waits for the grace
period, then SIGKILLs the group. The child is always reaped.
"""

import asyncio
import logging
import os
import shlex
import signal
import time
from pathlib import Path

from scripter.engine.protocols import CommandSpec, OutputHandler
from scripter.exceptions import OutputIOError, SpawnFailedError
from scripter.models import (
    ArgumentPlaceholder,
    AttemptOutcome,
    OutputStream,
    PathType,
    QueueEntry,
    Run,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
DEFAULT_CHUNK_SIZE = 65536


def replace_placeholders(text: str, placeholders: list[ArgumentPlaceholder]) -> str:
    """Replace placeholder tokens in text.

    All occurrences are located in the original text first. Where two
    occurrences overlap the leftmost one wins, and replacement values are
    never scanned again, so one placeholder's value cannot trigger another.
    """
    occurrences: list[tuple[int, int, str]] = []
    for placeholder in placeholders:
        token = placeholder.placeholder
        start = text.find(token)
        while start != -1:
            end = start + len(token)
            occurrences.append((start, end, placeholder.value))
            start = text.find(token, end)

    occurrences.sort(key=lambda occurrence: occurrence[0])

    kept: list[tuple[int, int, str]] = []
    position = 0
    for start, end, value in occurrences:
        if start < position:
            continue
        kept.append((start, end, value))
        position = end

    for start, end, value in reversed(kept):
        text = text[:start] + value + text[end:]
    return text


def _resolve_path(path: str, path_type: PathType, run: Run, install_directory: Path) -> Path:
    base = install_directory if path_type == PathType.INSTALL else run.working_directory
    return base / path


def resolve_command(entry: QueueEntry, run: Run, install_directory: Path) -> CommandSpec:
    """Build the command line, working directory and environment for an entry.

    A bare command name relative to the working directory (no path
    separator) is left for PATH lookup. Install-relative commands are
    always joined onto the install directory.
    """
    definition = entry.definition
    command = definition.command

    if definition.path_type == PathType.INSTALL:
        command = str(install_directory / command)
    elif os.sep in command or (os.altsep and os.altsep in command):
        command = str(run.working_directory / command)

    arguments = [
        replace_placeholders(argument, definition.argument_placeholders)
        for argument in entry.arguments
    ]

    if definition.executor:
        argv = [*definition.executor, shlex.join([command, *arguments])]
    else:
        argv = [command, *arguments]

    if definition.working_directory:
        cwd = _resolve_path(
            definition.working_directory, definition.path_type, run, install_directory
        )
    else:
        cwd = run.working_directory

    env = dict(os.environ)
    env.update(run.env)

    return CommandSpec(argv=argv, cwd=cwd, env=env, ignore_output=definition.ignore_output)


class SubprocessRunner:
    """Run commands as asyncio child processes.

    One pump task per pipe reads at most chunk_size bytes at a time and
    hands them to the output callback, so memory use does not grow with
    the amount of output.
    """

    def __init__(
        self,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._grace_period = grace_period_seconds
        self._chunk_size = chunk_size

    async def run(
        self,
        spec: CommandSpec,
        on_output: OutputHandler,
        stop_event: asyncio.Event,
    ) -> AttemptOutcome:
        """Execute the command and report how it ended."""
        start_time = time.monotonic()

        try:
            process = await self._spawn(spec)
        except SpawnFailedError as e:
            logger.info("%s", e.message)
            return AttemptOutcome.spawn_failed(e.reason)

        io_failed = asyncio.Event()
        io_errors: list[str] = []
        pumps: list[asyncio.Task[None]] = []
        if process.stdout is not None:
            pumps.append(
                asyncio.create_task(
                    self._pump(process.stdout, OutputStream.STDOUT, on_output, io_errors, io_failed)
                )
            )
        if process.stderr is not None:
            pumps.append(
                asyncio.create_task(
                    self._pump(process.stderr, OutputStream.STDERR, on_output, io_errors, io_failed)
                )
            )

        wait_task = asyncio.create_task(process.wait())
        stop_task = asyncio.create_task(stop_event.wait())
        io_task = asyncio.create_task(io_failed.wait())

        terminated = False
        try:
            await asyncio.wait({wait_task, stop_task, io_task}, return_when=asyncio.FIRST_COMPLETED)

            if not wait_task.done():
                terminated = await self._terminate(process, wait_task)

            await self._drain(pumps, stop_task, bounded=terminated)
        except asyncio.CancelledError:
            await asyncio.shield(self._kill_and_reap(process, wait_task))
            for pump in pumps:
                pump.cancel()
            raise
        finally:
            stop_task.cancel()
            io_task.cancel()
            wait_task.cancel()

        duration = time.monotonic() - start_time
        returncode = process.returncode

        if io_errors:
            return AttemptOutcome.io_error(io_errors[0], duration_seconds=duration)
        if terminated or returncode is None:
            return AttemptOutcome.killed(exit_code=returncode, duration_seconds=duration)
        return AttemptOutcome.exited(returncode, duration_seconds=duration)

    async def _spawn(self, spec: CommandSpec) -> asyncio.subprocess.Process:
        output = asyncio.subprocess.DEVNULL if spec.ignore_output else asyncio.subprocess.PIPE
        try:
            return await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=output,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailedError(spec.display, str(e)) from e

    async def _pump(
        self,
        reader: asyncio.StreamReader,
        stream: OutputStream,
        on_output: OutputHandler,
        io_errors: list[str],
        io_failed: asyncio.Event,
    ) -> None:
        while True:
            try:
                data = await reader.read(self._chunk_size)
                if not data:
                    return
                on_output(stream, data)
            except (OSError, OutputIOError) as e:
                io_errors.append(f"{stream.value}: {e}")
                io_failed.set()
                return

    async def _drain(
        self, pumps: list[asyncio.Task[None]], stop_task: asyncio.Task[bool], bounded: bool
    ) -> None:
        """Wait for the pipes to close after the child exited.

        A process that left the child's group can keep a pipe open after
        the child is gone. Once a stop is requested, or the group was
        signalled, the pipes get one more grace period and the remaining
        output is abandoned.
        """
        remaining = {pump for pump in pumps if not pump.done()}
        while remaining and not bounded and not stop_task.done():
            _, remaining = await asyncio.wait(
                remaining | {stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            remaining.discard(stop_task)

        if remaining:
            _, remaining = await asyncio.wait(remaining, timeout=self._grace_period)

        for pump in remaining:
            pump.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)

    async def _terminate(
        self, process: asyncio.subprocess.Process, wait_task: asyncio.Task[int]
    ) -> bool:
        """SIGTERM the child's process group, then SIGKILL it after the grace period.

        wait_task only completes once the child has exited and every pipe is
        closed, so background jobs of a shell script are waited for too.

        Returns:
            False if the child had already exited by itself and only the
            rest of its group was signalled
        """
        exited_before = process.returncode is not None
        _signal_group(process, signal.SIGTERM)

        done, _ = await asyncio.wait({wait_task}, timeout=self._grace_period)
        if done:
            return not exited_before

        if process.returncode is None:
            logger.warning(
                "Process %s ignored SIGTERM for %.1fs, killing it", process.pid, self._grace_period
            )
        else:
            logger.info("Killing leftover processes in group %s", process.pid)
        _signal_group(process, signal.SIGKILL)

        done, _ = await asyncio.wait({wait_task}, timeout=self._grace_period)
        if not done:
            logger.warning(
                "Output pipes of process %s still open after SIGKILL, abandoning them", process.pid
            )
        return not exited_before

    async def _kill_and_reap(
        self, process: asyncio.subprocess.Process, wait_task: asyncio.Task[int]
    ) -> None:
        if not wait_task.done():
            _signal_group(process, signal.SIGKILL)
            await asyncio.wait({wait_task}, timeout=self._grace_period)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Signal every process in the child's session.

    The child leads its own process group, so the group id is its pid.
    """
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
