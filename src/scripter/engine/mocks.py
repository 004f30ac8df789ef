"""Mock implementations for testing the engine layer.

Provides in-memory implementations of engine protocols that can be used in
tests without filesystem or subprocess side effects.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from scripter.engine.logs import get_output_path
from scripter.engine.protocols import CommandSpec, LogStore, OutputHandler, ProcessRunner
from scripter.exceptions import OutputIOError
from scripter.models import AttemptOutcome, OutputStream, QueueEntry, RunSnapshot


@dataclass
class ScriptedAttempt:
    """What the mock runner does for one attempt.

    Attributes:
        exit_code: Exit code reported when the attempt ends on its own
        output: Chunks handed to the output callback, in order
        spawn_error: When set, the attempt fails to spawn with this message
        hang: Block until the stop event is set, then report a kill
        ignore_stop: With hang, keep blocking after a stop until cancelled
        gate: When set, block until the event is set, then exit normally
    """

    exit_code: int = 0
    output: list[tuple[OutputStream, bytes]] = field(default_factory=list)
    spawn_error: str | None = None
    hang: bool = False
    ignore_stop: bool = False
    gate: asyncio.Event | None = None


class MockProcessRunner:
    """Mock process runner for testing.

    Records every command it is asked to run and plays back scripted
    attempts keyed by the program name (argv[0]). Commands without a
    script use the default attempt.
    """

    def __init__(self, default: ScriptedAttempt | None = None) -> None:
        self.default = default or ScriptedAttempt()
        self.scripts: dict[str, list[ScriptedAttempt]] = {}
        self.calls: list[CommandSpec] = []
        self.max_concurrent = 0
        self.started = asyncio.Event()
        self._active = 0

    def script(self, command: str, *attempts: ScriptedAttempt) -> None:
        """Queue attempts for a command; each run() consumes one."""
        self.scripts.setdefault(command, []).extend(attempts)

    def calls_for(self, command: str) -> list[CommandSpec]:
        return [spec for spec in self.calls if spec.argv[0] == command]

    async def run(
        self,
        spec: CommandSpec,
        on_output: OutputHandler,
        stop_event: asyncio.Event,
    ) -> AttemptOutcome:
        """Record the call and play back the next scripted attempt."""
        self.calls.append(spec)
        self._active += 1
        self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            queue = self.scripts.get(spec.argv[0])
            attempt = queue.pop(0) if queue else self.default

            if attempt.spawn_error is not None:
                return AttemptOutcome.spawn_failed(attempt.spawn_error)

            self.started.set()
            await asyncio.sleep(0)

            for stream, data in attempt.output:
                try:
                    on_output(stream, data)
                except (OSError, OutputIOError) as e:
                    return AttemptOutcome.io_error(str(e))

            if attempt.gate is not None:
                await attempt.gate.wait()
            if attempt.hang and attempt.ignore_stop:
                await asyncio.Event().wait()
            if attempt.hang:
                await stop_event.wait()
                return AttemptOutcome.killed(exit_code=-15)

            return AttemptOutcome.exited(attempt.exit_code)
        finally:
            self._active -= 1


class MemoryLogSink:
    """In-memory log sink; one bytearray per attempt."""

    def __init__(self, run_dir: Path, entry: QueueEntry, fail_writes: bool = False) -> None:
        self._run_dir = run_dir
        self._entry_index = entry.index
        self._name = entry.name or entry.definition.name
        self.fail_writes = fail_writes
        self.attempts: list[bytearray] = []
        self._paths: list[Path] = []
        self.closed = False
        self.close_count = 0

    @property
    def path(self) -> Path | None:
        return self._paths[-1] if self._paths else None

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def begin_attempt(self, attempt: int) -> Path:
        path = get_output_path(self._run_dir, self._name, self._entry_index, attempt - 1)
        self.attempts.append(bytearray())
        self._paths.append(path)
        self.closed = False
        return path

    def write(self, stream: OutputStream, data: bytes) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        if not self.attempts or self.closed:
            raise OutputIOError(f"Log sink for {self._name!r} is not open")
        self.attempts[-1].extend(data)

    def write_error(self, message: str) -> None:
        self.write(OutputStream.STDERR, message.encode() + b"\n")

    def read_bytes(self, attempt: int | None = None) -> bytes:
        if not self.attempts:
            return b""
        return bytes(self.attempts[-1] if attempt is None else self.attempts[attempt - 1])

    def close(self) -> None:
        self.closed = True
        self.close_count += 1


class MockLogStore:
    """Mock log store for testing.

    Records all operations without filesystem side effects.
    """

    def __init__(self, fail_writes: bool = False) -> None:
        self.fail_writes = fail_writes
        self.created_directories: list[Path] = []
        self.sinks: dict[str, MemoryLogSink] = {}
        self.manifests: list[RunSnapshot] = []

    def create_run_directory(self, run_id: str) -> Path:
        run_dir = Path("/mock-logs") / run_id
        self.created_directories.append(run_dir)
        return run_dir

    def open_sink(self, run_dir: Path, entry: QueueEntry) -> MemoryLogSink:
        sink = MemoryLogSink(run_dir, entry, fail_writes=self.fail_writes)
        self.sinks[entry.entry_id] = sink
        return sink

    def save_manifest(self, run_dir: Path, snapshot: RunSnapshot) -> None:
        self.manifests.append(snapshot)


# Verify protocol compliance at import time
assert isinstance(MockProcessRunner(), ProcessRunner)
assert isinstance(MockLogStore(), LogStore)
