"""Protocols for the execution engine.

Defines contracts for process runners and log storage, so the engine can
be driven by real child processes in production and by scripted fakes in
tests.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from scripter.models import AttemptOutcome, OutputStream, QueueEntry, RunSnapshot

OutputHandler = Callable[[OutputStream, bytes], None]


class CommandSpec(BaseModel):
    """Fully resolved command line for one attempt.

    Frozen because the same spec is reused unchanged for every retry.
    """

    model_config = ConfigDict(frozen=True)

    argv: list[str] = Field(..., min_length=1, description="Program followed by its arguments")
    cwd: Path = Field(..., description="Child working directory")
    env: dict[str, str] = Field(default_factory=dict, description="Complete child environment")
    ignore_output: bool = False

    @property
    def display(self) -> str:
        return " ".join(self.argv)


@runtime_checkable
class ProcessRunner(Protocol):
    """Protocol for spawning and supervising one external command.

    Implementations must reap the child on every path (normal exit, stop,
    error, or cancellation of the awaiting task) and must never raise for
    script-level failures: those are reported through AttemptOutcome.
    """

    async def run(
        self,
        spec: CommandSpec,
        on_output: OutputHandler,
        stop_event: asyncio.Event,
    ) -> AttemptOutcome:
        """Run the command to completion or until stop_event is set."""
        ...


@runtime_checkable
class LogSink(Protocol):
    """Durable, append-as-produced storage for one queue entry's output."""

    @property
    def path(self) -> Path | None:
        """Log file of the latest attempt."""
        ...

    @property
    def paths(self) -> list[Path]:
        """Log files of all attempts, oldest first."""
        ...

    def begin_attempt(self, attempt: int) -> Path:
        """Start a new log file for the given 1-based attempt number."""
        ...

    def write(self, stream: OutputStream, data: bytes) -> None:
        """Append raw child output and flush it."""
        ...

    def write_error(self, message: str) -> None:
        """Append an engine-side diagnostic (e.g. spawn failure)."""
        ...

    def read_bytes(self, attempt: int | None = None) -> bytes:
        """Read back the bytes of one attempt (latest by default)."""
        ...

    def close(self) -> None:
        """Flush, sync and close. Safe to call more than once."""
        ...


@runtime_checkable
class LogStore(Protocol):
    """Protocol for run log directories and sinks.

    Separates storage concerns from execution logic.
    """

    def create_run_directory(self, run_id: str) -> Path:
        """Create the directory that holds all logs of one run."""
        ...

    def open_sink(self, run_dir: Path, entry: QueueEntry) -> LogSink:
        """Create the sink bound to one queue entry."""
        ...

    def save_manifest(self, run_dir: Path, snapshot: RunSnapshot) -> None:
        """Persist the final state of a run next to its logs."""
        ...
