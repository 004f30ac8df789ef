"""Pydantic models for the scripter execution engine.

These models define the structure of a run: the static script
definitions it is built from, the queue entries the engine mutates, the
outcome of each attempt, and the frozen snapshots handed to observers.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PathType(str, Enum):
    """What a relative command or working directory path is relative to."""

    WORKING_DIR = "working_dir"
    INSTALL = "install"


class ExecutionState(str, Enum):
    """Lifecycle stage of a queue entry."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ExecutionState.SUCCEEDED,
        ExecutionState.FAILED,
        ExecutionState.SKIPPED,
        ExecutionState.CANCELLED,
    }
)


class RunStatus(str, Enum):
    """Overall status of a run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINISHED = "finished"
    STOPPED = "stopped"


class OutcomeKind(str, Enum):
    """How a single attempt ended."""

    EXIT_CODE = "exit_code"
    SPAWN_FAILED = "spawn_failed"
    IO_ERROR = "io_error"
    KILLED = "killed"


class OutputStream(str, Enum):
    """Child process stream a chunk of output came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


class OutputKind(str, Enum):
    """Origin of a line kept in the recent output tail."""

    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"
    EVENT = "event"


def generate_run_id() -> str:
    """Generate a sortable run id like 20251207-215930-1a2b3c4d."""
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S") + "-" + uuid4().hex[:8]


class ArgumentPlaceholder(BaseModel):
    """A token inside arguments that is replaced before launch."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    placeholder: str = Field(..., min_length=1, description="Token to look for, e.g. %BRANCH%")
    value: str = Field(default="", description="Replacement text")
    name: str = Field(default="", description="Human-readable label")


class ScriptDefinition(BaseModel):
    """Static, reusable description of a runnable command.

    Frozen because definitions are shared read-only input for every run
    built from them. Unknown fields are rejected so typos in a queue file
    fail at load time rather than being silently ignored.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: str = Field(default_factory=lambda: uuid4().hex[:12], description="Stable identifier")
    name: str = Field(..., min_length=1, description="Display name")
    command: str = Field(..., min_length=1, description="Executable path or command name")
    arguments: list[str] = Field(default_factory=list, description="Default arguments")
    path_type: PathType = Field(
        default=PathType.WORKING_DIR, description="Base for a relative command path"
    )
    retry_count: int = Field(default=0, ge=0, description="Additional attempts after the first")
    ignore_previous_failures: bool = Field(
        default=False, description="Run even if an earlier entry failed"
    )
    working_directory: str | None = Field(
        default=None, description="Child working directory, resolved like the command path"
    )
    executor: list[str] | None = Field(
        default=None, description="Launcher prefix such as ['sh', '-c']"
    )
    argument_placeholders: list[ArgumentPlaceholder] = Field(default_factory=list)
    ignore_output: bool = Field(default=False, description="Discard child output")

    @field_validator("executor")
    @classmethod
    def _executor_not_empty(cls, value: list[str] | None) -> list[str] | None:
        if value is not None and not value:
            raise ValueError("executor must contain at least one element when set")
        return value


class AttemptOutcome(BaseModel):
    """Result of one spawn attempt.

    Frozen because outcomes are immutable facts about past attempts.
    """

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    exit_code: int | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def exited(cls, exit_code: int, duration_seconds: float = 0.0) -> "AttemptOutcome":
        return cls(kind=OutcomeKind.EXIT_CODE, exit_code=exit_code, duration_seconds=duration_seconds)

    @classmethod
    def spawn_failed(cls, error: str) -> "AttemptOutcome":
        return cls(kind=OutcomeKind.SPAWN_FAILED, error=error)

    @classmethod
    def io_error(cls, error: str, duration_seconds: float = 0.0) -> "AttemptOutcome":
        return cls(kind=OutcomeKind.IO_ERROR, error=error, duration_seconds=duration_seconds)

    @classmethod
    def killed(
        cls, exit_code: int | None = None, duration_seconds: float = 0.0
    ) -> "AttemptOutcome":
        return cls(
            kind=OutcomeKind.KILLED,
            exit_code=exit_code,
            error="Terminated by stop request",
            duration_seconds=duration_seconds,
        )

    def describe(self) -> str:
        """Short human-readable description."""
        if self.kind == OutcomeKind.EXIT_CODE:
            return f"exit code {self.exit_code}"
        if self.kind == OutcomeKind.KILLED:
            return "killed"
        return f"{self.kind.value}: {self.error}"


class EntrySnapshot(BaseModel):
    """Immutable copy of a queue entry for observers."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    index: int
    name: str
    command: str
    arguments: list[str]
    retry_count: int
    ignore_previous_failures: bool
    state: ExecutionState
    attempt: int
    outcome: AttemptOutcome | None
    started_at: datetime | None
    ended_at: datetime | None
    log_path: Path | None
    log_paths: list[Path]


class QueueEntry(BaseModel):
    """One scheduled invocation of a script definition within a run.

    Mutated only by the execution engine while the run is active.
    """

    entry_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    index: int = Field(default=0, ge=0, description="Position in the run")
    definition: ScriptDefinition
    name: str = Field(default="", description="Display name, defaults to the definition name")
    arguments: list[str] = Field(default_factory=list, description="Resolved arguments")
    retry_count: int = Field(default=0, ge=0)
    ignore_previous_failures: bool = False
    state: ExecutionState = ExecutionState.PENDING
    attempt: int = Field(default=0, ge=0, description="Number of spawn attempts so far")
    outcome: AttemptOutcome | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    log_path: Path | None = None
    log_paths: list[Path] = Field(default_factory=list)

    @classmethod
    def from_definition(
        cls,
        definition: ScriptDefinition,
        *,
        name: str | None = None,
        arguments: list[str] | None = None,
        retry_count: int | None = None,
        ignore_previous_failures: bool | None = None,
    ) -> "QueueEntry":
        """Create an entry, applying per-entry overrides over definition defaults."""
        return cls(
            definition=definition,
            name=name if name is not None else definition.name,
            arguments=list(arguments if arguments is not None else definition.arguments),
            retry_count=retry_count if retry_count is not None else definition.retry_count,
            ignore_previous_failures=(
                ignore_previous_failures
                if ignore_previous_failures is not None
                else definition.ignore_previous_failures
            ),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> EntrySnapshot:
        return EntrySnapshot(
            entry_id=self.entry_id,
            index=self.index,
            name=self.name or self.definition.name,
            command=self.definition.command,
            arguments=list(self.arguments),
            retry_count=self.retry_count,
            ignore_previous_failures=self.ignore_previous_failures,
            state=self.state,
            attempt=self.attempt,
            outcome=self.outcome,
            started_at=self.started_at,
            ended_at=self.ended_at,
            log_path=self.log_path,
            log_paths=list(self.log_paths),
        )


class RunSummary(BaseModel):
    """Per-state counts for a run, used to pick a process exit code."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    status: RunStatus
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    pending: int = 0
    running: int = 0

    @classmethod
    def from_entries(
        cls, run_id: str, status: RunStatus, entries: list[QueueEntry] | list[EntrySnapshot]
    ) -> "RunSummary":
        counts = {state: 0 for state in ExecutionState}
        for entry in entries:
            counts[entry.state] += 1
        return cls(
            run_id=run_id,
            status=status,
            total=len(entries),
            succeeded=counts[ExecutionState.SUCCEEDED],
            failed=counts[ExecutionState.FAILED],
            skipped=counts[ExecutionState.SKIPPED],
            cancelled=counts[ExecutionState.CANCELLED],
            pending=counts[ExecutionState.PENDING],
            running=counts[ExecutionState.RUNNING],
        )

    @property
    def exit_code(self) -> int:
        """0 when every entry succeeded or was skipped without a failure, else 1."""
        if self.failed or self.cancelled or self.pending or self.running:
            return 1
        return 0


class RunSnapshot(BaseModel):
    """Immutable full view of a run for initial render or reconnect."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    status: RunStatus
    cursor: int
    had_failure: bool
    stop_requested: bool
    started_at: datetime | None
    ended_at: datetime | None
    log_dir: Path | None
    entries: list[EntrySnapshot]

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_entries(self.run_id, self.status, self.entries)


class Run(BaseModel):
    """An ordered sequence of queue entries plus cursor and overall status.

    The run owns its entries exclusively. Entries are only ever appended
    or detached from the unstarted tail, so their order never changes.
    """

    run_id: str = Field(default_factory=generate_run_id)
    entries: list[QueueEntry] = Field(default_factory=list)
    cursor: int = Field(default=0, ge=0, description="Index of the entry currently or next to run")
    status: RunStatus = RunStatus.NOT_STARTED
    had_failure: bool = Field(default=False, description="Sticky: any executed entry failed")
    stop_requested: bool = False
    working_directory: Path = Field(default_factory=Path.cwd)
    install_directory: Path | None = None
    env: dict[str, str] = Field(default_factory=dict, description="Environment overlay")
    started_at: datetime | None = None
    ended_at: datetime | None = None
    log_dir: Path | None = None

    @model_validator(mode="after")
    def _index_entries(self) -> "Run":
        seen: set[str] = set()
        for position, entry in enumerate(self.entries):
            if entry.entry_id in seen:
                raise ValueError(f"Duplicate entry id in run: {entry.entry_id}")
            seen.add(entry.entry_id)
            entry.index = position
        return self

    @classmethod
    def from_definitions(cls, definitions: list[ScriptDefinition], **kwargs: object) -> "Run":
        """Build a run with one entry per definition, using definition defaults."""
        entries = [QueueEntry.from_definition(d) for d in definitions]
        return cls(entries=entries, **kwargs)  # type: ignore[arg-type]

    def get_entry(self, entry_id: str) -> QueueEntry:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        raise KeyError(entry_id)

    def running_entries(self) -> list[QueueEntry]:
        return [e for e in self.entries if e.state == ExecutionState.RUNNING]

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            status=self.status,
            cursor=self.cursor,
            had_failure=self.had_failure,
            stop_requested=self.stop_requested,
            started_at=self.started_at,
            ended_at=self.ended_at,
            log_dir=self.log_dir,
            entries=[e.snapshot() for e in self.entries],
        )

    def summary(self) -> RunSummary:
        return RunSummary.from_entries(self.run_id, self.status, self.entries)


class OutputLine(BaseModel):
    """A line kept in the recent output tail."""

    model_config = ConfigDict(frozen=True)

    text: str
    kind: OutputKind
    entry_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
