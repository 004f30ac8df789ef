"""Execution engine.

ExecutionEngine walks a Run's queue strictly in order on the caller's
asyncio event loop. For each entry it decides whether to skip, cancel or
run it, drives the process runner through the retry policy, streams output
into the entry's log sink, and emits an event on every state change.

start() and stop() return immediately; the supervision happens in one task
per run. Only one child process is alive per run at any time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_fixed

from scripter.bus import EventBus, NullEventBus
from scripter.config import EngineConfig
from scripter.engine.logs import OutputTail
from scripter.engine.process import resolve_command
from scripter.engine.protocols import CommandSpec, LogSink, LogStore, ProcessRunner
from scripter.engine.states import transition
from scripter.events import (
    Event,
    EntryOutputEvent,
    EntryRetryEvent,
    EntryStateChangedEvent,
    QueueChangedEvent,
    RunStatusChangedEvent,
)
from scripter.exceptions import InvalidStateError, InvariantViolationError, OutputIOError
from scripter.models import (
    AttemptOutcome,
    ExecutionState,
    OutcomeKind,
    OutputLine,
    OutputStream,
    QueueEntry,
    Run,
    RunSnapshot,
    RunStatus,
    RunSummary,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _RunContext:
    """Engine-private bookkeeping for one started run."""

    run: Run
    tail: OutputTail
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: "asyncio.Task[RunSummary] | None" = None
    run_dir: Path | None = None
    sinks: dict[str, LogSink] = field(default_factory=dict)

    async def sleep(self, seconds: float) -> None:
        """Retry delay that ends early when a stop is requested."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class ExecutionEngine:
    """Drives runs from NotStarted to Finished or Stopped.

    Usage:
        engine = ExecutionEngine(SubprocessRunner(), LocalLogStore(Path("logs")))
        engine.start(run)            # returns immediately
        ...
        engine.stop(run)             # returns immediately
        summary = await engine.wait(run)
    """

    def __init__(
        self,
        runner: ProcessRunner,
        log_store: LogStore,
        bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize engine with dependencies.

        Args:
            runner: Spawns and supervises one child process per attempt
            log_store: Creates run directories and per-entry log sinks
            bus: Notification channel; events are dropped when omitted
            config: Tunables; defaults are used when omitted
        """
        self._runner = runner
        self._log_store = log_store
        self._bus: EventBus = bus if bus is not None else NullEventBus()
        self._config = config if config is not None else EngineConfig()
        self._contexts: dict[str, _RunContext] = {}

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def config(self) -> EngineConfig:
        return self._config

    # Control operations

    def start(self, run: Run) -> "asyncio.Task[RunSummary]":
        """Begin executing a fresh run on the running event loop.

        Raises:
            InvalidStateError: If the run is not NotStarted or was started before
            RuntimeError: If called without a running event loop
        """
        if run.status != RunStatus.NOT_STARTED or run.run_id in self._contexts:
            raise InvalidStateError(run.run_id, "start", run.status.value)

        loop = asyncio.get_running_loop()
        ctx = _RunContext(run=run, tail=OutputTail(self._config.recent_lines))
        self._contexts[run.run_id] = ctx

        run.started_at = _now()
        self._set_run_status(ctx, RunStatus.RUNNING)
        logger.info("Starting run %s with %d entries", run.run_id, len(run.entries))

        ctx.task = loop.create_task(self._execute(ctx), name=f"scripter-run-{run.run_id}")
        return ctx.task

    def stop(self, run: Run) -> None:
        """Request cancellation of a running run.

        The running child (if any) gets SIGTERM, then SIGKILL after the
        grace period. Pending entries are cancelled right away. The run
        reaches Stopped once the child is gone; await wait() for that.

        Raises:
            InvalidStateError: If the run was never started or already finished
        """
        if run.status == RunStatus.STOPPED:
            return
        if run.status != RunStatus.RUNNING:
            raise InvalidStateError(run.run_id, "stop", run.status.value)
        if run.stop_requested:
            return

        ctx = self._context(run)
        logger.info("Stop requested for run %s", run.run_id)
        run.stop_requested = True
        ctx.stop_event.set()

        for entry in run.entries:
            if entry.state == ExecutionState.PENDING:
                self._finish_entry(ctx, entry, ExecutionState.CANCELLED)

    async def wait(self, run: Run) -> RunSummary:
        """Wait until the run is Finished or Stopped and return its summary.

        Cancelling the waiter does not cancel the run.
        """
        ctx = self._contexts.get(run.run_id)
        if ctx is None or ctx.task is None:
            raise InvalidStateError(run.run_id, "wait for", run.status.value)
        return await asyncio.shield(ctx.task)

    def enqueue(self, run: Run, entries: list[QueueEntry]) -> None:
        """Append fresh entries to the end of a running run.

        The entries run after everything already queued. A failure earlier
        in the run still skips them unless they ignore previous failures.

        Raises:
            InvalidStateError: If the run is not running
            InvariantViolationError: If an entry is not fresh or already in the run
        """
        if run.status != RunStatus.RUNNING:
            raise InvalidStateError(run.run_id, "enqueue into", run.status.value)
        self._context(run)

        known = {entry.entry_id for entry in run.entries}
        for entry in entries:
            if entry.state != ExecutionState.PENDING or entry.attempt:
                raise InvariantViolationError(
                    f"Cannot enqueue entry {entry.entry_id} in state {entry.state.value}"
                )
            if entry.entry_id in known:
                raise InvariantViolationError(
                    f"Entry {entry.entry_id} is already in run {run.run_id}"
                )
            known.add(entry.entry_id)

        for entry in entries:
            entry.index = len(run.entries)
            run.entries.append(entry)
        logger.info("Enqueued %d entries into run %s", len(entries), run.run_id)
        self._emit(
            QueueChangedEvent(
                run_id=run.run_id,
                enqueued=[entry.entry_id for entry in entries],
                total=len(run.entries),
            )
        )

    def detach_pending(self, run: Run) -> list[QueueEntry]:
        """Remove the entries that have not started yet and hand them back.

        The running entry, if any, keeps running and the run finishes after
        it. The detached entries are still Pending and can be edited and
        passed to enqueue() again.

        Raises:
            InvalidStateError: If the run is not running
        """
        if run.status != RunStatus.RUNNING:
            raise InvalidStateError(run.run_id, "detach entries from", run.status.value)
        self._context(run)

        detached = [entry for entry in run.entries if entry.state == ExecutionState.PENDING]
        if not detached:
            return []
        run.entries = [entry for entry in run.entries if entry.state != ExecutionState.PENDING]
        logger.info("Detached %d pending entries from run %s", len(detached), run.run_id)
        self._emit(
            QueueChangedEvent(
                run_id=run.run_id,
                detached=[entry.entry_id for entry in detached],
                total=len(run.entries),
            )
        )
        return detached

    def discard(self, run: Run) -> None:
        """Forget a finished or stopped run."""
        if run.status == RunStatus.RUNNING:
            raise InvalidStateError(run.run_id, "discard", run.status.value)
        self._contexts.pop(run.run_id, None)

    # Observation

    def snapshot(self, run: Run) -> RunSnapshot:
        return run.snapshot()

    def summary(self, run: Run) -> RunSummary:
        return run.summary()

    def recent_output(self, run: Run) -> list[OutputLine]:
        ctx = self._contexts.get(run.run_id)
        return ctx.tail.lines() if ctx else []

    # State machine

    def on_entry_finished(
        self, run: Run, entry: QueueEntry, outcome: AttemptOutcome
    ) -> ExecutionState:
        """Record an attempt's outcome and apply the retry policy.

        Returns:
            RUNNING when another attempt follows, otherwise the terminal state
        """
        ctx = self._context(run)
        if entry.state != ExecutionState.RUNNING:
            raise InvariantViolationError(
                f"Outcome reported for entry {entry.entry_id} in state {entry.state.value}"
            )

        entry.outcome = outcome

        if self._is_success(outcome):
            return self._finish_entry(ctx, entry, ExecutionState.SUCCEEDED)

        if outcome.kind == OutcomeKind.KILLED:
            return self._finish_entry(ctx, entry, ExecutionState.CANCELLED)

        max_attempts = entry.retry_count + 1
        if entry.attempt < max_attempts:
            if run.stop_requested:
                return self._finish_entry(ctx, entry, ExecutionState.CANCELLED)
            self._retry_entry(ctx, entry, outcome, max_attempts)
            return ExecutionState.RUNNING

        return self._finish_entry(ctx, entry, ExecutionState.FAILED)

    def _is_success(self, outcome: AttemptOutcome) -> bool:
        return (
            outcome.kind == OutcomeKind.EXIT_CODE
            and outcome.exit_code in self._config.success_exit_codes
        )

    # Execution

    async def _execute(self, ctx: _RunContext) -> RunSummary:
        run = ctx.run
        try:
            try:
                ctx.run_dir = self._log_store.create_run_directory(run.run_id)
                run.log_dir = ctx.run_dir
            except OSError as e:
                logger.error("Cannot create log directory for run %s: %s", run.run_id, e)

            while run.cursor < len(run.entries):
                entry = run.entries[run.cursor]
                if entry.is_terminal:
                    run.cursor += 1
                elif run.stop_requested:
                    self._finish_entry(ctx, entry, ExecutionState.CANCELLED)
                elif run.had_failure and not entry.ignore_previous_failures:
                    ctx.tail.add_event(f'Skipping "{entry.name}" after a previous failure')
                    self._finish_entry(ctx, entry, ExecutionState.SKIPPED)
                else:
                    await self._run_entry(ctx, entry)
        except asyncio.CancelledError:
            logger.warning("Run %s task cancelled, stopping", run.run_id)
            self._abort(ctx)
            raise
        finally:
            for sink in ctx.sinks.values():
                self._close_sink(sink)
            ctx.sinks.clear()

        return self._finalize(ctx)

    async def _run_entry(self, ctx: _RunContext, entry: QueueEntry) -> None:
        run = ctx.run
        if entry.state != ExecutionState.PENDING:
            raise InvariantViolationError(
                f"Cannot run entry {entry.entry_id} in state {entry.state.value}"
            )
        if run.running_entries():
            raise InvariantViolationError(f"Run {run.run_id} already has a running entry")

        install_directory = run.install_directory or self._config.install_directory
        spec = resolve_command(entry, run, install_directory)

        if ctx.run_dir is not None:
            ctx.sinks[entry.entry_id] = self._log_store.open_sink(ctx.run_dir, entry)

        entry.started_at = _now()
        self._change_state(ctx, entry, ExecutionState.RUNNING)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(entry.retry_count + 1),
            wait=wait_fixed(self._config.retry_delay_seconds),
            retry=retry_if_result(lambda state: state == ExecutionState.RUNNING),
            sleep=ctx.sleep,
            retry_error_callback=self._retries_exhausted,
        )
        await retrying(self._attempt, ctx, entry, spec)

    async def _attempt(self, ctx: _RunContext, entry: QueueEntry, spec: CommandSpec) -> ExecutionState:
        if ctx.run.stop_requested:
            # Stop arrived during the retry delay
            return self._finish_entry(ctx, entry, ExecutionState.CANCELLED)

        entry.attempt += 1
        retry_note = f" retry #{entry.attempt - 1}" if entry.attempt > 1 else ""
        ctx.tail.add_event(f'Running "{entry.name}"{retry_note}: {spec.display}', entry.entry_id)
        logger.info("Running %s%s: %s", entry.name, retry_note, spec.display)

        outcome = await self._spawn_attempt(ctx, entry, spec)
        logger.info("Entry %s attempt %d ended: %s", entry.name, entry.attempt, outcome.describe())
        return self.on_entry_finished(ctx.run, entry, outcome)

    async def _spawn_attempt(
        self, ctx: _RunContext, entry: QueueEntry, spec: CommandSpec
    ) -> AttemptOutcome:
        sink = ctx.sinks.get(entry.entry_id)
        if sink is None:
            return AttemptOutcome.io_error("Log directory is unavailable")

        try:
            entry.log_path = sink.begin_attempt(entry.attempt)
        except (OSError, OutputIOError) as e:
            ctx.tail.add_error(str(e), entry.entry_id)
            return AttemptOutcome.io_error(str(e))
        entry.log_paths = sink.paths

        def on_output(stream: OutputStream, data: bytes) -> None:
            sink.write(stream, data)
            ctx.tail.feed(entry.entry_id, stream, data)
            self._emit(
                EntryOutputEvent(
                    run_id=ctx.run.run_id, entry_id=entry.entry_id, stream=stream, data=data
                )
            )

        outcome = await self._runner.run(spec, on_output, ctx.stop_event)
        ctx.tail.flush(entry.entry_id)

        if outcome.kind == OutcomeKind.SPAWN_FAILED:
            message = f"Failed to start the process: {outcome.error}"
            ctx.tail.add_error(message, entry.entry_id)
            try:
                sink.write_error(message)
            except (OSError, OutputIOError) as e:
                logger.warning("Cannot record spawn failure for %s: %s", entry.name, e)
        elif outcome.kind == OutcomeKind.IO_ERROR:
            ctx.tail.add_error(f"Output error: {outcome.error}", entry.entry_id)

        return outcome

    def _retries_exhausted(self, retry_state: RetryCallState) -> ExecutionState:
        raise InvariantViolationError(
            f"Retry loop ran out of attempts after {retry_state.attempt_number} "
            "while the entry was still running"
        )

    def _retry_entry(
        self, ctx: _RunContext, entry: QueueEntry, outcome: AttemptOutcome, max_attempts: int
    ) -> None:
        self._change_state(ctx, entry, ExecutionState.RUNNING)
        self._emit(
            EntryRetryEvent(
                run_id=ctx.run.run_id,
                entry_id=entry.entry_id,
                index=entry.index,
                name=entry.name,
                attempt=entry.attempt,
                max_attempts=max_attempts,
                error=outcome.describe(),
                delay_seconds=self._config.retry_delay_seconds,
                run_status=ctx.run.status,
            )
        )

    def _finish_entry(
        self, ctx: _RunContext, entry: QueueEntry, state: ExecutionState
    ) -> ExecutionState:
        """Move an entry to a terminal state and advance the cursor past it."""
        run = ctx.run
        entry.ended_at = _now()
        if state == ExecutionState.FAILED:
            run.had_failure = True

        sink = ctx.sinks.pop(entry.entry_id, None)
        if sink is not None:
            self._close_sink(sink)

        self._change_state(ctx, entry, state)
        if entry.index == run.cursor:
            run.cursor += 1
        return state

    def _abort(self, ctx: _RunContext) -> None:
        run = ctx.run
        run.stop_requested = True
        ctx.stop_event.set()
        for entry in run.entries:
            if not entry.is_terminal:
                self._finish_entry(ctx, entry, ExecutionState.CANCELLED)
        run.ended_at = _now()
        self._set_run_status(ctx, RunStatus.STOPPED, run.summary())

    def _finalize(self, ctx: _RunContext) -> RunSummary:
        run = ctx.run
        status = RunStatus.STOPPED if run.stop_requested else RunStatus.FINISHED
        old_status = run.status
        run.status = status
        run.ended_at = _now()

        if ctx.run_dir is not None:
            try:
                self._log_store.save_manifest(ctx.run_dir, run.snapshot())
            except OSError as e:
                logger.error("Cannot write manifest for run %s: %s", run.run_id, e)

        summary = run.summary()
        logger.info(
            "Run %s %s: %d succeeded, %d failed, %d skipped, %d cancelled",
            run.run_id,
            status.value,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            summary.cancelled,
        )
        self._emit(
            RunStatusChangedEvent(
                run_id=run.run_id, old_status=old_status, new_status=status, summary=summary
            )
        )
        return summary

    # Helpers

    def _context(self, run: Run) -> _RunContext:
        ctx = self._contexts.get(run.run_id)
        if ctx is None:
            raise InvariantViolationError(f"Run {run.run_id} is not managed by this engine")
        return ctx

    def _change_state(self, ctx: _RunContext, entry: QueueEntry, state: ExecutionState) -> None:
        old_state = transition(entry, state)
        self._emit(
            EntryStateChangedEvent(
                run_id=ctx.run.run_id,
                entry_id=entry.entry_id,
                index=entry.index,
                name=entry.name,
                old_state=old_state,
                new_state=state,
                run_status=ctx.run.status,
                attempt=entry.attempt,
                outcome=entry.outcome,
            )
        )

    def _set_run_status(
        self, ctx: _RunContext, status: RunStatus, summary: RunSummary | None = None
    ) -> None:
        old_status = ctx.run.status
        ctx.run.status = status
        self._emit(
            RunStatusChangedEvent(
                run_id=ctx.run.run_id, old_status=old_status, new_status=status, summary=summary
            )
        )

    def _emit(self, event: Event) -> None:
        self._bus.emit(event)

    def _close_sink(self, sink: LogSink) -> None:
        try:
            sink.close()
        except OSError as e:
            logger.warning("Cannot close log sink %s: %s", sink.path, e)
