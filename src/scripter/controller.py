"""Synchronous facade over the execution engine.

The engine is asyncio-native. RunController hosts its event loop on a
daemon thread so a blocking caller (the CLI, a desktop UI) can start a run,
request a stop and poll snapshots without supervising processes itself.
Event bus handlers run on the engine thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from scripter.engine.engine import ExecutionEngine
from scripter.exceptions import ExecutionError, InvalidStateError
from scripter.models import OutputLine, QueueEntry, Run, RunSnapshot, RunStatus, RunSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunController:
    """Runs one engine on a background event loop.

    Usage:
        with RunController(Container.execution_engine()) as controller:
            controller.start(run)
            summary = controller.wait()
    """

    def __init__(self, engine: ExecutionEngine) -> None:
        self._engine = engine
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._serve,
            daemon=True,
            name="scripter-engine",
        )
        self._run: Run | None = None
        self._task: "asyncio.Task[RunSummary] | None" = None
        self._result: "concurrent.futures.Future[RunSummary] | None" = None
        self._closed = False
        self._thread.start()

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    @property
    def run(self) -> Run | None:
        return self._run

    def _serve(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a plain function on the engine loop and return its result."""
        if self._closed:
            raise ExecutionError("Run controller is closed")

        async def invoke() -> T:
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(invoke(), self._loop).result()

    def start(self, run: Run) -> None:
        """Start a run; returns as soon as the engine has accepted it.

        The engine forgets the previous run, whose Run object stays usable.

        Raises:
            InvalidStateError: If another run is still active or the run is not fresh
        """
        if self._run is not None and self._run.status == RunStatus.RUNNING:
            raise InvalidStateError(self._run.run_id, "start another run during", "running")

        if self._run is not None and self._run is not run:
            self._call(self._engine.discard, self._run)

        self._task = self._call(self._engine.start, run)
        self._run = run
        self._result = asyncio.run_coroutine_threadsafe(self._engine.wait(run), self._loop)

    def stop(self) -> None:
        """Request a stop of the current run without waiting for it."""
        run = self._require_run("stop")
        self._call(self._engine.stop, run)

    def enqueue(self, entries: list[QueueEntry]) -> None:
        """Append entries to the current run."""
        run = self._require_run("enqueue into")
        self._call(self._engine.enqueue, run, entries)

    def detach_pending(self) -> list[QueueEntry]:
        """Take the not yet started entries out of the current run."""
        run = self._require_run("detach entries from")
        return self._call(self._engine.detach_pending, run)

    def wait(self, timeout: float | None = None) -> RunSummary | None:
        """Block until the run ends.

        Returns:
            The run summary, or None if the timeout elapsed first
        """
        self._require_run("wait for")
        assert self._result is not None
        try:
            return self._result.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return None

    def snapshot(self) -> RunSnapshot:
        run = self._require_run("snapshot")
        return self._call(self._engine.snapshot, run)

    def recent_output(self) -> list[OutputLine]:
        run = self._require_run("read output of")
        return self._call(self._engine.recent_output, run)

    def close(self, timeout: float = 10.0) -> None:
        """Stop any active run, then shut the loop down."""
        if self._closed:
            return
        if self._run is not None and self._run.status == RunStatus.RUNNING:
            logger.info("Stopping run %s before closing controller", self._run.run_id)
            self.stop()
            if self.wait(timeout=timeout) is None:
                self._cancel_run(timeout)

        self._closed = True
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout)
        if not self._thread.is_alive():
            self._loop.close()

    def _cancel_run(self, timeout: float) -> None:
        """Cancel the engine task of a run that did not stop in time.

        The engine kills its child and marks every open entry Cancelled.
        """
        assert self._task is not None and self._result is not None
        logger.warning(
            "Run %s did not stop within %.1fs, cancelling it", self._run.run_id, timeout
        )
        self._loop.call_soon_threadsafe(self._task.cancel)
        try:
            self._result.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            logger.info("Run %s cancelled", self._run.run_id)
        except concurrent.futures.TimeoutError:
            logger.error("Run %s is still active after cancellation", self._run.run_id)

    def __enter__(self) -> "RunController":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_run(self, operation: str) -> Run:
        if self._run is None:
            raise ExecutionError(f"Cannot {operation} a run: no run has been started")
        return self._run
