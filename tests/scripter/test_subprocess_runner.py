"""Tests for SubprocessRunner with real child processes."""

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from scripter.engine.process import SubprocessRunner
from scripter.engine.protocols import CommandSpec
from scripter.exceptions import OutputIOError
from scripter.models import OutcomeKind, OutputStream

TIMEOUT = 20.0

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


def _python(
    code: str, tmp_path: Path, env: dict[str, str] | None = None, **kwargs: object
) -> CommandSpec:
    return CommandSpec(
        argv=[sys.executable, "-c", code],
        cwd=tmp_path,
        env={**os.environ, **(env or {})},
        **kwargs,
    )


class Collector:
    """Output callback that records chunks and signals on a marker."""

    def __init__(self, marker: bytes = b"ready") -> None:
        self.chunks: list[tuple[OutputStream, bytes]] = []
        self.marker = marker
        self.seen_marker = asyncio.Event()

    def __call__(self, stream: OutputStream, data: bytes) -> None:
        self.chunks.append((stream, data))
        if self.marker in self.data(stream):
            self.seen_marker.set()

    def data(self, stream: OutputStream) -> bytes:
        return b"".join(chunk for s, chunk in self.chunks if s == stream)


class TestSubprocessRunner:
    """Tests for spawning and supervising real commands."""

    @pytest.mark.asyncio
    async def test_captures_stdout_and_stderr(self, tmp_path: Path) -> None:
        """Test both streams reach the callback unchanged."""
        runner = SubprocessRunner(grace_period_seconds=1.0)
        collector = Collector()
        code = "import sys; sys.stdout.write('out\\n'); sys.stderr.write('err\\n')"

        outcome = await asyncio.wait_for(
            runner.run(_python(code, tmp_path), collector, asyncio.Event()), timeout=TIMEOUT
        )

        assert outcome.kind == OutcomeKind.EXIT_CODE
        assert outcome.exit_code == 0
        assert collector.data(OutputStream.STDOUT) == b"out\n"
        assert collector.data(OutputStream.STDERR) == b"err\n"
        assert outcome.duration_seconds > 0

    @pytest.mark.asyncio
    async def test_reports_exit_code(self, tmp_path: Path) -> None:
        """Test a non-zero exit code is reported as-is."""
        runner = SubprocessRunner()

        outcome = await asyncio.wait_for(
            runner.run(_python("raise SystemExit(3)", tmp_path), Collector(), asyncio.Event()),
            timeout=TIMEOUT,
        )

        assert outcome.kind == OutcomeKind.EXIT_CODE
        assert outcome.exit_code == 3

    @pytest.mark.asyncio
    async def test_large_output_is_chunked(self, tmp_path: Path) -> None:
        """Test big outputs arrive complete in bounded chunks."""
        runner = SubprocessRunner(chunk_size=4096)
        collector = Collector()
        code = "import sys; sys.stdout.write('x' * 200000)"

        outcome = await asyncio.wait_for(
            runner.run(_python(code, tmp_path), collector, asyncio.Event()), timeout=TIMEOUT
        )

        assert outcome.exit_code == 0
        assert collector.data(OutputStream.STDOUT) == b"x" * 200000
        assert all(len(chunk) <= 4096 for _, chunk in collector.chunks)

    @pytest.mark.asyncio
    async def test_missing_program_is_spawn_failure(self, tmp_path: Path) -> None:
        """Test a missing executable becomes a spawn_failed outcome."""
        runner = SubprocessRunner()
        spec = CommandSpec(argv=[str(tmp_path / "no-such-program")], cwd=tmp_path)

        outcome = await runner.run(spec, Collector(), asyncio.Event())

        assert outcome.kind == OutcomeKind.SPAWN_FAILED
        assert outcome.exit_code is None
        assert outcome.error

    @pytest.mark.asyncio
    async def test_missing_working_directory_is_spawn_failure(self, tmp_path: Path) -> None:
        """Test a missing cwd becomes a spawn_failed outcome."""
        runner = SubprocessRunner()
        spec = _python("pass", tmp_path / "missing")

        outcome = await runner.run(spec, Collector(), asyncio.Event())

        assert outcome.kind == OutcomeKind.SPAWN_FAILED

    @pytest.mark.asyncio
    async def test_runs_in_working_directory_with_env(self, tmp_path: Path) -> None:
        """Test cwd and env are passed to the child."""
        runner = SubprocessRunner()
        collector = Collector()
        code = "import os; print(os.getcwd()); print(os.environ['SCRIPTER_TEST_VALUE'])"
        spec = _python(code, tmp_path, env={"SCRIPTER_TEST_VALUE": "42"})

        outcome = await asyncio.wait_for(
            runner.run(spec, collector, asyncio.Event()), timeout=TIMEOUT
        )

        assert outcome.exit_code == 0
        lines = collector.data(OutputStream.STDOUT).decode().splitlines()
        assert Path(lines[0]).resolve() == tmp_path.resolve()
        assert lines[1] == "42"

    @pytest.mark.asyncio
    async def test_ignore_output(self, tmp_path: Path) -> None:
        """Test output is discarded when ignore_output is set."""
        runner = SubprocessRunner()
        collector = Collector()
        spec = _python("print('hidden')", tmp_path, ignore_output=True)

        outcome = await asyncio.wait_for(
            runner.run(spec, collector, asyncio.Event()), timeout=TIMEOUT
        )

        assert outcome.exit_code == 0
        assert collector.chunks == []

    @posix_only
    @pytest.mark.asyncio
    async def test_stop_terminates_child(self, tmp_path: Path) -> None:
        """Test a stop request sends SIGTERM and reports a kill."""
        runner = SubprocessRunner(grace_period_seconds=5.0)
        collector = Collector()
        stop_event = asyncio.Event()
        code = "import time; print('ready', flush=True); time.sleep(60)"

        task = asyncio.create_task(runner.run(_python(code, tmp_path), collector, stop_event))
        await asyncio.wait_for(collector.seen_marker.wait(), timeout=TIMEOUT)
        stop_event.set()
        outcome = await asyncio.wait_for(task, timeout=TIMEOUT)

        assert outcome.kind == OutcomeKind.KILLED
        assert outcome.exit_code == -15

    @posix_only
    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self, tmp_path: Path) -> None:
        """Test a child that ignores SIGTERM is killed after the grace period."""
        runner = SubprocessRunner(grace_period_seconds=0.5)
        collector = Collector()
        stop_event = asyncio.Event()
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )

        task = asyncio.create_task(runner.run(_python(code, tmp_path), collector, stop_event))
        await asyncio.wait_for(collector.seen_marker.wait(), timeout=TIMEOUT)
        stop_event.set()
        outcome = await asyncio.wait_for(task, timeout=TIMEOUT)

        assert outcome.kind == OutcomeKind.KILLED
        assert outcome.exit_code == -9

    @pytest.mark.asyncio
    async def test_stop_set_before_start(self, tmp_path: Path) -> None:
        """Test an already-set stop event ends the attempt promptly."""
        runner = SubprocessRunner(grace_period_seconds=1.0)
        stop_event = asyncio.Event()
        stop_event.set()

        outcome = await asyncio.wait_for(
            runner.run(_python("import time; time.sleep(60)", tmp_path), Collector(), stop_event),
            timeout=TIMEOUT,
        )

        assert outcome.kind in (OutcomeKind.KILLED, OutcomeKind.EXIT_CODE)

    @pytest.mark.asyncio
    async def test_output_error_terminates_child(self, tmp_path: Path) -> None:
        """Test a failing output callback ends the attempt with io_error."""
        runner = SubprocessRunner(grace_period_seconds=1.0)

        def failing_output(stream: OutputStream, data: bytes) -> None:
            raise OutputIOError("disk full")

        code = "import time; print('ready', flush=True); time.sleep(60)"
        outcome = await asyncio.wait_for(
            runner.run(_python(code, tmp_path), failing_output, asyncio.Event()),
            timeout=TIMEOUT,
        )

        assert outcome.kind == OutcomeKind.IO_ERROR
        assert "disk full" in outcome.error

    @posix_only
    @pytest.mark.asyncio
    async def test_cancellation_reaps_child(self, tmp_path: Path) -> None:
        """Test cancelling the awaiting task kills the child before propagating."""
        runner = SubprocessRunner(grace_period_seconds=5.0)
        collector = Collector()
        pid_file = tmp_path / "pid"
        code = (
            "import os, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )

        task = asyncio.create_task(
            runner.run(_python(code, tmp_path), collector, asyncio.Event())
        )
        await asyncio.wait_for(collector.seen_marker.wait(), timeout=TIMEOUT)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)


async def _wait_gone(pid: int, timeout: float = 5.0) -> bool:
    """Poll until pid no longer exists (an unreaped zombie may linger briefly)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        await asyncio.sleep(0.05)
    return False


@posix_only
class TestProcessGroupStop:
    """Tests for stopping scripts that start background processes."""

    @pytest.mark.asyncio
    async def test_stop_kills_background_job(self, tmp_path: Path) -> None:
        """Test a shell's background job is stopped with the shell, within the grace bound."""
        grace = 0.5
        runner = SubprocessRunner(grace_period_seconds=grace)
        collector = Collector()
        stop_event = asyncio.Event()
        pid_file = tmp_path / "job.pid"
        spec = CommandSpec(
            argv=["sh", "-c", f"sleep 30 & echo $! > {pid_file}; echo ready; wait"],
            cwd=tmp_path,
            env=dict(os.environ),
        )

        task = asyncio.create_task(runner.run(spec, collector, stop_event))
        await asyncio.wait_for(collector.seen_marker.wait(), timeout=TIMEOUT)
        loop = asyncio.get_running_loop()
        stopped_at = loop.time()
        stop_event.set()
        outcome = await asyncio.wait_for(task, timeout=TIMEOUT)
        elapsed = loop.time() - stopped_at

        assert outcome.kind == OutcomeKind.KILLED
        assert elapsed < 2 * grace + 1.0
        assert await _wait_gone(int(pid_file.read_text()))

    @pytest.mark.asyncio
    async def test_stop_is_bounded_when_pipe_escapes_group(self, tmp_path: Path) -> None:
        """Test a process in another session holding the pipe does not block a stop."""
        grace = 0.5
        runner = SubprocessRunner(grace_period_seconds=grace)
        collector = Collector()
        stop_event = asyncio.Event()
        pid_file = tmp_path / "escaped.pid"
        code = (
            "import subprocess, time\n"
            "p = subprocess.Popen(['sleep', '30'], start_new_session=True)\n"
            f"open({str(pid_file)!r}, 'w').write(str(p.pid))\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )

        task = asyncio.create_task(runner.run(_python(code, tmp_path), collector, stop_event))
        await asyncio.wait_for(collector.seen_marker.wait(), timeout=TIMEOUT)
        loop = asyncio.get_running_loop()
        stopped_at = loop.time()
        try:
            stop_event.set()
            outcome = await asyncio.wait_for(task, timeout=TIMEOUT)
            elapsed = loop.time() - stopped_at
        finally:
            try:
                os.kill(int(pid_file.read_text()), signal.SIGKILL)
            except ProcessLookupError:
                pass

        assert outcome.kind == OutcomeKind.KILLED
        assert outcome.exit_code == -15
        assert elapsed < 3 * grace + 1.0
