"""Tests for log files, the log store and the output tail."""

import json
from pathlib import Path

import pytest

from scripter.engine.logs import FileLogSink, LocalLogStore, OutputTail, get_output_path
from scripter.exceptions import OutputIOError
from scripter.models import (
    ExecutionState,
    OutputKind,
    OutputStream,
    Run,
    RunStatus,
    ScriptDefinition,
)


class TestGetOutputPath:
    """Tests for log file naming."""

    def test_first_attempt(self, tmp_path: Path) -> None:
        """Test the first attempt has no retry suffix."""
        assert get_output_path(tmp_path, "build", 0, 0) == tmp_path / "1_build_output.log"

    def test_retry_suffix(self, tmp_path: Path) -> None:
        """Test retries are numbered from one."""
        path = get_output_path(tmp_path, "tests", 2, 2)
        assert path == tmp_path / "3_tests_output_retry2.log"

    def test_name_is_sanitised(self, tmp_path: Path) -> None:
        """Test non-alphanumeric characters become dashes."""
        path = get_output_path(tmp_path, "Deploy app/v2!", 0, 0)
        assert path.name == "1_Deploy-app-v2-_output.log"

    def test_name_is_truncated(self, tmp_path: Path) -> None:
        """Test long names are cut to 30 characters."""
        path = get_output_path(tmp_path, "a" * 50, 9, 0)
        assert path.name == "10_" + "a" * 30 + "_output.log"


class TestFileLogSink:
    """Tests for FileLogSink."""

    def test_writes_are_visible_immediately(self, tmp_path: Path) -> None:
        """Test each chunk is on disk right after write."""
        sink = FileLogSink(tmp_path, 0, "build")
        path = sink.begin_attempt(1)
        sink.write(OutputStream.STDOUT, b"hello ")
        sink.write(OutputStream.STDERR, b"world\n")

        assert path.read_bytes() == b"hello world\n"
        assert sink.read_bytes() == b"hello world\n"
        sink.close()

    def test_one_file_per_attempt(self, tmp_path: Path) -> None:
        """Test retries go to separate files."""
        sink = FileLogSink(tmp_path, 1, "tests")
        sink.begin_attempt(1)
        sink.write(OutputStream.STDOUT, b"first")
        sink.begin_attempt(2)
        sink.write(OutputStream.STDOUT, b"second")
        sink.close()

        assert [p.name for p in sink.paths] == ["2_tests_output.log", "2_tests_output_retry1.log"]
        assert sink.path == sink.paths[-1]
        assert sink.read_bytes(1) == b"first"
        assert sink.read_bytes() == b"second"

    def test_write_error_appends_line(self, tmp_path: Path) -> None:
        """Test error messages are recorded in the log."""
        sink = FileLogSink(tmp_path, 0, "build")
        sink.begin_attempt(1)
        sink.write_error("Failed to start the process: missing")
        sink.close()

        assert sink.read_bytes() == b"Failed to start the process: missing\n"

    def test_write_before_begin_raises(self, tmp_path: Path) -> None:
        """Test writing without an open attempt is an output error."""
        sink = FileLogSink(tmp_path, 0, "build")
        with pytest.raises(OutputIOError):
            sink.write(OutputStream.STDOUT, b"data")

    def test_write_after_close_raises(self, tmp_path: Path) -> None:
        """Test a closed sink rejects writes."""
        sink = FileLogSink(tmp_path, 0, "build")
        sink.begin_attempt(1)
        sink.close()
        sink.close()
        with pytest.raises(OutputIOError):
            sink.write(OutputStream.STDOUT, b"data")

    def test_unwritable_directory_raises(self, tmp_path: Path) -> None:
        """Test failing to open the log file is an output error."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        sink = FileLogSink(blocker, 0, "build")
        with pytest.raises(OutputIOError):
            sink.begin_attempt(1)


class TestLocalLogStore:
    """Tests for LocalLogStore."""

    def test_create_run_directory(self, tmp_path: Path) -> None:
        """Test run directories are created under logs_path."""
        store = LocalLogStore(tmp_path / "logs")
        run_dir = store.create_run_directory("run-1")

        assert run_dir.is_dir()
        assert run_dir.parent == tmp_path / "logs"

    def test_same_second_directories_do_not_collide(self, tmp_path: Path) -> None:
        """Test two runs get different directories."""
        store = LocalLogStore(tmp_path)
        first = store.create_run_directory("run-1")
        second = store.create_run_directory("run-2")
        assert first != second

    def test_open_sink_uses_entry_position(self, tmp_path: Path) -> None:
        """Test sinks are named after the entry index and name."""
        store = LocalLogStore(tmp_path)
        run = Run.from_definitions(
            [ScriptDefinition(name="a", command="a"), ScriptDefinition(name="b", command="b")]
        )
        sink = store.open_sink(tmp_path, run.entries[1])
        assert sink.begin_attempt(1).name == "2_b_output.log"
        sink.close()

    def test_save_manifest(self, tmp_path: Path) -> None:
        """Test the manifest holds the snapshot and summary."""
        store = LocalLogStore(tmp_path)
        run = Run.from_definitions([ScriptDefinition(name="a", command="a")])
        run.entries[0].state = ExecutionState.SUCCEEDED
        run.status = RunStatus.FINISHED

        store.save_manifest(tmp_path, run.snapshot())

        manifest = json.loads((tmp_path / "manifest.json").read_text())
        assert manifest["run_id"] == run.run_id
        assert manifest["status"] == "finished"
        assert manifest["entries"][0]["state"] == "succeeded"
        assert manifest["summary"]["succeeded"] == 1


class TestOutputTail:
    """Tests for the recent output ring buffer."""

    def test_splits_lines_across_chunks(self) -> None:
        """Test partial lines are joined with their continuation."""
        tail = OutputTail()
        tail.feed("e1", OutputStream.STDOUT, b"hel")
        tail.feed("e1", OutputStream.STDOUT, b"lo\nwor")
        tail.feed("e1", OutputStream.STDOUT, b"ld\n")
        assert [line.text for line in tail.lines()] == ["hello", "world"]

    def test_streams_are_buffered_separately(self) -> None:
        """Test stdout and stderr fragments do not mix."""
        tail = OutputTail()
        tail.feed("e1", OutputStream.STDOUT, b"out")
        tail.feed("e1", OutputStream.STDERR, b"err\n")
        tail.feed("e1", OutputStream.STDOUT, b"put\n")
        lines = tail.lines()
        assert [(line.text, line.kind) for line in lines] == [
            ("err", OutputKind.STDERR),
            ("output", OutputKind.STDOUT),
        ]

    def test_split_utf8_sequence(self) -> None:
        """Test multi-byte characters split across chunks decode correctly."""
        tail = OutputTail()
        data = "héllo\n".encode()
        tail.feed("e1", OutputStream.STDOUT, data[:2])
        tail.feed("e1", OutputStream.STDOUT, data[2:])
        assert tail.lines()[0].text == "héllo"

    def test_flush_emits_unterminated_line(self) -> None:
        """Test the last line without newline is kept on flush."""
        tail = OutputTail()
        tail.feed("e1", OutputStream.STDOUT, b"no newline")
        assert tail.lines() == []
        tail.flush("e1")
        assert [line.text for line in tail.lines()] == ["no newline"]

    def test_keeps_most_recent_lines(self) -> None:
        """Test the buffer is bounded."""
        tail = OutputTail(max_lines=3)
        for i in range(10):
            tail.add_event(f"line {i}")
        assert [line.text for line in tail.lines()] == ["line 7", "line 8", "line 9"]

    def test_error_and_event_kinds(self) -> None:
        """Test engine lines are tagged by kind."""
        tail = OutputTail()
        tail.add_event('Running "build"', "e1")
        tail.add_error("Failed to start the process: missing", "e1")
        kinds = [line.kind for line in tail.lines()]
        assert kinds == [OutputKind.EVENT, OutputKind.ERROR]
