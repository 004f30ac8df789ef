"""Log storage implementations.

LocalLogStore lays out one directory per run:

    <logs_path>/20251207-215930-4242/
        1_build_output.log
        2_tests_output.log
        2_tests_output_retry1.log
        manifest.json

Each FileLogSink appends and flushes every chunk as it arrives, so a crash
mid-run still leaves the partial output on disk.
"""

import codecs
import json
import logging
import os
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

from scripter.exceptions import OutputIOError
from scripter.models import OutputKind, OutputLine, OutputStream, QueueEntry, RunSnapshot

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 30
MANIFEST_FILE_NAME = "manifest.json"


def get_output_path(run_dir: Path, script_name: str, index: int, retry: int) -> Path:
    """Log file path for one attempt of one entry.

    Returns paths like run_dir/3_deploy-app_output.log, or
    run_dir/3_deploy-app_output_retry2.log for the third attempt.
    """
    file_name = "".join(c if c.isalnum() else "-" for c in script_name)[:MAX_NAME_LENGTH]
    if retry == 0:
        return run_dir / f"{index + 1}_{file_name}_output.log"
    return run_dir / f"{index + 1}_{file_name}_output_retry{retry}.log"


class FileLogSink:
    """Append-only log files for one queue entry, one file per attempt."""

    def __init__(self, run_dir: Path, index: int, name: str) -> None:
        self._run_dir = run_dir
        self._index = index
        self._name = name
        self._paths: list[Path] = []
        self._handle: BinaryIO | None = None

    @property
    def path(self) -> Path | None:
        return self._paths[-1] if self._paths else None

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def begin_attempt(self, attempt: int) -> Path:
        """Close the previous attempt's file and open a fresh one."""
        self._close_handle()
        path = get_output_path(self._run_dir, self._name, self._index, attempt - 1)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(path, "ab")  # noqa: SIM115
        except OSError as e:
            raise OutputIOError(f"Cannot open log file {path}: {e}") from e
        self._paths.append(path)
        return path

    def write(self, stream: OutputStream, data: bytes) -> None:
        """Append child output and flush it to the OS immediately."""
        if self._handle is None:
            raise OutputIOError(f"Log sink for {self._name!r} is not open")
        self._handle.write(data)
        self._handle.flush()

    def write_error(self, message: str) -> None:
        if self._handle is None:
            raise OutputIOError(f"Log sink for {self._name!r} is not open")
        self._handle.write(message.encode("utf-8", errors="replace") + b"\n")
        self._handle.flush()

    def read_bytes(self, attempt: int | None = None) -> bytes:
        if not self._paths:
            return b""
        if self._handle is not None:
            self._handle.flush()
        path = self._paths[-1] if attempt is None else self._paths[attempt - 1]
        return path.read_bytes()

    def close(self) -> None:
        self._close_handle()

    def _close_handle(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.flush()
            os.fsync(handle.fileno())
        finally:
            handle.close()


class LocalLogStore:
    """Local filesystem storage for run log directories and manifests."""

    def __init__(self, logs_path: Path) -> None:
        self._logs_path = logs_path

    @property
    def logs_path(self) -> Path:
        return self._logs_path

    def create_run_directory(self, run_id: str) -> Path:
        """Create a timestamped directory for one run.

        Returns path like: logs_path/20251207-215930-4242/ where the
        suffix is the current process id. A second run started in the same
        second by the same process gets the run id appended.
        """
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        run_dir = self._logs_path / f"{timestamp}-{os.getpid()}"
        if run_dir.exists():
            run_dir = self._logs_path / f"{timestamp}-{os.getpid()}-{run_id}"
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def open_sink(self, run_dir: Path, entry: QueueEntry) -> FileLogSink:
        return FileLogSink(run_dir, entry.index, entry.name or entry.definition.name)

    def save_manifest(self, run_dir: Path, snapshot: RunSnapshot) -> None:
        """Save the final run state next to its logs."""
        manifest = json.loads(snapshot.model_dump_json())
        manifest["summary"] = json.loads(snapshot.summary.model_dump_json())
        (run_dir / MANIFEST_FILE_NAME).write_text(json.dumps(manifest, indent=2))


class OutputTail:
    """Most recent output lines across a run, for live display.

    Child output arrives in arbitrary chunks; partial lines are buffered
    per entry and stream until the newline shows up. Multi-byte UTF-8
    sequences split across chunks are decoded correctly.
    """

    def __init__(self, max_lines: int = 30) -> None:
        self._lines: deque[OutputLine] = deque(maxlen=max_lines)
        self._partial: dict[tuple[str, OutputStream], str] = {}
        self._decoders: dict[tuple[str, OutputStream], codecs.IncrementalDecoder] = {}

    def feed(self, entry_id: str, stream: OutputStream, data: bytes) -> None:
        key = (entry_id, stream)
        decoder = self._decoders.get(key)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self._decoders[key] = decoder

        text = self._partial.pop(key, "") + decoder.decode(data)
        *complete, rest = text.split("\n")
        kind = OutputKind.STDOUT if stream == OutputStream.STDOUT else OutputKind.STDERR
        for line in complete:
            self._lines.append(OutputLine(text=line.rstrip("\r"), kind=kind, entry_id=entry_id))
        if rest:
            self._partial[key] = rest

    def flush(self, entry_id: str) -> None:
        """Emit any unterminated lines left by an entry's last attempt."""
        for stream in OutputStream:
            key = (entry_id, stream)
            decoder = self._decoders.pop(key, None)
            tail = self._partial.pop(key, "") + (decoder.decode(b"", final=True) if decoder else "")
            if tail:
                kind = OutputKind.STDOUT if stream == OutputStream.STDOUT else OutputKind.STDERR
                self._lines.append(OutputLine(text=tail, kind=kind, entry_id=entry_id))

    def add_event(self, text: str, entry_id: str | None = None) -> None:
        self._lines.append(OutputLine(text=text, kind=OutputKind.EVENT, entry_id=entry_id))

    def add_error(self, text: str, entry_id: str | None = None) -> None:
        self._lines.append(OutputLine(text=text, kind=OutputKind.ERROR, entry_id=entry_id))

    def lines(self) -> list[OutputLine]:
        return list(self._lines)
