"""Execution engine for script queues.

This package turns a Run into a supervised sequence of child processes:

- ExecutionEngine: walks the queue, applies retry and skip policy, emits events
- ProcessRunner: protocol for spawning one command (SubprocessRunner)
- LogStore / LogSink: protocols for durable per-entry output (LocalLogStore)
- Container: composition root with test overrides
"""

from scripter.engine.container import Container
from scripter.engine.engine import ExecutionEngine
from scripter.engine.logs import FileLogSink, LocalLogStore, OutputTail, get_output_path
from scripter.engine.process import SubprocessRunner, replace_placeholders, resolve_command
from scripter.engine.protocols import CommandSpec, LogSink, LogStore, OutputHandler, ProcessRunner
from scripter.engine.states import ALLOWED_TRANSITIONS, can_transition

__all__ = [
    # Core classes
    "ExecutionEngine",
    "Container",
    # Protocols
    "ProcessRunner",
    "LogStore",
    "LogSink",
    "CommandSpec",
    "OutputHandler",
    # Implementations
    "SubprocessRunner",
    "LocalLogStore",
    "FileLogSink",
    "OutputTail",
    # Functions
    "resolve_command",
    "replace_placeholders",
    "get_output_path",
    "can_transition",
    # Constants
    "ALLOWED_TRANSITIONS",
]
