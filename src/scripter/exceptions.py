"""Scripter exception hierarchy.

Provides a unified exception hierarchy for the engine, the controller and
the CLI. This enables:
- User-friendly error messages in the CLI
- Programmatic error handling in library usage
- Clear distinction between script failures and programming errors

Script failures (non-zero exits, spawn errors, broken pipes) never escape
the engine as exceptions. They are recorded on the queue entry instead.
The exceptions below are raised for caller mistakes and invariant breaks.

Usage:
    from scripter.exceptions import InvalidStateError

    try:
        engine.start(run)
    except InvalidStateError as e:
        print(f"Cannot start: {e.message}")
"""


class ScripterError(Exception):
    """Base exception for all scripter errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# Configuration Errors


class ConfigurationError(ScripterError):
    """Error in scripter configuration.

    Raised when config.yaml is invalid or contains incompatible settings.
    """

    pass


class DefinitionError(ConfigurationError):
    """Invalid script definition or queue file.

    Raised at load time for unknown fields, malformed values or queue
    items that reference a missing definition.
    """

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid script definitions in {source}: {reason}")


# Execution Errors


class ExecutionError(ScripterError):
    """Base class for execution-related errors."""

    pass


class InvalidStateError(ExecutionError):
    """Control operation invoked out of sequence.

    Raised synchronously by start/stop. The run is left untouched.
    """

    def __init__(self, run_id: str, operation: str, status: str) -> None:
        self.run_id = run_id
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} run {run_id} while it is {status}")


class InvariantViolationError(ExecutionError):
    """Engine invariant broken.

    This is a programming error, not a script failure: for example an
    attempt to run an entry that is not pending, or a transition out of a
    terminal state.
    """

    pass


class SpawnFailedError(ExecutionError):
    """Executable could not be started.

    Raised by process runners when the executable is missing, not
    executable or permission is denied.
    """

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start the process '{command}': {reason}")


class OutputIOError(ExecutionError):
    """Reading child output or writing the log sink failed."""

    pass


__all__ = [
    "ScripterError",
    "ConfigurationError",
    "DefinitionError",
    "ExecutionError",
    "InvalidStateError",
    "InvariantViolationError",
    "SpawnFailedError",
    "OutputIOError",
]
