"""Scripter - run a queue of scripts in order.

Sequential script runner with retries, skip-after-failure policy,
graceful stop and per-attempt log files.
"""

from scripter.exceptions import (
    ConfigurationError,
    DefinitionError,
    ExecutionError,
    InvalidStateError,
    InvariantViolationError,
    OutputIOError,
    ScripterError,
    SpawnFailedError,
)

__version__ = "0.1.0"

__all__ = [
    # Base exception
    "ScripterError",
    # Configuration
    "ConfigurationError",
    "DefinitionError",
    # Execution
    "ExecutionError",
    "InvalidStateError",
    "InvariantViolationError",
    "SpawnFailedError",
    "OutputIOError",
]
