"""Composition root for engine dependency injection.

Centralizes the creation and wiring of engine components. This is the
single place where concrete implementations are bound to protocols.

Usage:
    # Default usage (production)
    engine = Container.execution_engine()

    # Testing with mocks
    Container.set_runner(MockProcessRunner())
    Container.set_log_store(MockLogStore())
    engine = Container.execution_engine()

    # Reset to defaults
    Container.reset()
"""

from scripter.bus import EventBus, LocalEventBus
from scripter.config import EngineConfig
from scripter.engine.engine import ExecutionEngine
from scripter.engine.logs import LocalLogStore
from scripter.engine.process import SubprocessRunner
from scripter.engine.protocols import LogStore, ProcessRunner


class Container:
    """Service container for engine dependencies.

    Provides lazy initialization of default implementations and allows
    overriding for testing purposes.
    """

    _config: EngineConfig | None = None
    _runner: ProcessRunner | None = None
    _log_store: LogStore | None = None

    @classmethod
    def config(cls) -> EngineConfig:
        """Get the engine configuration.

        Returns EngineConfig() (environment and defaults) unless overridden.
        """
        if cls._config is None:
            cls._config = EngineConfig()
        return cls._config

    @classmethod
    def runner(cls) -> ProcessRunner:
        """Get the process runner.

        Returns SubprocessRunner configured from config() by default.
        """
        if cls._runner is None:
            config = cls.config()
            cls._runner = SubprocessRunner(
                grace_period_seconds=config.grace_period_seconds,
                chunk_size=config.chunk_size,
            )
        return cls._runner

    @classmethod
    def log_store(cls) -> LogStore:
        """Get the log store.

        Returns LocalLogStore rooted at config().logs_path by default.
        """
        if cls._log_store is None:
            cls._log_store = LocalLogStore(cls.config().logs_path)
        return cls._log_store

    @classmethod
    def execution_engine(cls, bus: EventBus | None = None) -> ExecutionEngine:
        """Create an ExecutionEngine with current dependencies.

        Each call returns a new engine with its own LocalEventBus unless a
        bus is supplied.
        """
        return ExecutionEngine(
            runner=cls.runner(),
            log_store=cls.log_store(),
            bus=bus if bus is not None else LocalEventBus(),
            config=cls.config(),
        )

    @classmethod
    def set_config(cls, config: EngineConfig | None) -> None:
        """Override the configuration.

        Default runner and log store are rebuilt on next access so they
        pick up the new values.
        """
        cls._config = config
        if isinstance(cls._runner, SubprocessRunner):
            cls._runner = None
        if isinstance(cls._log_store, LocalLogStore):
            cls._log_store = None

    @classmethod
    def set_runner(cls, runner: ProcessRunner | None) -> None:
        """Override the process runner.

        Pass None to reset to default on next access.
        """
        cls._runner = runner

    @classmethod
    def set_log_store(cls, log_store: LogStore | None) -> None:
        """Override the log store.

        Pass None to reset to default on next access.
        """
        cls._log_store = log_store

    @classmethod
    def reset(cls) -> None:
        """Reset all overrides to defaults.

        Call this in test teardown to ensure clean state.
        """
        cls._config = None
        cls._runner = None
        cls._log_store = None
