"""Shared pytest fixtures for scripter tests.

Provides common fixtures for mocking engine components and utilities.
"""

import sys
from pathlib import Path

import pytest

from scripter.bus import LocalEventBus
from scripter.config import EngineConfig
from scripter.engine import Container, ExecutionEngine
from scripter.engine.mocks import MockLogStore, MockProcessRunner
from scripter.events import Event
from scripter.models import Run, ScriptDefinition


@pytest.fixture(autouse=True)
def reset_container():
    """Make sure no container override leaks between tests."""
    yield
    Container.reset()


@pytest.fixture
def mock_runner() -> MockProcessRunner:
    """Fixture that sets up a scripted mock runner via Container.

    Yields:
        MockProcessRunner whose unscripted commands exit 0
    """
    runner = MockProcessRunner()
    Container.set_runner(runner)
    yield runner
    Container.reset()


@pytest.fixture
def mock_log_store() -> MockLogStore:
    """Fixture that sets up an in-memory log store via Container.

    Yields:
        MockLogStore instance for inspecting written output
    """
    store = MockLogStore()
    Container.set_log_store(store)
    yield store
    Container.reset()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Config with a short grace period and logs under tmp_path."""
    return EngineConfig(
        logs_path=tmp_path / "logs",
        grace_period_seconds=0.5,
        install_directory=tmp_path,
    )


@pytest.fixture
def recorded_events() -> list[Event]:
    """List that the engine fixture's bus appends every event to."""
    return []


@pytest.fixture
def engine(
    mock_runner: MockProcessRunner,
    mock_log_store: MockLogStore,
    engine_config: EngineConfig,
    recorded_events: list[Event],
) -> ExecutionEngine:
    """Engine wired to the mock runner and log store, recording events."""
    Container.set_config(engine_config)
    bus = LocalEventBus()
    bus.subscribe(recorded_events.append)
    return Container.execution_engine(bus=bus)


def make_definition(name: str, **kwargs: object) -> ScriptDefinition:
    """Script definition whose command is its name, for mock runner scripting."""
    kwargs.setdefault("command", name)
    return ScriptDefinition(uid=name, name=name, **kwargs)  # type: ignore[arg-type]


def make_run(*definitions: ScriptDefinition, tmp_path: Path | None = None) -> Run:
    kwargs: dict[str, object] = {}
    if tmp_path is not None:
        kwargs["working_directory"] = tmp_path
    return Run.from_definitions(list(definitions), **kwargs)


def python_command(code: str) -> ScriptDefinition:
    """Definition that runs a snippet in the current interpreter."""
    return ScriptDefinition(name="python", command=sys.executable, arguments=["-c", code])
