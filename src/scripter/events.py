"""Event models for engine notifications.

Events are the only channel from the execution engine to its observers.
Every state transition produces an event, so an observer can rebuild the
full picture from an initial RunSnapshot plus the latest events:
- Live rendering (CLI, UI)
- Exit-status bookkeeping for non-interactive runs
- External integrations that tail the engine

Events are not individually durable. After a reconnect an observer asks the
engine for a fresh snapshot instead of replaying history.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from scripter.models import (
    AttemptOutcome,
    ExecutionState,
    OutputStream,
    RunStatus,
    RunSummary,
)


class EventType(str, Enum):
    """Event type enumeration."""

    # Run lifecycle
    RUN_STATUS_CHANGED = "run.status_changed"

    # Entry lifecycle
    ENTRY_STATE_CHANGED = "entry.state_changed"
    ENTRY_RETRY = "entry.retry"

    # Queue edits
    QUEUE_CHANGED = "run.queue_changed"

    # Output
    ENTRY_OUTPUT = "entry.output"


class BaseEvent(BaseModel):
    """Base event with common fields.

    Events are immutable (frozen=True) because they represent facts about
    what happened.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str


class RunStatusChangedEvent(BaseEvent):
    """Emitted when the run moves between NotStarted/Running/Finished/Stopped."""

    event_type: EventType = EventType.RUN_STATUS_CHANGED
    old_status: RunStatus
    new_status: RunStatus
    summary: RunSummary | None = None


class EntryStateChangedEvent(BaseEvent):
    """Emitted on every queue entry state transition."""

    event_type: EventType = EventType.ENTRY_STATE_CHANGED
    entry_id: str
    index: int
    name: str
    old_state: ExecutionState
    new_state: ExecutionState
    run_status: RunStatus
    attempt: int = 0
    outcome: AttemptOutcome | None = None


class EntryRetryEvent(BaseEvent):
    """Emitted when a failed attempt is retried (Running -> Running)."""

    event_type: EventType = EventType.ENTRY_RETRY
    entry_id: str
    index: int
    name: str
    attempt: int
    max_attempts: int
    error: str
    delay_seconds: float
    run_status: RunStatus


class EntryOutputEvent(BaseEvent):
    """Emitted for every chunk of bytes read from the running child."""

    event_type: EventType = EventType.ENTRY_OUTPUT
    entry_id: str
    stream: OutputStream
    data: bytes


class QueueChangedEvent(BaseEvent):
    """Emitted when entries are appended to or detached from a running run."""

    event_type: EventType = EventType.QUEUE_CHANGED
    enqueued: list[str] = Field(default_factory=list, description="Entry ids appended")
    detached: list[str] = Field(default_factory=list, description="Entry ids removed")
    total: int = Field(description="Entry count after the change")


Event = (
    RunStatusChangedEvent
    | EntryStateChangedEvent
    | EntryRetryEvent
    | EntryOutputEvent
    | QueueChangedEvent
)
