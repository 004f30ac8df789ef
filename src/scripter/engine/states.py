"""Queue entry state machine.

    Pending ──► Running ──► Succeeded
       │          │  ▲
       │          │  └── retry (attempt < retry_count + 1)
       │          ├────► Failed
       │          └────► Cancelled
       ├────► Skipped
       └────► Cancelled

Terminal states never transition again.
"""

from scripter.exceptions import InvariantViolationError
from scripter.models import ExecutionState, QueueEntry

ALLOWED_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.PENDING: frozenset(
        {ExecutionState.RUNNING, ExecutionState.SKIPPED, ExecutionState.CANCELLED}
    ),
    ExecutionState.RUNNING: frozenset(
        {
            ExecutionState.RUNNING,
            ExecutionState.SUCCEEDED,
            ExecutionState.FAILED,
            ExecutionState.CANCELLED,
        }
    ),
    ExecutionState.SUCCEEDED: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.SKIPPED: frozenset(),
    ExecutionState.CANCELLED: frozenset(),
}


def can_transition(old: ExecutionState, new: ExecutionState) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def transition(entry: QueueEntry, new_state: ExecutionState) -> ExecutionState:
    """Move entry to new_state and return the state it left.

    Raises:
        InvariantViolationError: If the transition is not in the table
    """
    old_state = entry.state
    if not can_transition(old_state, new_state):
        raise InvariantViolationError(
            f"Illegal transition for entry {entry.entry_id} ({entry.name}): "
            f"{old_state.value} -> {new_state.value}"
        )
    entry.state = new_state
    return old_state
