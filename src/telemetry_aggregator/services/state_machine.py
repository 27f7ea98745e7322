"""Domain status transition validators."""
from __future__ import annotations

from telemetry_aggregator.core.exceptions import InvalidStatusTransitionError
from telemetry_aggregator.domain.enums import BatchStatus, SessionStatus

SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.SCHEDULED: {SessionStatus.RUNNING, SessionStatus.ABORTED},
    SessionStatus.RUNNING: {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.ABORTED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.ABORTED: set(),
}

BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.PROCESSED, BatchStatus.ERROR},
    BatchStatus.PROCESSED: set(),
    BatchStatus.ERROR: set(),
}

# Sessions in these states accept new batches.
ACCEPTING_SESSION_STATUSES = frozenset({SessionStatus.SCHEDULED, SessionStatus.RUNNING})

TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ABORTED}
)

# Outcomes an external end signal may request.
END_OUTCOMES = TERMINAL_SESSION_STATUSES


def _validate_transition(entity: str, current, new, transitions: dict) -> None:
    if current == new:
        return
    allowed = transitions.get(current, set())
    if new not in allowed:
        raise InvalidStatusTransitionError(
            f"Invalid {entity} status transition: {current.value} → {new.value}"
        )


def validate_session_transition(current: SessionStatus, new: SessionStatus) -> None:
    _validate_transition("session", current, new, SESSION_TRANSITIONS)


def validate_batch_transition(current: BatchStatus, new: BatchStatus) -> None:
    _validate_transition("batch", current, new, BATCH_TRANSITIONS)


def is_accepting(status: SessionStatus) -> bool:
    return status in ACCEPTING_SESSION_STATUSES


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_SESSION_STATUSES
