"""Domain enums for sessions, batches and evaluator output."""
from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    """Test session lifecycle states."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class BatchStatus(str, Enum):
    """Raw stream batch processing states."""

    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class DefinitionKind(str, Enum):
    """Lookup registry categories."""

    METRIC = "metric"
    EVENT = "event"


class WarningCode(str, Enum):
    """Non-fatal conditions attached to a processed batch."""

    SKIPPED_FIELD = "skipped_field"
    UNRESOLVABLE_DEFINITION = "unresolvable_definition"
    INVALID_EVENT = "invalid_event"
    INVALID_ARRAY = "invalid_array"
    DUPLICATE_METRIC = "duplicate_metric"
    DUPLICATE_ARRAY_NAME = "duplicate_array_name"


class CommitOutcome(str, Enum):
    """Result of applying evaluator output for a batch."""

    PROCESSED = "processed"
    ERROR = "error"
    ALREADY_TERMINAL = "already_terminal"
