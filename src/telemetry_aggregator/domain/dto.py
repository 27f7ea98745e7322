"""Pydantic DTOs passed between pipeline stages."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from telemetry_aggregator.domain.enums import BatchStatus, CommitOutcome, SessionStatus, WarningCode


class StreamItem(BaseModel):
    """One record drawn from the telemetry stream."""

    model_config = ConfigDict(extra="forbid")

    session_id: int
    # Opaque until the evaluator sees it.
    payload: Any
    delivery_id: str | None = None


class BatchWarning(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: WarningCode
    subject: str
    message: str


class MetricValueDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metric_definition_id: int
    metric_name: str
    value: float
    context: dict[str, Any] = Field(default_factory=dict)


class DetectedEventDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_definition_id: int
    event_type: str
    timestamp: datetime
    value: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ArrayResultDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    data: list[Any]


class Sample(BaseModel):
    """A numeric reading that feeds the per-session window once committed."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    channel: str | None = None
    value: float


class EvaluationResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_id: int
    session_id: int
    metrics: list[MetricValueDTO] = Field(default_factory=list)
    events: list[DetectedEventDTO] = Field(default_factory=list)
    arrays: list[ArrayResultDTO] = Field(default_factory=list)
    samples: list[Sample] = Field(default_factory=list)
    warnings: list[BatchWarning] = Field(default_factory=list)


class CommitResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_id: int
    outcome: CommitOutcome
    metrics_written: int = 0
    events_written: int = 0
    arrays_written: int = 0
    warnings: list[BatchWarning] = Field(default_factory=list)
    error_reason: str | None = None
    # Status found on the row when the outcome is already_terminal.
    terminal_status: BatchStatus | None = None


class SessionEndDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    outcome: SessionStatus = SessionStatus.COMPLETED
    notes: str | None = None


class BatchReprocessDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requested_by: str = Field(min_length=1)
    reason: str = Field(min_length=1)
