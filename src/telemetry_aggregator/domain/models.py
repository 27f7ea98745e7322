"""Pydantic models representing persisted rows."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from telemetry_aggregator.domain.enums import BatchStatus, SessionStatus


class Equipment(BaseModel):
    id: int
    serial_number: str
    model: str | None = None
    name: str | None = None
    last_calibration_date: date | None = None
    created_at: datetime
    updated_at: datetime


class TestSession(BaseModel):
    __test__ = False  # not a pytest collection target

    id: int
    equipment_id: int
    test_name: str
    status: SessionStatus = SessionStatus.SCHEDULED
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class MetricDefinition(BaseModel):
    id: int
    name: str
    unit: str | None = None
    description: str | None = None


class EventDefinition(BaseModel):
    id: int
    type: str
    description: str | None = None


class RawStreamBatch(BaseModel):
    id: int
    session_id: int
    received_at: datetime
    raw_payload: Any
    processing_status: BatchStatus = BatchStatus.PENDING
    stream_message_id: str | None = None
    error_reason: str | None = None
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    processed_at: datetime | None = None


class SessionSummaryMetric(BaseModel):
    id: int
    session_id: int
    metric_definition_id: int
    metric_value: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class DetectedEvent(BaseModel):
    id: int
    session_id: int
    event_definition_id: int
    event_timestamp: datetime
    value_at_event: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SessionArrayResult(BaseModel):
    id: int
    session_id: int
    result_name: str
    result_data: list[Any]
    created_at: datetime


class BatchReprocessAudit(BaseModel):
    id: int
    batch_id: int
    requested_by: str
    reason: str
    previous_status: BatchStatus
    previous_error_reason: str | None = None
    created_at: datetime
