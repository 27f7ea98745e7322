"""Repository package exports."""

from telemetry_aggregator.repositories.array_results import ArrayResultRepository
from telemetry_aggregator.repositories.definitions import DefinitionRepository
from telemetry_aggregator.repositories.detected_events import DetectedEventRepository
from telemetry_aggregator.repositories.raw_batches import RawBatchRepository
from telemetry_aggregator.repositories.sessions import TestSessionRepository
from telemetry_aggregator.repositories.summary_metrics import SummaryMetricRepository

__all__ = [
    "ArrayResultRepository",
    "DefinitionRepository",
    "DetectedEventRepository",
    "RawBatchRepository",
    "SummaryMetricRepository",
    "TestSessionRepository",
]
