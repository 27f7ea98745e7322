"""Pipeline services: sessions, batch store, evaluation, commit and processing."""
from telemetry_aggregator.services.batch_store import RawBatchStore
from telemetry_aggregator.services.evaluator import BatchEvaluator, SessionWindow
from telemetry_aggregator.services.lookup_cache import DefinitionCache
from telemetry_aggregator.services.processor import BatchProcessor
from telemetry_aggregator.services.sessions import SessionStateManager
from telemetry_aggregator.services.writer import AggregationWriter

__all__ = [
    "AggregationWriter",
    "BatchEvaluator",
    "BatchProcessor",
    "DefinitionCache",
    "RawBatchStore",
    "SessionStateManager",
    "SessionWindow",
]
