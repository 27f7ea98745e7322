"""Pipeline wiring and aiohttp accessors."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from aiohttp import web
from asyncpg import Pool  # type: ignore[import-untyped]

from telemetry_aggregator.domain.enums import SessionStatus
from telemetry_aggregator.domain.models import RawStreamBatch, TestSession
from telemetry_aggregator.ingestion.scheduler import IngestionScheduler
from telemetry_aggregator.ingestion.stream import RedisStreamSource, StreamSource
from telemetry_aggregator.repositories import (
    ArrayResultRepository,
    DefinitionRepository,
    DetectedEventRepository,
    RawBatchRepository,
    SummaryMetricRepository,
    TestSessionRepository,
)
from telemetry_aggregator.services.batch_store import RawBatchStore
from telemetry_aggregator.services.evaluator import BatchEvaluator
from telemetry_aggregator.services.lookup_cache import DefinitionCache
from telemetry_aggregator.services.processor import BatchProcessor, Sleep
from telemetry_aggregator.services.rules import build_threshold_detectors
from telemetry_aggregator.services.sessions import SessionStateManager
from telemetry_aggregator.services.writer import AggregationWriter
from telemetry_aggregator.settings import Settings


@dataclass
class Pipeline:
    """Every long-lived pipeline component, built once per process."""

    pool: Pool
    cache: DefinitionCache
    sessions: SessionStateManager
    store: RawBatchStore
    evaluator: BatchEvaluator
    writer: AggregationWriter
    processor: BatchProcessor
    scheduler: IngestionScheduler

    async def start_session(self, session_id: int) -> TestSession:
        return await self.sessions.start_session(session_id)

    async def end_session(
        self,
        session_id: int,
        outcome: SessionStatus,
        *,
        notes: str | None = None,
    ) -> TestSession:
        """End a session once its lane is settled.

        Completion processes every batch already queued; failure and abort
        stop at the in-flight batch and leave the rest ``pending``.
        """
        if outcome == SessionStatus.COMPLETED:
            await self.scheduler.drain_session(session_id)
        else:
            await self.scheduler.close_session(session_id)
        return await self.sessions.end_session(session_id, outcome, notes=notes)

    async def reprocess_batch(
        self, batch_id: int, *, requested_by: str, reason: str
    ) -> RawStreamBatch:
        batch = await self.store.reprocess(batch_id, requested_by=requested_by, reason=reason)
        await self.scheduler.submit(batch)
        return batch


PIPELINE_KEY = web.AppKey("pipeline", Pipeline)


@dataclass
class Repositories:
    sessions: TestSessionRepository
    definitions: DefinitionRepository
    batches: RawBatchRepository
    metrics: SummaryMetricRepository
    events: DetectedEventRepository
    arrays: ArrayResultRepository

    @classmethod
    def from_pool(cls, pool: Pool) -> Repositories:
        return cls(
            sessions=TestSessionRepository(pool),
            definitions=DefinitionRepository(pool),
            batches=RawBatchRepository(pool),
            metrics=SummaryMetricRepository(pool),
            events=DetectedEventRepository(pool),
            arrays=ArrayResultRepository(pool),
        )


def build_pipeline(
    pool: Pool,
    settings: Settings,
    *,
    repositories: Repositories | None = None,
    source: StreamSource | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Pipeline:
    repos = repositories or Repositories.from_pool(pool)

    cache = DefinitionCache(
        repos.definitions, ttl_seconds=settings.definition_cache_ttl_seconds
    )
    sessions = SessionStateManager(pool, repos.sessions)
    store = RawBatchStore(pool, repos.batches, sessions)
    evaluator = BatchEvaluator(
        cache,
        statistics=settings.window_statistics,
        detectors=build_threshold_detectors(settings.event_thresholds),
        window_size=settings.window_size,
    )
    writer = AggregationWriter(
        pool,
        batches=repos.batches,
        sessions=repos.sessions,
        metrics=repos.metrics,
        events=repos.events,
        arrays=repos.arrays,
    )
    processor = BatchProcessor(
        evaluator,
        writer,
        store,
        sessions,
        commit_timeout=settings.commit_timeout_seconds,
        max_attempts=settings.commit_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        error_threshold=settings.session_error_threshold,
        sleep=sleep,
    )
    if source is None:
        source = RedisStreamSource(
            settings.redis_url,
            stream=settings.stream_name,
            group=settings.stream_group,
            consumer=settings.stream_consumer,
            count=settings.stream_read_count,
            block_ms=settings.stream_block_ms,
        )
    scheduler = IngestionScheduler(
        source,
        store,
        sessions,
        processor,
        concurrency=settings.worker_concurrency,
        lane_queue_size=settings.lane_queue_size,
        recovery_limit=settings.recovery_batch_limit,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
        append_alert_after=settings.commit_max_attempts,
        sleep=sleep,
    )
    sessions.add_terminal_listener(scheduler.on_session_terminal)
    return Pipeline(
        pool=pool,
        cache=cache,
        sessions=sessions,
        store=store,
        evaluator=evaluator,
        writer=writer,
        processor=processor,
        scheduler=scheduler,
    )


def get_pipeline(request: web.Request) -> Pipeline:
    return request.app[PIPELINE_KEY]
