"""Aggregation writer: derived rows and the batch status flip in one transaction."""
from __future__ import annotations

import structlog
from asyncpg import Connection, Pool  # type: ignore[import-untyped]

from telemetry_aggregator.core.exceptions import NotFoundError, TransientStoreError
from telemetry_aggregator.domain.dto import BatchWarning, CommitResult, EvaluationResult
from telemetry_aggregator.domain.enums import BatchStatus, CommitOutcome, WarningCode
from telemetry_aggregator.repositories.array_results import ArrayResultRepository
from telemetry_aggregator.repositories.base import TRANSIENT_DB_ERRORS
from telemetry_aggregator.repositories.detected_events import DetectedEventRepository
from telemetry_aggregator.repositories.raw_batches import RawBatchRepository
from telemetry_aggregator.repositories.sessions import TestSessionRepository
from telemetry_aggregator.repositories.summary_metrics import SummaryMetricRepository
from telemetry_aggregator.services.state_machine import is_accepting

logger = structlog.get_logger(__name__)

SESSION_CLOSED_REASON = "session closed"


class AggregationWriter:
    """Applies evaluator output for one batch.

    Either every derived row becomes visible together with the batch marked
    ``processed``, or nothing is written. A batch that is no longer
    ``pending`` is left alone (``already_terminal``).
    """

    def __init__(
        self,
        pool: Pool,
        *,
        batches: RawBatchRepository,
        sessions: TestSessionRepository,
        metrics: SummaryMetricRepository,
        events: DetectedEventRepository,
        arrays: ArrayResultRepository,
    ):
        self._pool = pool
        self._batches = batches
        self._sessions = sessions
        self._metrics = metrics
        self._events = events
        self._arrays = arrays

    async def commit(self, batch_id: int, result: EvaluationResult) -> CommitResult:
        try:
            async with self._pool.acquire() as conn, conn.transaction():
                return await self._commit(conn, batch_id, result)
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Commit of batch {batch_id} failed: {exc}") from exc

    async def reject(self, batch_id: int, reason: str) -> CommitResult:
        """Mark the batch ``error`` without any derived rows."""
        try:
            won = await self._batches.transition(batch_id, BatchStatus.ERROR, error_reason=reason)
            current = None if won else await self._batches.get(batch_id)
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Rejecting batch {batch_id} failed: {exc}") from exc
        if current is not None:
            return CommitResult(
                batch_id=batch_id,
                outcome=CommitOutcome.ALREADY_TERMINAL,
                error_reason=current.error_reason,
                terminal_status=current.processing_status,
            )
        logger.warning("batch marked error", batch_id=batch_id, reason=reason)
        return CommitResult(batch_id=batch_id, outcome=CommitOutcome.ERROR, error_reason=reason)

    async def _commit(
        self, conn: Connection, batch_id: int, result: EvaluationResult
    ) -> CommitResult:
        batch = await self._batches.lock(conn, batch_id)
        if batch is None:
            raise NotFoundError(f"Raw batch {batch_id} not found")
        if batch.processing_status != BatchStatus.PENDING:
            logger.info(
                "batch already terminal, commit skipped",
                batch_id=batch_id,
                status=batch.processing_status.value,
            )
            return CommitResult(
                batch_id=batch_id,
                outcome=CommitOutcome.ALREADY_TERMINAL,
                error_reason=batch.error_reason,
                terminal_status=batch.processing_status,
            )

        session = await self._sessions.lock(conn, batch.session_id, exclusive=False)
        if session is None or not is_accepting(session.status):
            await self._batches.transition(
                batch_id, BatchStatus.ERROR, conn=conn, error_reason=SESSION_CLOSED_REASON
            )
            logger.warning(
                "batch marked error",
                batch_id=batch_id,
                session_id=batch.session_id,
                reason=SESSION_CLOSED_REASON,
            )
            return CommitResult(
                batch_id=batch_id,
                outcome=CommitOutcome.ERROR,
                error_reason=SESSION_CLOSED_REASON,
            )

        warnings: list[BatchWarning] = list(result.warnings)
        metrics_written = 0
        for metric in result.metrics:
            row_id = await self._metrics.insert(
                conn,
                session_id=batch.session_id,
                metric_definition_id=metric.metric_definition_id,
                value=metric.value,
                metadata=metric.context,
            )
            if row_id is None:
                logger.warning(
                    "duplicate metric skipped",
                    batch_id=batch_id,
                    metric=metric.metric_name,
                    context=metric.context,
                )
                warnings.append(
                    BatchWarning(
                        code=WarningCode.DUPLICATE_METRIC,
                        subject=metric.metric_name,
                        message=f"Metric already recorded for context {metric.context}",
                    )
                )
                continue
            metrics_written += 1

        for event in result.events:
            await self._events.insert(
                conn,
                session_id=batch.session_id,
                event_definition_id=event.event_definition_id,
                event_timestamp=event.timestamp,
                value=event.value,
                details=event.details,
            )

        arrays_written = 0
        for array in result.arrays:
            row_id = await self._arrays.insert(
                conn, session_id=batch.session_id, name=array.name, data=array.data
            )
            if row_id is None:
                logger.warning("duplicate array name skipped", batch_id=batch_id, name=array.name)
                warnings.append(
                    BatchWarning(
                        code=WarningCode.DUPLICATE_ARRAY_NAME,
                        subject=array.name,
                        message="Array result name already used in this session",
                    )
                )
                continue
            arrays_written += 1

        await self._batches.transition(
            batch_id,
            BatchStatus.PROCESSED,
            conn=conn,
            warnings=[w.model_dump(mode="json") for w in warnings],
        )
        logger.debug(
            "batch committed",
            batch_id=batch_id,
            session_id=batch.session_id,
            metrics=metrics_written,
            events=len(result.events),
            arrays=arrays_written,
        )
        return CommitResult(
            batch_id=batch_id,
            outcome=CommitOutcome.PROCESSED,
            metrics_written=metrics_written,
            events_written=len(result.events),
            arrays_written=arrays_written,
            warnings=warnings,
        )
