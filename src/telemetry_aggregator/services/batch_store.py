"""Raw batch store: durable audit of every payload and its processing status."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Sequence

import structlog
from asyncpg import Pool  # type: ignore[import-untyped]

from telemetry_aggregator.core.exceptions import (
    BatchNotReprocessableError,
    NotFoundError,
    TransientStoreError,
)
from telemetry_aggregator.domain.dto import BatchWarning
from telemetry_aggregator.domain.enums import BatchStatus
from telemetry_aggregator.domain.models import RawStreamBatch
from telemetry_aggregator.repositories.base import TRANSIENT_DB_ERRORS
from telemetry_aggregator.repositories.raw_batches import RawBatchRepository
from telemetry_aggregator.services.sessions import SessionStateManager

logger = structlog.get_logger(__name__)


class RawBatchStore:
    """Appends batches and guards their forward-only status transitions."""

    def __init__(
        self,
        pool: Pool,
        repository: RawBatchRepository,
        sessions: SessionStateManager,
    ):
        self._pool = pool
        self._repository = repository
        self._sessions = sessions

    async def append(
        self,
        session_id: int,
        payload: Any,
        *,
        delivery_id: str | None = None,
    ) -> RawStreamBatch:
        """Store a payload as ``pending`` for a session that accepts data.

        Raises ``UnknownSessionError``/``SessionClosedError`` without storing
        anything. A repeated ``delivery_id`` returns the batch stored the
        first time.
        """
        try:
            async with self._pool.acquire() as conn, conn.transaction():
                await self._sessions.admit(conn, session_id)
                batch, created = await self._repository.insert(
                    conn, session_id, payload, stream_message_id=delivery_id
                )
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Raw batch append failed: {exc}") from exc
        if created:
            logger.debug("batch appended", session_id=session_id, batch_id=batch.id)
        else:
            logger.info(
                "duplicate delivery ignored",
                session_id=session_id,
                batch_id=batch.id,
                delivery_id=delivery_id,
                status=batch.processing_status.value,
            )
        return batch

    async def get(self, batch_id: int) -> RawStreamBatch:
        return await self._repository.get(batch_id)

    async def mark_processed(
        self, batch_id: int, warnings: Sequence[BatchWarning] = ()
    ) -> bool:
        return await self._transition(
            batch_id,
            BatchStatus.PROCESSED,
            warnings=[w.model_dump(mode="json") for w in warnings],
        )

    async def mark_error(self, batch_id: int, reason: str) -> bool:
        won = await self._transition(batch_id, BatchStatus.ERROR, error_reason=reason)
        if won:
            logger.warning("batch marked error", batch_id=batch_id, reason=reason)
        return won

    async def _transition(self, batch_id: int, status: BatchStatus, **fields: Any) -> bool:
        try:
            won = await self._repository.transition(batch_id, status, **fields)
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Batch status update failed: {exc}") from exc
        if not won:
            logger.debug("batch already terminal", batch_id=batch_id, requested=status.value)
        return won

    async def list_pending(
        self,
        session_id: int,
        limit: int = 100,
        *,
        received_before: datetime | None = None,
    ) -> List[RawStreamBatch]:
        """Pending batches of a session in arrival order."""
        return await self._repository.list_pending(
            session_id, limit=limit, received_before=received_before
        )

    async def sessions_with_pending(
        self, limit: int = 100, *, received_before: datetime | None = None
    ) -> list[int]:
        return await self._repository.list_sessions_with_pending(
            limit=limit, received_before=received_before
        )

    async def count_pending(self, session_id: int) -> int:
        return await self._repository.count_pending(session_id)

    async def recent_processed(self, session_id: int, limit: int) -> List[RawStreamBatch]:
        return await self._repository.list_recent_processed(session_id, limit=limit)

    async def reprocess(self, batch_id: int, *, requested_by: str, reason: str) -> RawStreamBatch:
        """Audited ``error -> pending`` so the batch is evaluated again."""
        async with self._pool.acquire() as conn, conn.transaction():
            batch = await self._repository.lock(conn, batch_id)
            if batch is None:
                raise NotFoundError("Raw batch not found")
            if batch.processing_status != BatchStatus.ERROR:
                raise BatchNotReprocessableError(
                    f"Batch {batch_id} is {batch.processing_status.value}; "
                    "only error batches can be reprocessed"
                )
            await self._sessions.admit(conn, batch.session_id)
            await self._repository.reopen(conn, batch_id)
            await self._repository.record_reprocess(
                conn,
                batch_id=batch_id,
                requested_by=requested_by,
                reason=reason,
                previous_status=batch.processing_status,
                previous_error_reason=batch.error_reason,
            )
        logger.info(
            "batch reopened for reprocessing",
            batch_id=batch_id,
            session_id=batch.session_id,
            requested_by=requested_by,
            reason=reason,
            previous_error=batch.error_reason,
        )
        return batch.model_copy(
            update={
                "processing_status": BatchStatus.PENDING,
                "error_reason": None,
                "warnings": [],
                "processed_at": None,
            }
        )
