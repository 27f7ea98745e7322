"""Raw stream batch repository (audit log + processing status)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Sequence

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from telemetry_aggregator.core.exceptions import NotFoundError
from telemetry_aggregator.domain.enums import BatchStatus
from telemetry_aggregator.domain.models import BatchReprocessAudit, RawStreamBatch
from telemetry_aggregator.repositories.base import BaseRepository, decode_json, encode_json

_ACCEPTING_SESSION_STATUSES = ["scheduled", "running"]


class RawBatchRepository(BaseRepository):
    """Append-only batch rows whose status only moves forward from ``pending``."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> RawStreamBatch:
        payload = dict(record)
        payload["raw_payload"] = decode_json(payload.get("raw_payload"))
        payload["warnings"] = decode_json(payload.get("warnings")) or []
        return RawStreamBatch.model_validate(payload)

    async def insert(
        self,
        conn: Connection,
        session_id: int,
        payload: Any,
        *,
        stream_message_id: str | None = None,
    ) -> tuple[RawStreamBatch, bool]:
        """Store a payload; returns ``(batch, created)``.

        A repeated ``stream_message_id`` returns the existing row instead of
        creating a second one.
        """
        record = await conn.fetchrow(
            """
            INSERT INTO raw_stream_batches (session_id, raw_payload, stream_message_id)
            VALUES ($1, $2::jsonb, $3)
            ON CONFLICT (stream_message_id) DO NOTHING
            RETURNING *
            """,
            session_id,
            encode_json(payload),
            stream_message_id,
        )
        if record is not None:
            return self._to_model(record), True
        existing = await conn.fetchrow(
            "SELECT * FROM raw_stream_batches WHERE stream_message_id = $1",
            stream_message_id,
        )
        assert existing is not None
        return self._to_model(existing), False

    async def get(self, batch_id: int) -> RawStreamBatch:
        record = await self._fetchrow("SELECT * FROM raw_stream_batches WHERE id = $1", batch_id)
        if record is None:
            raise NotFoundError("Raw batch not found")
        return self._to_model(record)

    async def lock(self, conn: Connection, batch_id: int) -> RawStreamBatch | None:
        record = await conn.fetchrow(
            "SELECT * FROM raw_stream_batches WHERE id = $1 FOR UPDATE",
            batch_id,
        )
        return self._to_model(record) if record is not None else None

    async def transition(
        self,
        batch_id: int,
        status: BatchStatus,
        *,
        conn: Connection | None = None,
        error_reason: str | None = None,
        warnings: Sequence[dict[str, Any]] = (),
    ) -> bool:
        """Compare-and-set ``pending`` -> ``status``. False when another writer won."""
        async with self._connection(conn) as c:
            record = await c.fetchrow(
                """
                UPDATE raw_stream_batches
                SET processing_status = $2,
                    error_reason = $3,
                    warnings = $4::jsonb,
                    processed_at = clock_timestamp()
                WHERE id = $1 AND processing_status = 'pending'
                RETURNING id
                """,
                batch_id,
                status.value,
                error_reason,
                encode_json(list(warnings)),
            )
        return record is not None

    async def reopen(self, conn: Connection, batch_id: int) -> bool:
        """Move an ``error`` batch back to ``pending`` (audited reprocessing only)."""
        record = await conn.fetchrow(
            """
            UPDATE raw_stream_batches
            SET processing_status = 'pending',
                error_reason = NULL,
                warnings = '[]'::jsonb,
                processed_at = NULL
            WHERE id = $1 AND processing_status = 'error'
            RETURNING id
            """,
            batch_id,
        )
        return record is not None

    async def record_reprocess(
        self,
        conn: Connection,
        *,
        batch_id: int,
        requested_by: str,
        reason: str,
        previous_status: BatchStatus,
        previous_error_reason: str | None,
    ) -> BatchReprocessAudit:
        record = await conn.fetchrow(
            """
            INSERT INTO batch_reprocess_audit (
                batch_id,
                requested_by,
                reason,
                previous_status,
                previous_error_reason
            )
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            batch_id,
            requested_by,
            reason,
            previous_status.value,
            previous_error_reason,
        )
        assert record is not None
        return BatchReprocessAudit.model_validate(dict(record))

    async def list_pending(
        self,
        session_id: int,
        *,
        limit: int = 100,
        received_before: datetime | None = None,
    ) -> List[RawStreamBatch]:
        rows: Iterable[Record] = await self._fetch(
            """
            SELECT *
            FROM raw_stream_batches
            WHERE session_id = $1
              AND processing_status = 'pending'
              AND ($3::timestamptz IS NULL OR received_at < $3)
            ORDER BY received_at ASC, id ASC
            LIMIT $2
            """,
            session_id,
            limit,
            received_before,
        )
        return [self._to_model(row) for row in rows]

    async def list_sessions_with_pending(
        self,
        *,
        limit: int = 100,
        received_before: datetime | None = None,
    ) -> list[int]:
        """Sessions still accepting data that have pending batches, oldest first."""
        rows: Iterable[Record] = await self._fetch(
            """
            SELECT b.session_id, MIN(b.received_at) AS oldest
            FROM raw_stream_batches b
            JOIN test_sessions s ON s.id = b.session_id
            WHERE b.processing_status = 'pending'
              AND s.status = ANY($2::text[])
              AND ($3::timestamptz IS NULL OR b.received_at < $3)
            GROUP BY b.session_id
            ORDER BY oldest ASC
            LIMIT $1
            """,
            limit,
            _ACCEPTING_SESSION_STATUSES,
            received_before,
        )
        return [int(row["session_id"]) for row in rows]

    async def count_pending(self, session_id: int) -> int:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total
            FROM raw_stream_batches
            WHERE session_id = $1 AND processing_status = 'pending'
            """,
            session_id,
        )
        return int(record["total"]) if record else 0

    async def list_recent_processed(self, session_id: int, *, limit: int) -> List[RawStreamBatch]:
        """Last ``limit`` processed batches of a session, in arrival order."""
        rows: Iterable[Record] = await self._fetch(
            """
            SELECT *
            FROM (
                SELECT *
                FROM raw_stream_batches
                WHERE session_id = $1 AND processing_status = 'processed'
                ORDER BY received_at DESC, id DESC
                LIMIT $2
            ) recent
            ORDER BY received_at ASC, id ASC
            """,
            session_id,
            limit,
        )
        return [self._to_model(row) for row in rows]
