"""Session summary metric repository."""
from __future__ import annotations

from typing import Any, Iterable, List

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from telemetry_aggregator.domain.models import SessionSummaryMetric
from telemetry_aggregator.repositories.base import BaseRepository, decode_json, encode_json


class SummaryMetricRepository(BaseRepository):
    """Stores (session, metric definition, context) -> value facts."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> SessionSummaryMetric:
        payload = dict(record)
        payload["metadata"] = decode_json(payload.get("metadata")) or {}
        return SessionSummaryMetric.model_validate(payload)

    async def insert(
        self,
        conn: Connection,
        *,
        session_id: int,
        metric_definition_id: int,
        value: float,
        metadata: dict[str, Any],
    ) -> int | None:
        """Insert one metric row; ``None`` when the context already exists."""
        record = await conn.fetchrow(
            """
            INSERT INTO session_summary_metrics (
                session_id,
                metric_definition_id,
                metric_value,
                metadata
            )
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (session_id, metric_definition_id, metadata) DO NOTHING
            RETURNING id
            """,
            session_id,
            metric_definition_id,
            value,
            encode_json(metadata),
        )
        return int(record["id"]) if record is not None else None

    async def list_by_session(self, session_id: int) -> List[SessionSummaryMetric]:
        rows: Iterable[Record] = await self._fetch(
            """
            SELECT *
            FROM session_summary_metrics
            WHERE session_id = $1
            ORDER BY id ASC
            """,
            session_id,
        )
        return [self._to_model(row) for row in rows]
