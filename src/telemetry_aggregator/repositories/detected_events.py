"""Detected event repository."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from telemetry_aggregator.domain.models import DetectedEvent
from telemetry_aggregator.repositories.base import BaseRepository, decode_json, encode_json


class DetectedEventRepository(BaseRepository):
    """Event occurrences are never deduplicated."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DetectedEvent:
        payload = dict(record)
        payload["details"] = decode_json(payload.get("details")) or {}
        return DetectedEvent.model_validate(payload)

    async def insert(
        self,
        conn: Connection,
        *,
        session_id: int,
        event_definition_id: int,
        event_timestamp: datetime,
        value: float | None,
        details: dict[str, Any],
    ) -> int:
        record = await conn.fetchrow(
            """
            INSERT INTO detected_events (
                session_id,
                event_definition_id,
                event_timestamp,
                value_at_event,
                details
            )
            VALUES ($1, $2, $3, $4, $5::jsonb)
            RETURNING id
            """,
            session_id,
            event_definition_id,
            event_timestamp,
            value,
            encode_json(details),
        )
        assert record is not None
        return int(record["id"])

    async def list_by_session(self, session_id: int) -> List[DetectedEvent]:
        rows: Iterable[Record] = await self._fetch(
            """
            SELECT *
            FROM detected_events
            WHERE session_id = $1
            ORDER BY event_timestamp ASC, id ASC
            """,
            session_id,
        )
        return [self._to_model(row) for row in rows]
