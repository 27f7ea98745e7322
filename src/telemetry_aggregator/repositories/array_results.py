"""Session array result repository."""
from __future__ import annotations

from typing import Any, Iterable, List

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from telemetry_aggregator.domain.models import SessionArrayResult
from telemetry_aggregator.repositories.base import BaseRepository, decode_json, encode_json


class ArrayResultRepository(BaseRepository):
    """Named multi-dimensional results; a name is written once per session."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> SessionArrayResult:
        payload = dict(record)
        payload["result_data"] = decode_json(payload.get("result_data"))
        return SessionArrayResult.model_validate(payload)

    async def insert(
        self,
        conn: Connection,
        *,
        session_id: int,
        name: str,
        data: list[Any],
    ) -> int | None:
        """Insert an array result; ``None`` when the name is already taken."""
        record = await conn.fetchrow(
            """
            INSERT INTO session_array_results (session_id, result_name, result_data)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (session_id, result_name) DO NOTHING
            RETURNING id
            """,
            session_id,
            name,
            encode_json(data),
        )
        return int(record["id"]) if record is not None else None

    async def list_by_session(self, session_id: int) -> List[SessionArrayResult]:
        rows: Iterable[Record] = await self._fetch(
            "SELECT * FROM session_array_results WHERE session_id = $1 ORDER BY id ASC",
            session_id,
        )
        return [self._to_model(row) for row in rows]
