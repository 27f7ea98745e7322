"""Test session repository."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from asyncpg import Connection, Pool, Record  # type: ignore[import-untyped]

from telemetry_aggregator.core.exceptions import NotFoundError
from telemetry_aggregator.domain.enums import SessionStatus
from telemetry_aggregator.domain.models import TestSession
from telemetry_aggregator.repositories.base import BaseRepository


class TestSessionRepository(BaseRepository):
    """Reads sessions and applies status changes."""

    __test__ = False

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> TestSession:
        return TestSession.model_validate(dict(record))

    async def get(self, session_id: int) -> TestSession:
        record = await self._fetchrow("SELECT * FROM test_sessions WHERE id = $1", session_id)
        if record is None:
            raise NotFoundError("Test session not found")
        return self._to_model(record)

    async def lock(
        self, conn: Connection, session_id: int, *, exclusive: bool = True
    ) -> TestSession | None:
        """Row-lock a session for the rest of the caller's transaction.

        ``exclusive=False`` takes a share lock: concurrent batch commits
        proceed together but a status change waits for them.
        """
        mode = "FOR UPDATE" if exclusive else "FOR SHARE"
        record = await conn.fetchrow(
            f"SELECT * FROM test_sessions WHERE id = $1 {mode}",
            session_id,
        )
        return self._to_model(record) if record is not None else None

    async def set_status(
        self,
        conn: Connection,
        session_id: int,
        status: SessionStatus,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        notes: str | None = None,
    ) -> TestSession:
        record = await conn.fetchrow(
            """
            UPDATE test_sessions
            SET status = $2,
                start_time = COALESCE(start_time, $3),
                end_time = COALESCE($4, end_time),
                notes = COALESCE($5, notes),
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            session_id,
            status.value,
            start_time,
            end_time,
            notes,
        )
        if record is None:
            raise NotFoundError("Test session not found")
        return self._to_model(record)

    async def statuses(self, session_ids: Sequence[int]) -> dict[int, SessionStatus]:
        if not session_ids:
            return {}
        rows: Iterable[Record] = await self._fetch(
            "SELECT id, status FROM test_sessions WHERE id = ANY($1::bigint[])",
            list(session_ids),
        )
        return {int(row["id"]): SessionStatus(row["status"]) for row in rows}
