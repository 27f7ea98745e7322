"""Test session lifecycle management."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, List

import structlog
from asyncpg import Connection, Pool  # type: ignore[import-untyped]

from telemetry_aggregator.core.exceptions import (
    InvalidStatusTransitionError,
    NotFoundError,
    SessionClosedError,
    UnknownSessionError,
)
from telemetry_aggregator.domain.enums import SessionStatus
from telemetry_aggregator.domain.models import TestSession
from telemetry_aggregator.repositories.sessions import TestSessionRepository
from telemetry_aggregator.services.state_machine import (
    END_OUTCOMES,
    is_accepting,
    validate_session_transition,
)

logger = structlog.get_logger(__name__)

TerminalListener = Callable[[int, SessionStatus], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStateManager:
    """Owns session status changes and the "may this session take data" check.

    Status changes lock the session row exclusively; batch commits take a
    share lock, so an end signal waits for commits already in progress.
    """

    def __init__(self, pool: Pool, repository: TestSessionRepository):
        self._pool = pool
        self._repository = repository
        self._terminal_listeners: List[TerminalListener] = []

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        self._terminal_listeners.append(listener)

    async def get_session(self, session_id: int) -> TestSession:
        try:
            return await self._repository.get(session_id)
        except NotFoundError as exc:
            raise UnknownSessionError(f"Test session {session_id} not found") from exc

    async def session_statuses(self, session_ids: list[int]) -> dict[int, SessionStatus]:
        return await self._repository.statuses(session_ids)

    async def admit(self, conn: Connection, session_id: int) -> TestSession:
        """Validate that a batch may be stored for the session (caller's transaction).

        The first accepted batch of a ``scheduled`` session starts it.
        """
        session = await self._repository.lock(conn, session_id, exclusive=True)
        if session is None:
            raise UnknownSessionError(f"Test session {session_id} not found")
        if not is_accepting(session.status):
            raise SessionClosedError(
                f"Test session {session_id} is {session.status.value}"
            )
        if session.status == SessionStatus.SCHEDULED:
            session = await self._repository.set_status(
                conn, session_id, SessionStatus.RUNNING, start_time=_utc_now()
            )
            logger.info("session started by first batch", session_id=session_id)
        return session

    async def start_session(self, session_id: int) -> TestSession:
        async with self._pool.acquire() as conn, conn.transaction():
            session = await self._lock_existing(conn, session_id)
            validate_session_transition(session.status, SessionStatus.RUNNING)
            if session.status == SessionStatus.RUNNING:
                return session
            session = await self._repository.set_status(
                conn, session_id, SessionStatus.RUNNING, start_time=_utc_now()
            )
        logger.info("session started", session_id=session_id)
        return session

    async def end_session(
        self,
        session_id: int,
        outcome: SessionStatus,
        *,
        notes: str | None = None,
    ) -> TestSession:
        if outcome not in END_OUTCOMES:
            raise InvalidStatusTransitionError(
                f"Session cannot be ended with outcome {outcome.value}"
            )
        async with self._pool.acquire() as conn, conn.transaction():
            session = await self._lock_existing(conn, session_id)
            validate_session_transition(session.status, outcome)
            if session.status == outcome:
                return session
            session = await self._repository.set_status(
                conn, session_id, outcome, end_time=_utc_now(), notes=notes
            )
        logger.info("session ended", session_id=session_id, outcome=outcome.value)
        await self._notify_terminal(session_id, outcome)
        return session

    async def fail_session(self, session_id: int, reason: str) -> TestSession | None:
        """Pipeline-initiated ``running -> failed``. Returns None if not running."""
        async with self._pool.acquire() as conn, conn.transaction():
            session = await self._lock_existing(conn, session_id)
            if session.status != SessionStatus.RUNNING:
                logger.warning(
                    "session not failed, not running",
                    session_id=session_id,
                    status=session.status.value,
                    reason=reason,
                )
                return None
            session = await self._repository.set_status(
                conn, session_id, SessionStatus.FAILED, end_time=_utc_now()
            )
        logger.error("session failed by pipeline", session_id=session_id, reason=reason)
        await self._notify_terminal(session_id, SessionStatus.FAILED)
        return session

    async def _lock_existing(self, conn: Connection, session_id: int) -> TestSession:
        session = await self._repository.lock(conn, session_id, exclusive=True)
        if session is None:
            raise UnknownSessionError(f"Test session {session_id} not found")
        return session

    async def _notify_terminal(self, session_id: int, status: SessionStatus) -> None:
        for listener in self._terminal_listeners:
            try:
                await listener(session_id, status)
            except Exception:
                logger.exception("terminal listener failed", session_id=session_id)
