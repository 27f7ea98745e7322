"""Runs one batch through evaluate + commit with timeout, retry and escalation."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from telemetry_aggregator.core.exceptions import PayloadUnparseableError, TransientStoreError
from telemetry_aggregator.domain.dto import CommitResult, Sample
from telemetry_aggregator.domain.enums import BatchStatus, CommitOutcome
from telemetry_aggregator.domain.models import RawStreamBatch, TestSession
from telemetry_aggregator.repositories.base import TRANSIENT_DB_ERRORS
from telemetry_aggregator.services.batch_store import RawBatchStore
from telemetry_aggregator.services.evaluator import BatchEvaluator, SessionWindow
from telemetry_aggregator.services.sessions import SessionStateManager
from telemetry_aggregator.services.writer import AggregationWriter

logger = structlog.get_logger(__name__)

RETRY_BUDGET_EXHAUSTED = "retry budget exhausted"

Sleep = Callable[[float], Awaitable[None]]

_SETTLED_OUTCOMES = {
    BatchStatus.PROCESSED: CommitOutcome.PROCESSED,
    BatchStatus.ERROR: CommitOutcome.ERROR,
}


class BatchProcessor:
    """Processes batches of one session at a time, against that session's window.

    Transient failures (store unavailable, commit timeout) keep the batch
    ``pending`` and are retried with exponential backoff; once the attempt
    budget is spent the batch is marked ``error``. More than
    ``error_threshold`` consecutive error batches fail the session.
    """

    def __init__(
        self,
        evaluator: BatchEvaluator,
        writer: AggregationWriter,
        store: RawBatchStore,
        sessions: SessionStateManager,
        *,
        commit_timeout: float = 10.0,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        error_threshold: int = 5,
        sleep: Sleep = asyncio.sleep,
    ):
        self._evaluator = evaluator
        self._writer = writer
        self._store = store
        self._sessions = sessions
        self._commit_timeout = commit_timeout
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._error_threshold = error_threshold
        self._sleep = sleep

    def _backoff_seconds(self, attempt: int) -> float:
        # attempt is 1-based
        return min(self._max_delay, self._base_delay * 2 ** (attempt - 1))

    async def open_window(self, session_id: int) -> SessionWindow:
        """Fresh window for a session, warmed with its latest processed batches."""
        window = self._evaluator.new_window(session_id)
        recent = await self._store.recent_processed(session_id, self._evaluator.window_size)
        for batch in recent:
            try:
                window.advance(self._evaluator.samples_of(batch.raw_payload))
            except PayloadUnparseableError:
                continue
        if recent:
            logger.debug("window warmed", session_id=session_id, batches=len(recent))
        return window

    async def process(
        self,
        session: TestSession,
        batch: RawStreamBatch,
        window: SessionWindow,
    ) -> CommitResult:
        attempt = 0
        samples: list[Sample] = []
        # A timed-out or dropped commit may still have landed.
        maybe_committed = False
        while True:
            attempt += 1
            try:
                result, samples = await asyncio.wait_for(
                    self._attempt(session, batch, window), timeout=self._commit_timeout
                )
                break
            except PayloadUnparseableError as exc:
                result = await self._writer.reject(batch.id, str(exc))
                break
            except (TransientStoreError, asyncio.TimeoutError) as exc:
                maybe_committed = True
                reason = str(exc) or "commit timed out"
                if attempt >= self._max_attempts:
                    logger.error(
                        "retry budget exhausted",
                        session_id=session.id,
                        batch_id=batch.id,
                        attempts=attempt,
                        reason=reason,
                    )
                    result = await self._writer.reject(batch.id, RETRY_BUDGET_EXHAUSTED)
                    break
                delay = self._backoff_seconds(attempt)
                logger.info(
                    "retry scheduled",
                    session_id=session.id,
                    batch_id=batch.id,
                    attempt=attempt,
                    delay_seconds=delay,
                    reason=reason,
                )
                await self._sleep(delay)

        outcome = result.outcome
        if outcome == CommitOutcome.ALREADY_TERMINAL and maybe_committed:
            outcome = _SETTLED_OUTCOMES.get(result.terminal_status, outcome)
            logger.info(
                "earlier attempt had committed",
                session_id=session.id,
                batch_id=batch.id,
                status=result.terminal_status,
            )
            if outcome == CommitOutcome.PROCESSED and not samples:
                samples = self._evaluator.samples_of(batch.raw_payload)

        await self._account(session, window, outcome, samples)
        return result

    async def _attempt(
        self,
        session: TestSession,
        batch: RawStreamBatch,
        window: SessionWindow,
    ) -> tuple[CommitResult, list[Sample]]:
        evaluation = await self._evaluator.evaluate(session, batch, window)
        result = await self._writer.commit(batch.id, evaluation)
        return result, evaluation.samples

    async def _account(
        self,
        session: TestSession,
        window: SessionWindow,
        outcome: CommitOutcome,
        samples: list[Sample],
    ) -> None:
        if outcome == CommitOutcome.PROCESSED:
            window.advance(samples)
            window.consecutive_errors = 0
            return
        if outcome != CommitOutcome.ERROR:
            return
        window.consecutive_errors += 1
        if window.consecutive_errors <= self._error_threshold:
            return
        reason = (
            f"{window.consecutive_errors} consecutive batch errors "
            f"(threshold {self._error_threshold})"
        )
        try:
            await self._sessions.fail_session(session.id, reason)
        except (TransientStoreError, *TRANSIENT_DB_ERRORS):
            logger.exception("session failure not recorded", session_id=session.id)
