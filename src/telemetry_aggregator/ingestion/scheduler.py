"""Ingestion scheduler: stream -> raw batch store -> per-session lanes.

Each session gets one lane (a queue drained by a single task), so batches of
a session are evaluated and committed in arrival order while different
sessions run in parallel, bounded by a shared semaphore.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import structlog

from telemetry_aggregator.core.exceptions import (
    MalformedStreamItemError,
    SessionClosedError,
    TransientStoreError,
    UnknownSessionError,
)
from telemetry_aggregator.domain.enums import BatchStatus, SessionStatus
from telemetry_aggregator.domain.models import RawStreamBatch
from telemetry_aggregator.ingestion.stream import StreamMessage, StreamSource, parse_stream_message
from telemetry_aggregator.services.batch_store import RawBatchStore
from telemetry_aggregator.services.evaluator import SessionWindow
from telemetry_aggregator.services.processor import BatchProcessor
from telemetry_aggregator.services.sessions import SessionStateManager
from telemetry_aggregator.services.state_machine import is_terminal

logger = structlog.get_logger(__name__)

LaneHandler = Callable[["SessionLane", RawStreamBatch], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class SessionLane:
    """Serial work queue owning one session's window."""

    def __init__(
        self,
        session_id: int,
        window: SessionWindow,
        handler: LaneHandler,
        *,
        semaphore: asyncio.Semaphore,
        maxsize: int = 1000,
    ):
        self.session_id = session_id
        self.window = window
        self._handler = handler
        self._semaphore = semaphore
        self._queue: asyncio.Queue[RawStreamBatch | None] = asyncio.Queue(maxsize=maxsize)
        # Batch ids queued or in flight.
        self._known: set[int] = set()
        self._closed = False
        self._task: asyncio.Task | None = None
        self.last_activity = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, batch_id: int) -> bool:
        return batch_id in self._known

    def __len__(self) -> int:
        return len(self._known)

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"session-lane-{self.session_id}")

    async def put(self, batch: RawStreamBatch) -> bool:
        """Queue a batch; False if the lane is closed or already holds it."""
        if self._closed or batch.id in self._known:
            return False
        self._known.add(batch.id)
        await self._queue.put(batch)
        return True

    async def _run(self) -> None:
        while True:
            batch = await self._queue.get()
            if batch is None:
                self._queue.task_done()
                return
            try:
                async with self._semaphore:
                    await self._handler(self, batch)
            except Exception:
                # Batch stays pending; recovery picks it up again.
                logger.exception(
                    "lane failed to process batch",
                    session_id=self.session_id,
                    batch_id=batch.id,
                )
            finally:
                self._known.discard(batch.id)
                self.last_activity = time.monotonic()
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every batch queued so far has been handled; the lane stays open."""
        if self._task is None or self._task is asyncio.current_task():
            return
        await self._queue.join()

    async def close(self) -> int:
        """Stop accepting work; the in-flight batch finishes, queued ones are dropped.

        Returns the number of dropped batches (they stay ``pending``).
        """
        if self._closed:
            return 0
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            batch = self._queue.get_nowait()
            self._queue.task_done()
            if batch is not None:
                self._known.discard(batch.id)
                dropped += 1
        self._queue.put_nowait(None)
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await task
        return dropped

    async def cancel(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class IngestionScheduler:
    """Pulls stream items, stores them as ``pending`` and fans them out to lanes."""

    def __init__(
        self,
        source: StreamSource,
        store: RawBatchStore,
        sessions: SessionStateManager,
        processor: BatchProcessor,
        *,
        concurrency: int = 8,
        lane_queue_size: int = 1000,
        recovery_limit: int = 500,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        append_alert_after: int = 5,
        sleep: Sleep = asyncio.sleep,
    ):
        self._source = source
        self._store = store
        self._sessions = sessions
        self._processor = processor
        self._semaphore = asyncio.Semaphore(concurrency)
        self._lane_queue_size = lane_queue_size
        self._recovery_limit = recovery_limit
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        # Append retries past this count are logged as errors; the message stays unacked.
        self._append_alert_after = append_alert_after
        self._sleep = sleep
        self._lanes: dict[int, SessionLane] = {}
        self._lanes_lock = asyncio.Lock()
        self._dispatcher: asyncio.Task | None = None

    @property
    def lanes(self) -> dict[int, SessionLane]:
        return dict(self._lanes)

    def _backoff_seconds(self, attempt: int) -> float:
        # attempt is 1-based
        return min(self._retry_max_delay, self._retry_base_delay * 2 ** (attempt - 1))

    async def start(self) -> None:
        await self._source.open()
        recovered = await self.recover()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="stream-dispatcher")
        logger.info("ingestion scheduler started", recovered=recovered)

    async def stop(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        lanes = list(self._lanes.values())
        self._lanes.clear()
        for lane in lanes:
            await lane.cancel()
        await self._source.close()
        logger.info("ingestion scheduler stopped", lanes=len(lanes))

    async def _dispatch_loop(self) -> None:
        failures = 0
        while True:
            try:
                await self.dispatch_once()
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                logger.exception("stream dispatch failed", failures=failures)
                await self._sleep(self._backoff_seconds(failures))

    async def dispatch_once(self) -> int:
        """Read one chunk from the stream and route it. Returns messages seen."""
        messages = await self._source.read()
        for message in messages:
            await self._ingest(message)
        return len(messages)

    async def _ingest(self, message: StreamMessage) -> None:
        try:
            item = parse_stream_message(message)
        except MalformedStreamItemError as exc:
            logger.warning(
                "malformed stream message dropped",
                message_id=message.message_id,
                reason=str(exc),
            )
            await self._source.ack([message.message_id])
            return

        attempt = 0
        while True:
            try:
                batch = await self._store.append(
                    item.session_id, item.payload, delivery_id=item.delivery_id
                )
                break
            except (UnknownSessionError, SessionClosedError) as exc:
                logger.warning(
                    "batch rejected at boundary",
                    session_id=item.session_id,
                    message_id=message.message_id,
                    reason=str(exc),
                )
                await self._source.ack([message.message_id])
                return
            except TransientStoreError as exc:
                attempt += 1
                delay = self._backoff_seconds(attempt)
                log = logger.error if attempt > self._append_alert_after else logger.info
                log(
                    "append retry scheduled",
                    session_id=item.session_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    reason=str(exc),
                )
                await self._sleep(delay)

        await self._source.ack([message.message_id])
        if batch.processing_status == BatchStatus.PENDING:
            await self.submit(batch)

    async def submit(self, batch: RawStreamBatch) -> bool:
        """Queue a pending batch on its session's lane."""
        lane = await self._lane_for(batch.session_id)
        return await lane.put(batch)

    async def _lane_for(self, session_id: int) -> SessionLane:
        lane = self._lanes.get(session_id)
        if lane is not None and not lane.closed:
            return lane
        window = await self._processor.open_window(session_id)
        async with self._lanes_lock:
            lane = self._lanes.get(session_id)
            if lane is None or lane.closed:
                lane = SessionLane(
                    session_id,
                    window,
                    self._handle,
                    semaphore=self._semaphore,
                    maxsize=self._lane_queue_size,
                )
                lane.start()
                self._lanes[session_id] = lane
                logger.debug("session lane opened", session_id=session_id)
        return lane

    async def _handle(self, lane: SessionLane, batch: RawStreamBatch) -> None:
        try:
            session = await self._sessions.get_session(batch.session_id)
        except UnknownSessionError:
            logger.warning(
                "session vanished, batch skipped",
                session_id=batch.session_id,
                batch_id=batch.id,
            )
            return
        await self._processor.process(session, batch, lane.window)

    async def recover(self, *, min_age_seconds: float | None = None) -> int:
        """Queue pending batches of accepting sessions, oldest first.

        With ``min_age_seconds`` only batches older than that are considered,
        so batches that are just being appended are left to the dispatcher.
        """
        received_before: datetime | None = None
        if min_age_seconds is not None:
            received_before = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
        queued = 0
        session_ids = await self._store.sessions_with_pending(
            self._recovery_limit, received_before=received_before
        )
        for session_id in session_ids:
            pending = await self._store.list_pending(
                session_id, self._recovery_limit, received_before=received_before
            )
            for batch in pending:
                if await self.submit(batch):
                    queued += 1
        if queued:
            logger.info("pending batches recovered", sessions=len(session_ids), batches=queued)
        return queued

    async def close_session(self, session_id: int) -> int:
        """Close a session's lane; returns how many queued batches were left pending."""
        lane = self._lanes.pop(session_id, None)
        if lane is None:
            return 0
        dropped = await lane.close()
        if dropped:
            logger.warning(
                "dangling pending batches left",
                session_id=session_id,
                batches=dropped,
            )
        else:
            logger.debug("session lane closed", session_id=session_id)
        return dropped

    async def drain_session(self, session_id: int) -> None:
        """Wait for the batches already queued on a session's lane to be processed."""
        lane = self._lanes.get(session_id)
        if lane is None or lane.closed:
            return
        await lane.drain()
        logger.debug("session lane drained", session_id=session_id)

    async def on_session_terminal(self, session_id: int, status: SessionStatus) -> None:
        """Terminal listener for ``SessionStateManager``."""
        await self.close_session(session_id)

    async def reap(self) -> int:
        """Close lanes whose session was ended elsewhere. Returns lanes closed."""
        if not self._lanes:
            return 0
        statuses = await self._sessions.session_statuses(list(self._lanes))
        closed = 0
        for session_id in list(self._lanes):
            status = statuses.get(session_id)
            if status is None or is_terminal(status):
                await self.close_session(session_id)
                closed += 1
        return closed
