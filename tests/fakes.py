"""In-memory stand-ins for the asyncpg pool, the repositories and the stream.

Transactions snapshot the whole database and restore it when the block
raises, and a single lock serializes them, which is enough to exercise the
pipeline's atomicity and ordering without a PostgreSQL server.
"""
from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Sequence

from telemetry_aggregator.core.exceptions import NotFoundError
from telemetry_aggregator.domain.enums import BatchStatus, DefinitionKind, SessionStatus
from telemetry_aggregator.domain.models import (
    BatchReprocessAudit,
    DetectedEvent,
    RawStreamBatch,
    SessionArrayResult,
    SessionSummaryMetric,
    TestSession,
)
from telemetry_aggregator.ingestion.stream import StreamMessage
from telemetry_aggregator.repositories.base import encode_json
from telemetry_aggregator.services.dependencies import Repositories


@dataclass
class _State:
    sessions: dict[int, dict[str, Any]] = field(default_factory=dict)
    batches: dict[int, dict[str, Any]] = field(default_factory=dict)
    metrics: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    arrays: list[dict[str, Any]] = field(default_factory=list)
    audits: list[dict[str, Any]] = field(default_factory=list)
    definitions: dict[tuple[str, str], int] = field(default_factory=dict)
    ids: dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class _Fault:
    exc: BaseException | None
    delay: float | None
    times: int


class FakeDatabase:
    def __init__(self) -> None:
        self.state = _State()
        self.lock = asyncio.Lock()
        self.definition_lookups = 0
        self._faults: dict[str, list[_Fault]] = defaultdict(list)
        self._last_received: datetime | None = None

    # -- fixtures -------------------------------------------------------

    def next_id(self, table: str) -> int:
        self.state.ids[table] += 1
        return self.state.ids[table]

    def now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_received is not None and now <= self._last_received:
            now = self._last_received + timedelta(microseconds=1)
        self._last_received = now
        return now

    def add_session(
        self, status: SessionStatus = SessionStatus.SCHEDULED, test_name: str = "thermal-soak"
    ) -> int:
        session_id = self.next_id("sessions")
        now = datetime.now(timezone.utc)
        self.state.sessions[session_id] = {
            "id": session_id,
            "equipment_id": 1,
            "test_name": test_name,
            "status": status,
            "start_time": now if status != SessionStatus.SCHEDULED else None,
            "end_time": None,
            "notes": None,
            "created_at": now,
            "updated_at": now,
        }
        return session_id

    def add_definition(self, kind: DefinitionKind, name: str) -> int:
        definition_id = self.next_id(f"definitions:{kind.value}")
        self.state.definitions[(kind.value, name)] = definition_id
        return definition_id

    def add_batch(
        self,
        session_id: int,
        payload: Any,
        status: BatchStatus = BatchStatus.PENDING,
        *,
        received_at: datetime | None = None,
        error_reason: str | None = None,
    ) -> int:
        batch_id = self.next_id("batches")
        self.state.batches[batch_id] = {
            "id": batch_id,
            "session_id": session_id,
            "received_at": received_at or self.now(),
            "raw_payload": copy.deepcopy(payload),
            "processing_status": status,
            "stream_message_id": None,
            "error_reason": error_reason,
            "warnings": [],
            "processed_at": None if status == BatchStatus.PENDING else self.now(),
        }
        return batch_id

    # -- inspection -----------------------------------------------------

    def session_status(self, session_id: int) -> SessionStatus:
        return self.state.sessions[session_id]["status"]

    def batch(self, batch_id: int) -> dict[str, Any]:
        return self.state.batches[batch_id]

    def batches_for(self, session_id: int) -> list[dict[str, Any]]:
        return [b for b in self.state.batches.values() if b["session_id"] == session_id]

    def metrics_for(self, session_id: int, name: str | None = None) -> list[dict[str, Any]]:
        rows = [m for m in self.state.metrics if m["session_id"] == session_id]
        if name is not None:
            definition_id = self.state.definitions[(DefinitionKind.METRIC.value, name)]
            rows = [m for m in rows if m["metric_definition_id"] == definition_id]
        return rows

    def events_for(self, session_id: int) -> list[dict[str, Any]]:
        return [e for e in self.state.events if e["session_id"] == session_id]

    def arrays_for(self, session_id: int) -> list[dict[str, Any]]:
        return [a for a in self.state.arrays if a["session_id"] == session_id]

    # -- fault injection ------------------------------------------------

    def inject(
        self,
        operation: str,
        exc: BaseException | None = None,
        *,
        delay: float | None = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` sleep and/or raise."""
        self._faults[operation].append(_Fault(exc=exc, delay=delay, times=times))

    async def hit(self, operation: str) -> None:
        faults = self._faults.get(operation)
        if not faults:
            return
        fault = faults[0]
        fault.times -= 1
        if fault.times <= 0:
            faults.pop(0)
        if fault.delay is not None:
            await asyncio.sleep(fault.delay)
        if fault.exc is not None:
            raise fault.exc


class FakeConnection:
    def __init__(self, db: FakeDatabase):
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._db.lock:
            snapshot = copy.deepcopy(self._db.state)
            try:
                yield
            except BaseException:
                self._db.state = snapshot
                raise


class FakePool:
    def __init__(self, db: FakeDatabase):
        self._db = db
        self.released: list[FakeConnection] = []

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[FakeConnection]:
        yield FakeConnection(self._db)

    async def release(self, conn: FakeConnection) -> None:
        self.released.append(conn)


class _FakeRepository:
    def __init__(self, db: FakeDatabase):
        self._db = db

    @asynccontextmanager
    async def _locked(self, conn: FakeConnection | None) -> AsyncIterator[None]:
        # With a connection the caller already holds the transaction lock.
        if conn is not None:
            yield
            return
        async with self._db.lock:
            yield


class FakeSessionRepository(_FakeRepository):
    __test__ = False

    def _model(self, session_id: int) -> TestSession | None:
        row = self._db.state.sessions.get(session_id)
        return TestSession.model_validate(row) if row is not None else None

    async def get(self, session_id: int) -> TestSession:
        async with self._locked(None):
            await self._db.hit("sessions.get")
            session = self._model(session_id)
        if session is None:
            raise NotFoundError("Test session not found")
        return session

    async def lock(self, conn, session_id: int, *, exclusive: bool = True) -> TestSession | None:
        await self._db.hit("sessions.lock")
        return self._model(session_id)

    async def set_status(
        self,
        conn,
        session_id: int,
        status: SessionStatus,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        notes: str | None = None,
    ) -> TestSession:
        await self._db.hit("sessions.set_status")
        row = self._db.state.sessions.get(session_id)
        if row is None:
            raise NotFoundError("Test session not found")
        row["status"] = status
        row["start_time"] = row["start_time"] or start_time
        row["end_time"] = end_time or row["end_time"]
        row["notes"] = notes or row["notes"]
        row["updated_at"] = datetime.now(timezone.utc)
        return TestSession.model_validate(row)

    async def statuses(self, session_ids: Sequence[int]) -> dict[int, SessionStatus]:
        async with self._locked(None):
            return {
                sid: SessionStatus(self._db.state.sessions[sid]["status"])
                for sid in session_ids
                if sid in self._db.state.sessions
            }


class FakeDefinitionRepository(_FakeRepository):
    async def get_definition_id(self, kind: DefinitionKind, name: str) -> int | None:
        async with self._locked(None):
            await self._db.hit("definitions.get")
            self._db.definition_lookups += 1
            return self._db.state.definitions.get((kind.value, name))


class FakeRawBatchRepository(_FakeRepository):
    def _model(self, batch_id: int) -> RawStreamBatch:
        return RawStreamBatch.model_validate(copy.deepcopy(self._db.state.batches[batch_id]))

    async def insert(
        self,
        conn,
        session_id: int,
        payload: Any,
        *,
        stream_message_id: str | None = None,
    ) -> tuple[RawStreamBatch, bool]:
        await self._db.hit("batches.insert")
        if stream_message_id is not None:
            for row in self._db.state.batches.values():
                if row["stream_message_id"] == stream_message_id:
                    return self._model(row["id"]), False
        batch_id = self._db.add_batch(session_id, payload)
        self._db.state.batches[batch_id]["stream_message_id"] = stream_message_id
        return self._model(batch_id), True

    async def get(self, batch_id: int) -> RawStreamBatch:
        async with self._locked(None):
            if batch_id not in self._db.state.batches:
                raise NotFoundError("Raw batch not found")
            return self._model(batch_id)

    async def lock(self, conn, batch_id: int) -> RawStreamBatch | None:
        await self._db.hit("batches.lock")
        if batch_id not in self._db.state.batches:
            return None
        return self._model(batch_id)

    async def transition(
        self,
        batch_id: int,
        status: BatchStatus,
        *,
        conn=None,
        error_reason: str | None = None,
        warnings: Sequence[dict[str, Any]] = (),
    ) -> bool:
        async with self._locked(conn):
            await self._db.hit("batches.transition")
            row = self._db.state.batches.get(batch_id)
            if row is None or row["processing_status"] != BatchStatus.PENDING:
                return False
            row["processing_status"] = status
            row["error_reason"] = error_reason
            row["warnings"] = copy.deepcopy(list(warnings))
            row["processed_at"] = self._db.now()
            return True

    async def reopen(self, conn, batch_id: int) -> bool:
        row = self._db.state.batches.get(batch_id)
        if row is None or row["processing_status"] != BatchStatus.ERROR:
            return False
        row.update(
            processing_status=BatchStatus.PENDING,
            error_reason=None,
            warnings=[],
            processed_at=None,
        )
        return True

    async def record_reprocess(
        self,
        conn,
        *,
        batch_id: int,
        requested_by: str,
        reason: str,
        previous_status: BatchStatus,
        previous_error_reason: str | None,
    ) -> BatchReprocessAudit:
        row = {
            "id": self._db.next_id("audits"),
            "batch_id": batch_id,
            "requested_by": requested_by,
            "reason": reason,
            "previous_status": previous_status,
            "previous_error_reason": previous_error_reason,
            "created_at": datetime.now(timezone.utc),
        }
        self._db.state.audits.append(row)
        return BatchReprocessAudit.model_validate(row)

    def _pending(self, session_id: int, received_before: datetime | None) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self._db.state.batches.values()
            if row["session_id"] == session_id
            and row["processing_status"] == BatchStatus.PENDING
            and (received_before is None or row["received_at"] < received_before)
        ]
        return sorted(rows, key=lambda r: (r["received_at"], r["id"]))

    async def list_pending(
        self,
        session_id: int,
        *,
        limit: int = 100,
        received_before: datetime | None = None,
    ) -> list[RawStreamBatch]:
        async with self._locked(None):
            rows = self._pending(session_id, received_before)[:limit]
            return [self._model(row["id"]) for row in rows]

    async def list_sessions_with_pending(
        self,
        *,
        limit: int = 100,
        received_before: datetime | None = None,
    ) -> list[int]:
        async with self._locked(None):
            oldest: dict[int, datetime] = {}
            for session_id, session in self._db.state.sessions.items():
                if session["status"] not in (SessionStatus.SCHEDULED, SessionStatus.RUNNING):
                    continue
                rows = self._pending(session_id, received_before)
                if rows:
                    oldest[session_id] = rows[0]["received_at"]
            return sorted(oldest, key=oldest.__getitem__)[:limit]

    async def count_pending(self, session_id: int) -> int:
        async with self._locked(None):
            return len(self._pending(session_id, None))

    async def list_recent_processed(self, session_id: int, *, limit: int) -> list[RawStreamBatch]:
        async with self._locked(None):
            rows = sorted(
                (
                    row
                    for row in self._db.state.batches.values()
                    if row["session_id"] == session_id
                    and row["processing_status"] == BatchStatus.PROCESSED
                ),
                key=lambda r: (r["received_at"], r["id"]),
            )
            return [self._model(row["id"]) for row in rows[-limit:]]


class FakeSummaryMetricRepository(_FakeRepository):
    async def insert(
        self,
        conn,
        *,
        session_id: int,
        metric_definition_id: int,
        value: float,
        metadata: dict[str, Any],
    ) -> int | None:
        await self._db.hit("metrics.insert")
        key = encode_json(metadata)
        for row in self._db.state.metrics:
            if (
                row["session_id"] == session_id
                and row["metric_definition_id"] == metric_definition_id
                and encode_json(row["metadata"]) == key
            ):
                return None
        row_id = self._db.next_id("metrics")
        self._db.state.metrics.append(
            {
                "id": row_id,
                "session_id": session_id,
                "metric_definition_id": metric_definition_id,
                "metric_value": value,
                "metadata": copy.deepcopy(metadata),
                "created_at": datetime.now(timezone.utc),
            }
        )
        return row_id

    async def list_by_session(self, session_id: int) -> list[SessionSummaryMetric]:
        async with self._locked(None):
            return [
                SessionSummaryMetric.model_validate(row)
                for row in self._db.state.metrics
                if row["session_id"] == session_id
            ]


class FakeDetectedEventRepository(_FakeRepository):
    async def insert(
        self,
        conn,
        *,
        session_id: int,
        event_definition_id: int,
        event_timestamp: datetime,
        value: float | None,
        details: dict[str, Any],
    ) -> int:
        await self._db.hit("events.insert")
        row_id = self._db.next_id("events")
        self._db.state.events.append(
            {
                "id": row_id,
                "session_id": session_id,
                "event_definition_id": event_definition_id,
                "event_timestamp": event_timestamp,
                "value_at_event": value,
                "details": copy.deepcopy(details),
                "created_at": datetime.now(timezone.utc),
            }
        )
        return row_id

    async def list_by_session(self, session_id: int) -> list[DetectedEvent]:
        async with self._locked(None):
            return [
                DetectedEvent.model_validate(row)
                for row in self._db.state.events
                if row["session_id"] == session_id
            ]


class FakeArrayResultRepository(_FakeRepository):
    async def insert(
        self,
        conn,
        *,
        session_id: int,
        name: str,
        data: list[Any],
    ) -> int | None:
        await self._db.hit("arrays.insert")
        for row in self._db.state.arrays:
            if row["session_id"] == session_id and row["result_name"] == name:
                return None
        row_id = self._db.next_id("arrays")
        self._db.state.arrays.append(
            {
                "id": row_id,
                "session_id": session_id,
                "result_name": name,
                "result_data": copy.deepcopy(data),
                "created_at": datetime.now(timezone.utc),
            }
        )
        return row_id

    async def list_by_session(self, session_id: int) -> list[SessionArrayResult]:
        async with self._locked(None):
            return [
                SessionArrayResult.model_validate(row)
                for row in self._db.state.arrays
                if row["session_id"] == session_id
            ]


def fake_repositories(db: FakeDatabase) -> Repositories:
    return Repositories(
        sessions=FakeSessionRepository(db),
        definitions=FakeDefinitionRepository(db),
        batches=FakeRawBatchRepository(db),
        metrics=FakeSummaryMetricRepository(db),
        events=FakeDetectedEventRepository(db),
        arrays=FakeArrayResultRepository(db),
    )


class FakeStreamSource:
    """Stream double: ``push`` enqueues, ``read`` hands out everything queued."""

    def __init__(self) -> None:
        self.opened = False
        self.closed = False
        self.acked: list[str] = []
        self._queue: list[StreamMessage] = []
        self._counter = 0
        self._ready = asyncio.Event()

    def push(self, session_id: Any, payload: Any, *, message_id: str | None = None) -> str:
        if message_id is None:
            self._counter += 1
            message_id = f"1700000000000-{self._counter}"
        self.push_raw(message_id, {"session_id": session_id, "payload": payload})
        return message_id

    def push_raw(self, message_id: str, fields: dict[str, Any]) -> None:
        self._queue.append(StreamMessage(message_id=message_id, fields=fields))
        self._ready.set()

    async def open(self) -> None:
        self.opened = True

    async def read(self) -> list[StreamMessage]:
        if not self._queue:
            self._ready.clear()
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=0.05)
            except asyncio.TimeoutError:
                return []
        messages, self._queue = self._queue, []
        return messages

    async def ack(self, message_ids: Sequence[str]) -> None:
        self.acked.extend(message_ids)

    async def close(self) -> None:
        self.closed = True


async def drain(pipeline, timeout: float = 2.0) -> None:
    """Wait until every lane has finished its queued and in-flight batches."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while any(len(lane) for lane in pipeline.scheduler.lanes.values()):
        if loop.time() > deadline:
            raise AssertionError("lanes did not drain in time")
        await asyncio.sleep(0.01)


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
