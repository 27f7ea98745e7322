import asyncio

import pytest

from telemetry_aggregator.core.exceptions import (
    BatchNotReprocessableError,
    NotFoundError,
    SessionClosedError,
    TransientStoreError,
    UnknownSessionError,
)
from telemetry_aggregator.domain.dto import BatchWarning
from telemetry_aggregator.domain.enums import BatchStatus, SessionStatus, WarningCode
from telemetry_aggregator.services.batch_store import RawBatchStore
from telemetry_aggregator.services.sessions import SessionStateManager


@pytest.fixture
def store(pool, repos) -> RawBatchStore:
    return RawBatchStore(pool, repos.batches, SessionStateManager(pool, repos.sessions))


@pytest.mark.asyncio
async def test_append_stores_pending_and_starts_session(db, store):
    session_id = db.add_session()

    batch = await store.append(session_id, {"voltage": 3.3})

    assert batch.processing_status == BatchStatus.PENDING
    assert batch.raw_payload == {"voltage": 3.3}
    assert batch.received_at is not None
    assert db.session_status(session_id) == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_append_to_completed_session_stores_nothing(db, store):
    session_id = db.add_session(SessionStatus.COMPLETED)

    with pytest.raises(SessionClosedError):
        await store.append(session_id, {"voltage": 3.3})

    assert db.batches_for(session_id) == []


@pytest.mark.asyncio
async def test_append_to_unknown_session(db, store):
    with pytest.raises(UnknownSessionError):
        await store.append(999, {"voltage": 3.3})
    assert db.state.batches == {}


@pytest.mark.asyncio
async def test_redelivered_message_returns_existing_batch(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)

    first = await store.append(session_id, {"voltage": 1.0}, delivery_id="1-1")
    second = await store.append(session_id, {"voltage": 1.0}, delivery_id="1-1")

    assert first.id == second.id
    assert len(db.batches_for(session_id)) == 1


@pytest.mark.asyncio
async def test_append_store_outage_is_transient(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    db.inject("batches.insert", ConnectionError("connection reset"))

    with pytest.raises(TransientStoreError):
        await store.append(session_id, {"voltage": 3.3})
    assert db.batches_for(session_id) == []


@pytest.mark.asyncio
async def test_arrival_timestamps_strictly_increase(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batches = [await store.append(session_id, {"n": i}) for i in range(5)]

    stamps = [b.received_at for b in batches]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


@pytest.mark.asyncio
async def test_status_transition_has_single_winner(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batch = await store.append(session_id, {"voltage": 3.3})

    results = await asyncio.gather(
        store.mark_processed(batch.id),
        store.mark_error(batch.id, "late duplicate"),
        store.mark_processed(batch.id),
    )

    assert results.count(True) == 1
    assert db.batch(batch.id)["processing_status"] == BatchStatus.PROCESSED


@pytest.mark.asyncio
async def test_terminal_batch_never_reverts(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batch = await store.append(session_id, {"voltage": 3.3})

    assert await store.mark_error(batch.id, "bad payload") is True
    assert await store.mark_processed(batch.id) is False

    row = db.batch(batch.id)
    assert row["processing_status"] == BatchStatus.ERROR
    assert row["error_reason"] == "bad payload"


@pytest.mark.asyncio
async def test_mark_processed_records_warnings(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batch = await store.append(session_id, {"voltage": "n/a"})
    warning = BatchWarning(code=WarningCode.SKIPPED_FIELD, subject="voltage", message="not numeric")

    await store.mark_processed(batch.id, [warning])

    assert db.batch(batch.id)["warnings"] == [
        {"code": "skipped_field", "subject": "voltage", "message": "not numeric"}
    ]


@pytest.mark.asyncio
async def test_list_pending_in_arrival_order(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    other = db.add_session(SessionStatus.RUNNING)
    ids = [(await store.append(session_id, {"n": i})).id for i in range(4)]
    await store.append(other, {"n": 99})
    await store.mark_processed(ids[1])

    pending = await store.list_pending(session_id, limit=10)

    assert [b.id for b in pending] == [ids[0], ids[2], ids[3]]
    assert [b.id for b in await store.list_pending(session_id, limit=1)] == [ids[0]]
    assert await store.count_pending(session_id) == 3


@pytest.mark.asyncio
async def test_sessions_with_pending_skips_closed_sessions(db, store):
    open_session = db.add_session(SessionStatus.RUNNING)
    closed_session = db.add_session(SessionStatus.ABORTED)
    db.add_batch(open_session, {"n": 1})
    db.add_batch(closed_session, {"n": 1})

    assert await store.sessions_with_pending() == [open_session]


@pytest.mark.asyncio
async def test_reprocess_reopens_error_batch_with_audit(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batch_id = db.add_batch(
        session_id, {"n": 1}, BatchStatus.ERROR, error_reason="retry budget exhausted"
    )

    batch = await store.reprocess(batch_id, requested_by="ops@lab", reason="database was down")

    assert batch.processing_status == BatchStatus.PENDING
    assert db.batch(batch_id)["processing_status"] == BatchStatus.PENDING
    assert db.batch(batch_id)["error_reason"] is None
    [audit] = db.state.audits
    assert audit["batch_id"] == batch_id
    assert audit["requested_by"] == "ops@lab"
    assert audit["previous_status"] == BatchStatus.ERROR
    assert audit["previous_error_reason"] == "retry budget exhausted"


@pytest.mark.asyncio
async def test_processed_batch_cannot_be_reprocessed(db, store):
    session_id = db.add_session(SessionStatus.RUNNING)
    batch_id = db.add_batch(session_id, {"n": 1}, BatchStatus.PROCESSED)

    with pytest.raises(BatchNotReprocessableError):
        await store.reprocess(batch_id, requested_by="ops", reason="again")
    assert db.state.audits == []


@pytest.mark.asyncio
async def test_reprocess_for_closed_session_is_rejected(db, store):
    session_id = db.add_session(SessionStatus.COMPLETED)
    batch_id = db.add_batch(session_id, {"n": 1}, BatchStatus.ERROR, error_reason="x")

    with pytest.raises(SessionClosedError):
        await store.reprocess(batch_id, requested_by="ops", reason="again")
    assert db.batch(batch_id)["processing_status"] == BatchStatus.ERROR


@pytest.mark.asyncio
async def test_reprocess_missing_batch(store):
    with pytest.raises(NotFoundError):
        await store.reprocess(12345, requested_by="ops", reason="again")
