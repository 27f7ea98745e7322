import pytest

from telemetry_aggregator.core.exceptions import (
    InvalidStatusTransitionError,
    SessionClosedError,
    UnknownSessionError,
)
from telemetry_aggregator.domain.enums import SessionStatus
from telemetry_aggregator.services.sessions import SessionStateManager


@pytest.fixture
def manager(pool, repos) -> SessionStateManager:
    return SessionStateManager(pool, repos.sessions)


@pytest.mark.asyncio
async def test_start_sets_running_and_start_time(db, manager):
    session_id = db.add_session()

    session = await manager.start_session(session_id)

    assert session.status == SessionStatus.RUNNING
    assert session.start_time is not None


@pytest.mark.asyncio
async def test_start_is_idempotent_for_running_session(db, manager):
    session_id = db.add_session(SessionStatus.RUNNING)
    started = db.state.sessions[session_id]["start_time"]

    session = await manager.start_session(session_id)

    assert session.start_time == started


@pytest.mark.asyncio
async def test_end_session_notifies_listeners(db, manager):
    session_id = db.add_session(SessionStatus.RUNNING)
    seen = []

    async def listener(sid, status):
        seen.append((sid, status))

    manager.add_terminal_listener(listener)
    session = await manager.end_session(session_id, SessionStatus.COMPLETED, notes="nominal")

    assert session.status == SessionStatus.COMPLETED
    assert session.end_time is not None
    assert session.notes == "nominal"
    assert seen == [(session_id, SessionStatus.COMPLETED)]


@pytest.mark.asyncio
async def test_end_requires_terminal_outcome(db, manager):
    session_id = db.add_session(SessionStatus.RUNNING)
    with pytest.raises(InvalidStatusTransitionError):
        await manager.end_session(session_id, SessionStatus.RUNNING)


@pytest.mark.asyncio
async def test_completed_session_cannot_restart(db, manager):
    session_id = db.add_session(SessionStatus.COMPLETED)
    with pytest.raises(InvalidStatusTransitionError):
        await manager.start_session(session_id)


@pytest.mark.asyncio
async def test_unknown_session(manager):
    with pytest.raises(UnknownSessionError):
        await manager.get_session(404)
    with pytest.raises(UnknownSessionError):
        await manager.end_session(404, SessionStatus.ABORTED)


@pytest.mark.asyncio
async def test_admit_starts_scheduled_session(db, pool, manager):
    session_id = db.add_session()

    async with pool.acquire() as conn, conn.transaction():
        session = await manager.admit(conn, session_id)

    assert session.status == SessionStatus.RUNNING
    assert db.session_status(session_id) == SessionStatus.RUNNING


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status", [SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ABORTED]
)
async def test_admit_rejects_terminal_session(db, pool, manager, status):
    session_id = db.add_session(status)

    with pytest.raises(SessionClosedError):
        async with pool.acquire() as conn, conn.transaction():
            await manager.admit(conn, session_id)


@pytest.mark.asyncio
async def test_fail_session_only_from_running(db, manager):
    scheduled = db.add_session()
    running = db.add_session(SessionStatus.RUNNING)
    failures = []

    async def listener(sid, status):
        failures.append(sid)

    manager.add_terminal_listener(listener)

    assert await manager.fail_session(scheduled, "too many errors") is None
    failed = await manager.fail_session(running, "too many errors")

    assert failed is not None and failed.status == SessionStatus.FAILED
    assert db.session_status(scheduled) == SessionStatus.SCHEDULED
    assert failures == [running]


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_transition(db, manager):
    session_id = db.add_session(SessionStatus.RUNNING)

    async def broken(sid, status):
        raise RuntimeError("listener down")

    manager.add_terminal_listener(broken)
    session = await manager.end_session(session_id, SessionStatus.ABORTED)

    assert session.status == SessionStatus.ABORTED
