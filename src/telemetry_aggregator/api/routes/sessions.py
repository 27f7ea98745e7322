"""Session lifecycle signals."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from telemetry_aggregator.api.utils import parse_id, read_json
from telemetry_aggregator.core.exceptions import (
    InvalidStatusTransitionError,
    UnknownSessionError,
)
from telemetry_aggregator.domain.dto import SessionEndDTO
from telemetry_aggregator.domain.models import TestSession
from telemetry_aggregator.services.dependencies import get_pipeline

routes = web.RouteTableDef()


def _session_response(session: TestSession) -> dict:
    return session.model_dump(mode="json")


@routes.post("/api/v1/sessions/{session_id}/start")
async def start_session(request: web.Request):
    session_id = parse_id(request.match_info["session_id"], "session_id")
    pipeline = get_pipeline(request)
    try:
        session = await pipeline.start_session(session_id)
    except UnknownSessionError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidStatusTransitionError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(_session_response(session))


@routes.post("/api/v1/sessions/{session_id}/end")
async def end_session(request: web.Request):
    session_id = parse_id(request.match_info["session_id"], "session_id")
    body = await read_json(request)
    try:
        dto = SessionEndDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    pipeline = get_pipeline(request)
    try:
        session = await pipeline.end_session(session_id, dto.outcome, notes=dto.notes)
    except UnknownSessionError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidStatusTransitionError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(_session_response(session))
